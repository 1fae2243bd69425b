"""Tests for deciding what happens to each release."""

import pytest

from helmsman.chart import ChartInfo
from helmsman.command import ExitStatus
from helmsman.config import UNTRACKED_PRIORITY, Options
from helmsman.decision import DecisionMaker
from helmsman.exceptions import ContextConflictError, DecisionException
from helmsman.loader import TempFiles
from helmsman.observer import CurrentState, HelmRelease, Observer
from helmsman.plan import Decision, DecisionType, Plan
from helmsman.secrets import SecretDecryptor
from helmsman.state import Hooks, Namespace, Release, Settings, State

from .conftest import FakeRunner


class FakeDecryptor(SecretDecryptor):
    """Pretends every secrets file decrypts next to itself."""

    def __init__(self) -> None:
        super().__init__(TempFiles(keep=True))
        self.decrypted: list[str] = []

    async def check(self) -> None:
        pass

    async def _decrypt(self, path: str) -> str:
        self.decrypted.append(path)
        return f"{path}.dec"


def _release(name: str = "jenkins", **kwargs: object) -> Release:
    defaults: dict[str, object] = {
        "name": name,
        "namespace": "staging",
        "enabled": True,
        "chart": f"stable/{name}",
        "version": "0.9.0",
    }
    defaults.update(kwargs)
    return Release(**defaults)  # type: ignore[arg-type]


def _state(*releases: Release, **settings: object) -> State:
    return State(
        settings=Settings(**settings),  # type: ignore[arg-type]
        namespaces={
            "staging": Namespace(),
            "production": Namespace(protected=True),
        },
        apps={release.name: release for release in releases},
    )


def _observed(
    name: str = "jenkins",
    chart: str = "jenkins-0.9.0",
    status: str = "deployed",
    namespace: str = "staging",
    context: str = "default",
    revision: int = 2,
) -> HelmRelease:
    return HelmRelease(
        name=name,
        namespace=namespace,
        revision=revision,
        status=status,
        chart=chart,
        helmsman_context=context,
    )


def _current(*releases: HelmRelease) -> CurrentState:
    return CurrentState({release.key: release for release in releases}, "default")


def _charts(*releases: Release) -> dict[str, ChartInfo]:
    return {
        release.key: ChartInfo(release.chart.split("/")[-1], release.version)
        for release in releases
    }


async def _plan(
    desired: State,
    current: CurrentState,
    charts: dict[str, ChartInfo] | None = None,
    options: Options | None = None,
    observer: Observer | None = None,
    decryptor: SecretDecryptor | None = None,
) -> Plan:
    options = options or Options(keep_untracked_releases=True)
    maker = DecisionMaker(
        options,
        desired,
        current,
        charts if charts is not None else _charts(*desired.apps.values()),
        observer,
        decryptor,
    )
    plan = await maker.make_plan()
    plan.sort()
    return plan


def _commands(plan: Plan) -> list[str]:
    return [planned.command.args[1] for planned in plan.commands]


async def test_install(runner: FakeRunner) -> None:
    """Test a missing release is installed."""
    plan = await _plan(_state(_release()), _current())
    assert plan.decisions == [
        Decision(
            "Release [ jenkins ] in namespace [ staging ] will be installed using "
            "version [ 0.9.0 ]",
            0,
            DecisionType.CREATE,
        )
    ]
    assert [planned.command.string for planned in plan.commands] == [
        "helm install jenkins stable/jenkins --namespace staging --version 0.9.0"
    ]
    assert not runner.calls


async def test_install_with_tests() -> None:
    """Test releases with tests enabled are tested after the install."""
    plan = await _plan(_state(_release(test=True)), _current())
    assert _commands(plan) == ["install", "test"]


async def test_test_hook(runner: FakeRunner) -> None:
    """Test the test hook is queued with the release tests."""
    hooks = Hooks(test="hooks/smoke.yaml")
    plan = await _plan(_state(_release(test=True, hooks=hooks)), _current())
    assert _commands(plan) == ["install", "test"]
    assert plan.commands[0].after == []
    assert [cmd.args[:2] for cmd in plan.commands[1].after] == [["kubectl", "apply"]]

    plan = await _plan(
        _state(_release(test=True, hooks=hooks, version="0.9.1")),
        _current(_observed()),
    )
    assert _commands(plan) == ["diff", "upgrade", "test"]
    assert plan.commands[2].after[0].args[-1] == "hooks/smoke.yaml"


async def test_version_bump(runner: FakeRunner) -> None:
    """Test a new chart version is diffed and upgraded."""
    release = _release(version="0.9.1")
    plan = await _plan(_state(release), _current(_observed()))
    assert _commands(plan) == ["diff", "upgrade"]
    assert plan.commands[0].command.args[:3] == ["helm", "diff", "--suppress-secrets"]
    assert plan.decisions == [
        Decision("Release [ jenkins ] will be updated", 0, DecisionType.CHANGE)
    ]
    assert not runner.calls


async def test_version_bump_kubectl_diff(runner: FakeRunner) -> None:
    """Test kubectl diffs run while deciding instead of being planned."""
    runner.add(["kubectl", "diff"], code=1, stdout="-replicas: 1\n+replicas: 2\n")
    release = _release(version="0.9.1")
    plan = await _plan(
        _state(release),
        _current(_observed()),
        options=Options(keep_untracked_releases=True, kubectl_diff=True),
    )
    assert _commands(plan) == ["upgrade"]
    assert [args[:2] for args in (c.args for c in runner.calls)] == [
        ["helm", "template"],
        ["kubectl", "diff"],
    ]
    assert runner.calls[1].stdin == ""


async def test_resolved_version_pins_release() -> None:
    """Test the resolved chart version replaces a constraint."""
    release = _release(version="0.9.*")
    charts = {release.key: ChartInfo("jenkins", "0.9.4")}
    plan = await _plan(_state(release), _current(_observed()), charts)
    assert release.version == "0.9.4"
    assert plan.commands[-1].command.args[-2:] == ["--version", "0.9.4"]


async def test_chart_rename() -> None:
    """Test a release using a new chart is reinstalled."""
    release = _release(chart="stable/jenkins-ng", version="1.0.0")
    plan = await _plan(_state(release), _current(_observed()))
    assert _commands(plan) == ["uninstall", "install"]
    assert len(plan.decisions) == 1
    assert plan.decisions[0].type == DecisionType.CHANGE
    assert "new chart [ stable/jenkins-ng ]" in plan.decisions[0].description


async def test_chart_rename_upgrade() -> None:
    """Test a renamed chart can be upgraded in place."""
    release = _release(chart="stable/jenkins-ng", version="1.0.0")
    plan = await _plan(
        _state(release),
        _current(_observed()),
        options=Options(keep_untracked_releases=True, replace_on_rename=False),
    )
    assert _commands(plan) == ["diff", "upgrade"]


async def test_protected_namespace() -> None:
    """Test releases in protected namespaces are never touched."""
    release = _release(namespace="production", version="2.0.0")
    plan = await _plan(
        _state(release), _current(_observed(namespace="production"))
    )
    assert plan.decisions == [
        Decision(
            "Release [ jenkins ] in namespace [ production ] is PROTECTED. "
            "Operations are not allowed on this release until protection is removed.",
            0,
            DecisionType.NOOP,
        )
    ]
    assert not plan.commands


async def test_protected_release() -> None:
    """Test a protected release can't be deleted."""
    release = _release(protected=True, enabled=False)
    plan = await _plan(_state(release), _current(_observed()))
    assert [d.type for d in plan.decisions] == [DecisionType.NOOP]
    assert not plan.commands


async def test_protection_ignored_with_ns_override() -> None:
    """Test namespace protection doesn't apply to the override namespace."""
    release = _release(namespace="production", enabled=False)
    plan = await _plan(
        _state(release),
        _current(_observed(namespace="production")),
        options=Options(keep_untracked_releases=True, ns_override="production"),
    )
    assert _commands(plan) == ["uninstall"]


async def test_context_conflict() -> None:
    """Test a release owned by another context stops the run."""
    with pytest.raises(ContextConflictError) as exc_info:
        await _plan(_state(_release()), _current(_observed(context="alpha")))
    assert exc_info.value.owner_context == "alpha"
    assert exc_info.value.context == "default"
    assert "managed by context [ alpha ]" in str(exc_info.value)


async def test_untracked_release(runner: FakeRunner) -> None:
    """Test managed releases missing from the desired state are deleted."""
    runner.add(
        ["kubectl", "get", "secret", "-n", "staging"],
        stdout="sh.helm.release.v1.grafana.v1   default\n",
    )
    desired = _state(_release())
    plan = await _plan(
        desired,
        _current(_observed(), _observed("grafana", "grafana-6.0.0")),
        options=Options(),
        observer=Observer(Options(), "secret"),
    )
    assert Decision(
        "Untracked release [ grafana ] found and it will be deleted",
        UNTRACKED_PRIORITY,
        DecisionType.DELETE,
    ) in plan.decisions
    untracked = plan.commands[0]
    assert untracked.priority == -800
    assert untracked.command.string == "helm uninstall grafana --namespace staging"
    assert untracked.target is None


async def test_untracked_release_before_low_priorities(runner: FakeRunner) -> None:
    """Test the sweep runs before releases with priorities below its own."""
    runner.add(
        ["kubectl", "get", "secret", "-n", "staging"],
        stdout="sh.helm.release.v1.grafana.v1   default\n",
    )
    plan = await _plan(
        _state(_release(priority=-900)),
        _current(_observed("grafana", "grafana-6.0.0")),
        options=Options(),
        observer=Observer(Options(), "secret"),
    )
    assert [(p.command.args[1], p.priority) for p in plan.commands] == [
        ("uninstall", -901),
        ("install", -900),
    ]


async def test_keep_untracked_releases(runner: FakeRunner) -> None:
    """Test the sweep can be turned off."""
    await _plan(
        _state(_release()),
        _current(),
        options=Options(keep_untracked_releases=True),
        observer=Observer(Options(), "secret"),
    )
    assert not runner.commands("kubectl")


async def test_up_to_date(runner: FakeRunner) -> None:
    """Test a deployed release without differences is left alone."""
    plan = await _plan(_state(_release()), _current(_observed()))
    assert plan.decisions == [
        Decision(
            "Release [ jenkins ] installed and up-to-date", 0, DecisionType.NOOP
        )
    ]
    assert not plan.commands
    assert runner.commands("helm", "diff")


async def test_values_changed(runner: FakeRunner) -> None:
    """Test a release with differences is upgraded."""
    runner.add(["helm", "diff"], stdout="staging, jenkins, Deployment has changed")
    plan = await _plan(_state(_release()), _current(_observed()))
    assert _commands(plan) == ["upgrade"]
    assert plan.decisions[0].type == DecisionType.CHANGE


async def test_always_upgrade(runner: FakeRunner) -> None:
    """Test releases are upgraded without diffing."""
    plan = await _plan(
        _state(_release()),
        _current(_observed()),
        options=Options(keep_untracked_releases=True, always_upgrade=True),
    )
    assert _commands(plan) == ["diff", "upgrade"]
    assert not runner.calls


async def test_diff_failure(runner: FakeRunner) -> None:
    """Test a diff that can't run fails the decision."""
    runner.add(["helm", "diff"], code=1, stderr="Error: chart not found")
    with pytest.raises(DecisionException, match="could not be diffed"):
        await _plan(_state(_release()), _current(_observed()))


async def test_disabled_deployed() -> None:
    """Test a disabled release is deleted."""
    plan = await _plan(_state(_release(enabled=False)), _current(_observed()))
    assert plan.decisions[0].description == (
        "Release [ jenkins ] in namespace [ staging ] is desired to be DELETED."
    )
    assert _commands(plan) == ["uninstall"]


async def test_disabled_missing() -> None:
    """Test a disabled release which isn't deployed."""
    plan = await _plan(_state(_release(enabled=False)), _current())
    assert [d.type for d in plan.decisions] == [DecisionType.NOOP]
    assert not plan.commands


async def test_reverse_delete() -> None:
    """Test deletes run in reverse priority order."""
    release = _release(enabled=False, priority=-3)
    plan = await _plan(
        _state(release, reverse_delete=True), _current(_observed())
    )
    assert plan.commands[0].priority == 3
    assert plan.decisions[0].priority == -3


async def test_destroy() -> None:
    """Test destroy deletes every deployed release."""
    desired = _state(_release(), _release("grafana"))
    plan = await _plan(
        desired,
        _current(_observed()),
        options=Options(keep_untracked_releases=True, destroy=True),
    )
    assert [d.type for d in plan.decisions] == [DecisionType.DELETE]
    assert [c.command.string for c in plan.commands] == [
        "helm uninstall jenkins --namespace staging"
    ]


async def test_failed_release() -> None:
    """Test a failed release is upgraded."""
    plan = await _plan(
        _state(_release()), _current(_observed(status="failed"))
    )
    assert _commands(plan) == ["upgrade"]
    assert "FAILED" in plan.decisions[0].description


async def test_uninstalled_release() -> None:
    """Test an uninstalled release is rolled back and upgraded."""
    plan = await _plan(
        _state(_release()), _current(_observed(status="uninstalled", revision=4))
    )
    assert [c.command.string for c in plan.commands] == [
        "helm rollback jenkins 4 --namespace staging",
        "helm upgrade jenkins stable/jenkins --namespace staging --version 0.9.0",
    ]
    assert plan.decisions[0].type == DecisionType.CREATE


async def test_unexpected_status() -> None:
    """Test an unknown status is fatal."""
    with pytest.raises(DecisionException, match="unexpected state"):
        await _plan(_state(_release()), _current(_observed(status="superseded")))


async def test_pending_fatal() -> None:
    """Test a pending release stops the run without retries."""
    with pytest.raises(DecisionException, match="pending"):
        await _plan(
            _state(_release()), _current(_observed(status="pending-upgrade"))
        )


async def test_pending_skipped() -> None:
    """Test pending releases can be ignored."""
    plan = await _plan(
        _state(_release(), skip_pending_apps=True),
        _current(_observed(status="pending-install")),
    )
    assert [d.type for d in plan.decisions] == [DecisionType.IGNORED]


async def test_pending_retried(runner: FakeRunner, sleeps: list[float]) -> None:
    """Test pending releases are checked again until they settle."""
    runner.add_sequence(
        ["helm", "status"],
        [
            ExitStatus(0, '{"version": 3, "info": {"status": "pending-upgrade"}}'),
            ExitStatus(0, '{"version": 3, "info": {"status": "failed"}}'),
        ],
    )
    plan = await _plan(
        _state(_release()),
        _current(_observed(status="pending-upgrade")),
        options=Options(keep_untracked_releases=True, pending_max_retries=3),
        observer=Observer(Options(), "secret"),
    )
    assert sleeps == [16, 8]
    assert _commands(plan) == ["upgrade"]


async def test_pending_retries_exhausted(
    runner: FakeRunner, sleeps: list[float]
) -> None:
    """Test a release still pending after every retry is fatal."""
    runner.add(
        ["helm", "status"], stdout='{"version": 3, "info": {"status": "pending-upgrade"}}'
    )
    with pytest.raises(DecisionException, match="pending"):
        await _plan(
            _state(_release()),
            _current(_observed(status="pending-upgrade")),
            options=Options(keep_untracked_releases=True, pending_max_retries=2),
            observer=Observer(Options(), "secret"),
        )
    assert sleeps == [8, 4]


async def test_ignored() -> None:
    """Test releases outside of the selection are reported unless skipped."""
    release = _release()
    release.disabled = True
    plan = await _plan(_state(release), _current())
    assert [d.type for d in plan.decisions] == [DecisionType.IGNORED]
    plan = await _plan(
        _state(release),
        _current(),
        options=Options(keep_untracked_releases=True, skip_ignored=True),
    )
    assert not plan.decisions


async def test_move(runner: FakeRunner) -> None:
    """Test a release moved to another namespace is reinstalled there."""
    runner.add(
        ["kubectl", "get", "secret", "-n", "staging"],
        stdout="sh.helm.release.v1.jenkins.v2   default\n",
    )
    release = _release(namespace="staging")
    desired = _state(release)
    desired.namespaces["qa"] = Namespace()
    desired.apps["jenkins"].namespace = "qa"
    plan = await _plan(
        desired,
        _current(_observed(namespace="staging")),
        options=Options(),
        observer=Observer(Options(), "secret"),
    )
    assert [c.command.string for c in plan.commands] == [
        "helm uninstall jenkins --namespace staging",
        "helm install jenkins stable/jenkins --namespace qa --version 0.9.0",
    ]
    assert [d.type for d in plan.decisions] == [
        DecisionType.CHANGE,
        DecisionType.CHANGE,
    ]
    assert plan.decisions[1].description.startswith("WARNING: moving release")


async def test_move_from_protected_namespace() -> None:
    """Test a release can't be moved out of a protected namespace."""
    desired = _state(_release())
    plan = await _plan(desired, _current(_observed(namespace="production")))
    assert [d.type for d in plan.decisions] == [DecisionType.NOOP]
    assert not plan.commands


async def test_secrets_decrypted() -> None:
    """Test secrets files are decrypted and passed after values files."""
    release = _release(values_file="values.yaml", secrets_file="secrets.yaml")
    decryptor = FakeDecryptor()
    plan = await _plan(_state(release), _current(), decryptor=decryptor)
    assert plan.commands[0].command.args[-4:] == [
        "-f",
        "values.yaml",
        "-f",
        "secrets.yaml.dec",
    ]
    assert decryptor.decrypted == ["secrets.yaml"]


async def test_secrets_without_decryptor() -> None:
    """Test secrets files need a decryptor."""
    with pytest.raises(DecisionException, match="no decryptor"):
        await _plan(_state(_release(secrets_file="secrets.yaml")), _current())
