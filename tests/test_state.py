"""Tests for the desired state model."""

from pathlib import Path

import pytest
import yaml

from helmsman.state import (
    ExecHook,
    Hooks,
    ManifestHook,
    Quotas,
    Release,
    State,
    StateFiles,
    UrlHook,
    parse_hook,
)


@pytest.fixture(name="state")
def state_fixture(testdata: Path) -> State:
    """Fixture for the example desired state."""
    return State.parse_yaml((testdata / "example.yaml").read_text())


def test_parse_sections(state: State) -> None:
    """Test the sections of a desired state file are decoded."""
    assert state.metadata == {"org": "example.com", "maintainer": "platform team"}
    assert state.settings.kube_context == "minikube"
    assert state.settings.global_max_history == 5
    assert state.helm_repos == {"stable": "https://charts.example.com/stable"}
    assert list(state.namespaces) == ["staging", "production"]
    assert state.namespaces["staging"].labels == {"env": "staging"}
    assert state.namespaces["production"].annotations == {"owner": "platform"}
    assert list(state.apps) == ["jenkins", "artifactory", "demo"]


def test_parse_release(state: State) -> None:
    """Test the aliased fields of a release."""
    jenkins = state.apps["jenkins"]
    assert jenkins.chart == "stable/jenkins"
    assert jenkins.version == "0.9.0"
    assert jenkins.values_file == "values/jenkins.yaml"
    assert jenkins.priority == -3
    assert jenkins.wait is True
    assert jenkins.timeout == 300
    assert jenkins.set_values == {"master.image": "jenkins/jenkins"}
    assert jenkins.hooks is not None
    assert jenkins.hooks.pre_install == "hooks/pre.yaml"
    assert jenkins.hooks.success_condition == "Complete"
    assert jenkins.hooks.delete_on_success is True


def test_tri_state_booleans(state: State) -> None:
    """Test omitted booleans decode as unset rather than false."""
    artifactory = state.apps["artifactory"]
    assert artifactory.enabled is True
    assert artifactory.protected is None
    assert artifactory.wait is None
    assert state.namespaces["staging"].protected is False
    assert state.namespaces["production"].protected is True


def test_unknown_key(testdata: Path) -> None:
    """Test unknown keys are rejected."""
    with pytest.raises(Exception, match="chrt"):
        State.parse_yaml((testdata / "unknown_key.yaml").read_text())


def test_release_key() -> None:
    """Test the identity of a release."""
    release = Release(name="jenkins", namespace="staging")
    assert release.key == "jenkins-staging"


def test_release_disabled_unless_enabled() -> None:
    """Test releases are only deployed when enabled."""
    assert not Release(name="a").is_enabled
    assert not Release(name="a", enabled=False).is_enabled
    assert Release(name="a", enabled=True).is_enabled


def test_values_files_order() -> None:
    """Test the single values file wins over the list."""
    release = Release(values_files=["a.yaml", "b.yaml"])
    assert release.all_values_files() == ["a.yaml", "b.yaml"]
    release.values_file = "c.yaml"
    assert release.all_values_files() == ["c.yaml"]
    assert Release(secrets_files=["s.yaml"]).all_secrets_files() == ["s.yaml"]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("hooks/job.yaml", ManifestHook("hooks/job.yaml")),
        ("hooks/job.JSON", ManifestHook("hooks/job.JSON")),
        ("https://example.com/job.yaml", UrlHook("https://example.com/job.yaml")),
        ("./scripts/check.sh --fast", ExecHook(["./scripts/check.sh", "--fast"])),
        ("echo 'hello world'", ExecHook(["echo", "hello world"])),
    ],
)
def test_parse_hook(value: str, expected: object) -> None:
    """Test classifying hook values."""
    assert parse_hook(value) == expected


def test_hook_slots() -> None:
    """Test reading and writing hook slots by name."""
    hooks = Hooks(pre_install="pre.yaml", test="run-tests")
    assert hooks.slots() == {"preInstall": "pre.yaml", "test": "run-tests"}
    hooks.set_slot("postDelete", "cleanup.yaml")
    assert hooks.get("postDelete") == "cleanup.yaml"
    assert hooks.action("preUpgrade") is None
    assert hooks.action("test") == ExecHook(["run-tests"])


def test_release_hook_without_hooks() -> None:
    """Test a release without hooks has no hook actions."""
    assert Release().hook("preInstall") is None


def test_quotas_hard() -> None:
    """Test the ResourceQuota hard limits."""
    quotas = Quotas.from_dict(
        {
            "pods": "10",
            "limits.cpu": "2",
            "requests.memory": "1Gi",
            "customQuotas": [{"name": "requests.nvidia.com/gpu", "value": "1"}],
        }
    )
    assert quotas.hard() == {
        "pods": "10",
        "limits.cpu": "2",
        "requests.memory": "1Gi",
        "requests.nvidia.com/gpu": "1",
    }


def test_namespace_helpers(state: State) -> None:
    """Test namespace lookups."""
    assert state.is_namespace_defined("staging")
    assert not state.is_namespace_defined("kube-system")
    assert state.is_namespace_protected("production")
    assert not state.is_namespace_protected("staging")
    assert not state.is_namespace_protected("unknown")


def test_managing_context() -> None:
    """Test the default managing context."""
    assert State().managing_context == "default"
    assert State(context="alpha").managing_context == "alpha"


def test_empty_entries() -> None:
    """Test namespaces and apps declared without a body."""
    state = State.parse_yaml("namespaces:\n  staging:\napps:\n  web:\n")
    assert state.namespaces["staging"].protected is None
    assert state.apps["web"].chart == ""


def test_yaml_round_trip(testdata: Path) -> None:
    """Test serializing a desired state preserves its content."""
    content = (testdata / "example.yaml").read_text()
    state = State.parse_yaml(content)
    assert yaml.safe_load(state.to_yaml()) == yaml.safe_load(content)


def test_state_files(testdata: Path) -> None:
    """Test parsing a spec file."""
    spec = StateFiles.parse_yaml((testdata / "spec.yaml").read_text())
    assert [(ref.path, ref.priority) for ref in spec.state_files] == [
        ("override.yaml", 0),
        ("example.yaml", -10),
    ]
