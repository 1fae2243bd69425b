"""Builders for the commands that act on a release.

These are pure functions over a release, the run options and the settings:
they never touch the cluster and only return `Command` objects which the
plan executes later. Secrets files are passed in already decrypted.

```python
from helmsman.release_ops import install_cmd

cmd = install_cmd(release, options)
print(cmd.string)
```
"""

from collections.abc import Sequence
import logging

from .command import Command
from .config import Options
from .helm import helm_cmd
from .kube import kubectl_cmd
from .observer import CONTEXT_LABEL, MANAGED_BY_LABEL
from .state import (
    POST_DELETE,
    POST_INSTALL,
    POST_UPGRADE,
    PRE_DELETE,
    PRE_INSTALL,
    PRE_UPGRADE,
    TEST as TEST_SLOT,
    ExecHook,
    HookAction,
    ManifestHook,
    Release,
    UrlHook,
)

__all__ = [
    "INSTALL",
    "UPGRADE",
    "DELETE",
    "TEST",
    "install_cmd",
    "upgrade_cmd",
    "uninstall_cmd",
    "untracked_uninstall_cmd",
    "rollback_cmd",
    "diff_cmds",
    "test_cmd",
    "label_cmd",
    "hook_cmds",
]

_LOGGER = logging.getLogger(__name__)

INSTALL = "install"
UPGRADE = "upgrade"
DELETE = "delete"
TEST = "test"

# Hook slots run before and after each lifecycle event. The test hook runs
# right after `helm test`.
_EVENT_SLOTS: dict[str, tuple[str | None, str | None]] = {
    INSTALL: (PRE_INSTALL, POST_INSTALL),
    UPGRADE: (PRE_UPGRADE, POST_UPGRADE),
    DELETE: (PRE_DELETE, POST_DELETE),
    TEST: (None, TEST_SLOT),
}


def _escape(value: str) -> str:
    return value.replace(",", "\\,")


def values_args(release: Release, decrypted: Sequence[str] = ()) -> list[str]:
    """Return the `-f` arguments for values files followed by decrypted secrets."""
    args: list[str] = []
    for path in [*release.all_values_files(), *decrypted]:
        args.extend(["-f", path])
    return args


def set_args(release: Release) -> list[str]:
    """Return the `--set`, `--set-string` and `--set-file` arguments."""
    args: list[str] = []
    for flag, values in (
        ("--set", release.set_values),
        ("--set-string", release.set_string),
        ("--set-file", release.set_file),
    ):
        for key, value in values.items():
            args.extend([flag, f"{key}={_escape(str(value))}"])
    return args


def _no_hooks(release: Release) -> list[str]:
    return ["--no-hooks"] if release.no_hooks else []


def _wait(release: Release) -> list[str]:
    return ["--wait"] if release.wait else []


def _timeout(release: Release) -> list[str]:
    return ["--timeout", f"{release.timeout}s"] if release.timeout else []


def release_flags(release: Release, options: Options, upgrade: bool = False) -> list[str]:
    """Return the behavior flags shared by install and upgrade."""
    args = [*_no_hooks(release), *_wait(release), *_timeout(release)]
    if release.max_history:
        args.extend(["--history-max", str(release.max_history)])
    if release.post_renderer:
        args.extend(["--post-renderer", release.post_renderer])
    args.extend(options.helm_dry_run_flags)
    if upgrade and options.force_upgrades:
        args.append("--force")
    args.extend(release.helm_flags)
    return args


def _chart_args(release: Release, namespace: str | None = None) -> list[str]:
    return [
        release.name,
        release.chart,
        "--namespace",
        namespace or release.namespace,
        "--version",
        release.version,
    ]


def install_cmd(
    release: Release, options: Options, decrypted: Sequence[str] = ()
) -> Command:
    """Return the command installing a release."""
    return helm_cmd(
        [
            "install",
            *_chart_args(release),
            *values_args(release, decrypted),
            *set_args(release),
            *release_flags(release, options),
        ],
        f"Install release [ {release.name} ] version [ {release.version} ] in "
        f"namespace [ {release.namespace} ]",
    )


def upgrade_cmd(
    release: Release, options: Options, decrypted: Sequence[str] = ()
) -> Command:
    """Return the command upgrading a release in place."""
    return helm_cmd(
        [
            "upgrade",
            *_chart_args(release),
            *values_args(release, decrypted),
            *set_args(release),
            *release_flags(release, options, upgrade=True),
        ],
        f"Upgrade release [ {release.name} ] to version [ {release.version} ] in "
        f"namespace [ {release.namespace} ]",
    )


def uninstall_cmd(
    release: Release, options: Options, namespace: str | None = None
) -> Command:
    """Return the command uninstalling a release, optionally from another namespace."""
    namespace = namespace or release.namespace
    return helm_cmd(
        ["uninstall", release.name, "--namespace", namespace, *options.helm_dry_run_flags],
        f"Delete release [ {release.name} ] in namespace [ {namespace} ]",
    )


def untracked_uninstall_cmd(name: str, namespace: str, options: Options) -> Command:
    """Return the command uninstalling a release no longer in the desired state."""
    return helm_cmd(
        ["uninstall", name, "--namespace", namespace, *options.helm_dry_run_flags],
        f"Deleting untracked release [ {name} ] in namespace [ {namespace} ]",
    )


def rollback_cmd(release: Release, revision: int, options: Options) -> Command:
    """Return the command rolling an uninstalled release back to a revision."""
    return helm_cmd(
        [
            "rollback",
            release.name,
            str(revision),
            "--namespace",
            release.namespace,
            *_wait(release),
            *_timeout(release),
            *_no_hooks(release),
            *options.helm_dry_run_flags,
        ],
        f"Rolling back release [ {release.name} ] in namespace [ {release.namespace} ]",
    )


def diff_cmds(
    release: Release, options: Options, decrypted: Sequence[str] = ()
) -> list[Command]:
    """Return the commands diffing the desired release against the cluster.

    The commands are meant to be run piped together. With `kubectl_diff` the
    chart is rendered locally and compared by `kubectl diff`, which exits 1
    when there are differences.
    """
    description = (
        f"Diffing release [ {release.name} ] in namespace [ {release.namespace} ]"
    )
    if options.kubectl_diff:
        template = helm_cmd(
            [
                "template",
                *_chart_args(release),
                *values_args(release, decrypted),
                *set_args(release),
            ],
            description,
        )
        diff = kubectl_cmd(["diff", "--namespace", release.namespace, "-f", "-"])
        diff.retcodes = [1]
        return [template, diff]
    args = ["diff"]
    if options.no_color:
        args.append("--no-color")
    if not options.show_secrets:
        args.append("--suppress-secrets")
    if options.diff_context != -1:
        args.extend(["--context", str(options.diff_context)])
    args.extend(
        [
            "upgrade",
            *_chart_args(release),
            *values_args(release, decrypted),
            *set_args(release),
            *release.helm_diff_flags,
        ]
    )
    return [helm_cmd(args, description)]


def test_cmd(release: Release) -> Command:
    """Return the command running the tests of a release."""
    return helm_cmd(
        ["test", release.name, "--namespace", release.namespace],
        f"Running tests for release [ {release.name} ] in namespace "
        f"[ {release.namespace} ]",
    )


def label_cmd(release: Release, storage_backend: str, context: str) -> Command:
    """Return the command stamping helmsman labels on a release's storage objects."""
    return kubectl_cmd(
        [
            "label",
            storage_backend,
            "-n",
            release.namespace,
            "-l",
            f"owner=helm,name={release.name}",
            MANAGED_BY_LABEL,
            f"NAMESPACE={release.namespace}",
            f"{CONTEXT_LABEL}={context}",
            "--overwrite",
        ],
        f"Applying Helmsman labels to [ {release.name} ] release",
        best_effort=True,
    )


def _hook_label(slot: str) -> str:
    """Return the dashed name of a hook slot, e.g. `pre-install`."""
    return "".join(f"-{c.lower()}" if c.isupper() else c for c in slot)


def _action_cmds(
    release: Release,
    slot: str,
    action: HookAction,
    namespace: str,
    options: Options,
) -> list[Command]:
    label = _hook_label(slot)
    if isinstance(action, ExecHook):
        if options.dry_run:
            _LOGGER.info(
                "Skipping %s hook of release [ %s ] in dry-run mode", label, release.name
            )
            return []
        return [
            Command(
                list(action.argv),
                description=f"Run {label} hook {' '.join(action.argv)}",
            )
        ]
    target = action.path if isinstance(action, ManifestHook) else action.url
    cmds = [
        kubectl_cmd(
            [
                "apply",
                "-n",
                namespace,
                "-f",
                target,
                options.kube_dry_run_flag("apply"),
            ],
            f"Apply {label} manifest {target}",
        )
    ]
    hooks = release.hooks
    if options.dry_run or hooks is None or not hooks.success_condition:
        return cmds
    wait = [
        "wait",
        "-n",
        namespace,
        "-f",
        target,
        f"--for=condition={hooks.success_condition}",
    ]
    if hooks.success_timeout:
        wait.append(f"--timeout={hooks.success_timeout}")
    cmds.append(kubectl_cmd(wait, f"Wait for {label} : {target}"))
    if hooks.delete_on_success:
        cmds.append(
            kubectl_cmd(
                ["delete", "-n", namespace, "-f", target],
                f"Delete {label} : {target}",
                best_effort=True,
            )
        )
    return cmds


def hook_cmds(
    release: Release, event: str, options: Options, namespace: str | None = None
) -> tuple[list[Command], list[Command]]:
    """Return the commands to run before and after a lifecycle event."""
    namespace = namespace or release.namespace
    pre, post = _EVENT_SLOTS[event]
    result: list[list[Command]] = []
    for slot in (pre, post):
        cmds: list[Command] = []
        if slot is not None and (action := release.hook(slot)) is not None:
            cmds = _action_cmds(release, slot, action, namespace, options)
        result.append(cmds)
    return result[0], result[1]
