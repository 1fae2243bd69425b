"""Run options shared by every stage of a helmsman invocation.

The `Options` object is built once by the command line tool (or directly by
library users) and threaded through loading, validation, decision making and
plan execution. Nothing in the engine reads process wide flags.
"""

from dataclasses import dataclass, field
from pathlib import Path

__all__ = [
    "Options",
    "DEFAULT_CONTEXT",
    "DEFAULT_STORAGE_BACKEND",
    "UNTRACKED_PRIORITY",
]

DEFAULT_CONTEXT = "default"
DEFAULT_STORAGE_BACKEND = "secret"

# Untracked releases are removed before any user authored work: at this
# priority, or just below the lowest priority of the plan when that is lower.
UNTRACKED_PRIORITY = -800

# Number of concurrent per release context lookups while observing the cluster.
OBSERVER_POOL_SIZE = 10


@dataclass
class Options:
    """Flags controlling a single helmsman run."""

    files: list[Path] = field(default_factory=list)
    """Desired state files, merged in order."""

    env_files: list[Path] = field(default_factory=list)
    """Files to load environment variables from, later files win."""

    spec_file: Path | None = None
    """Composition file listing desired state files with priorities."""

    kubeconfig: str | None = None
    """Path to a kubeconfig exported as KUBECONFIG for helm and kubectl."""

    targets: list[str] = field(default_factory=list)
    """Only consider releases with these names."""

    groups: list[str] = field(default_factory=list)
    """Only consider releases in these groups."""

    exclude_targets: list[str] = field(default_factory=list)
    """Never consider releases with these names."""

    exclude_groups: list[str] = field(default_factory=list)
    """Never consider releases in these groups."""

    ns_override: str | None = None
    """Force every release into this namespace."""

    context_override: str | None = None
    """Override the managing context of the desired and observed state."""

    apply: bool = False
    dry_run: bool = False
    destroy: bool = False
    keep_untracked_releases: bool = False
    no_ns: bool = False

    show_diff: bool = False
    diff_context: int = -1
    show_secrets: bool = False
    kubectl_diff: bool = False
    no_color: bool = False

    env_subst: bool = True
    subst_env_values: bool = False
    ssm_subst: bool = True
    subst_ssm_values: bool = False
    recursive_env_expand: bool = True

    update_deps: bool = False
    force_upgrades: bool = False
    replace_on_rename: bool = True
    always_upgrade: bool = False
    no_update: bool = False

    parallel: int = 1
    """Size of the decision and execution pools."""

    skip_validation: bool = False
    skip_ignored: bool = False
    skip_pending: bool = False
    pending_max_retries: int = 0

    check_for_chart_updates: bool = False
    download_charts: bool = False

    detailed_exit_code: bool = False
    no_cleanup: bool = False
    migrate_context: bool = False

    verbose: bool = False
    debug: bool = False

    @property
    def helm_dry_run_flags(self) -> list[str]:
        """Flags appended to mutating helm commands in dry-run mode."""
        if self.dry_run:
            return ["--dry-run", "--debug"]
        return []

    def kube_dry_run_flag(self, action: str = "apply") -> str:
        """Flag appended to mutating kubectl commands in dry-run mode.

        `kubectl apply` is validated by the server, other actions on the client.
        """
        if not self.dry_run:
            return ""
        if action == "apply":
            return "--dry-run=server"
        return "--dry-run=client"

    @property
    def has_selection(self) -> bool:
        """Return True if releases were selected by target or group."""
        return bool(self.targets or self.groups)

    @property
    def pool_size(self) -> int:
        """Parallelism for the decision and execution pools, at least 1."""
        return max(self.parallel, 1)
