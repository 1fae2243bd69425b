"""Library for the command line flags of helmsman."""

from argparse import (
    Action,
    ArgumentParser,
    BooleanOptionalAction,
    Namespace,
)
import dataclasses
import logging
import pathlib
from typing import Any

from helmsman.config import Options

_LOGGER = logging.getLogger(__name__)


class CommaAppendAction(Action):
    """Append comma separated values to the argument list."""

    def __call__(
        self,
        parser: ArgumentParser,
        namespace: Namespace,
        values: Any,
        option_string: str | None = None,
    ) -> None:
        result = list(getattr(namespace, self.dest) or [])
        result.extend(value for value in values.split(",") if value)
        setattr(namespace, self.dest, result)


def add_input_flags(args: ArgumentParser) -> None:
    """Add flags selecting the desired state and environment files."""
    args.add_argument(
        "-f",
        dest="files",
        type=pathlib.Path,
        action="append",
        default=[],
        help="Desired state file, may be repeated. Files are merged in order",
    )
    args.add_argument(
        "-e",
        dest="env_files",
        type=pathlib.Path,
        action="append",
        default=[],
        help="File to load environment variables from, may be repeated",
    )
    args.add_argument(
        "--spec",
        dest="spec_file",
        type=pathlib.Path,
        default=None,
        help="Specification file listing desired state files with priorities",
    )
    args.add_argument(
        "--kubeconfig",
        type=str,
        default=None,
        help="Path to the kubeconfig used by helm and kubectl",
    )


def add_selection_flags(args: ArgumentParser) -> None:
    """Add flags restricting the releases considered by the run."""
    for flag, dest, description in (
        ("--target", "targets", "Limit execution to releases with these names"),
        ("--group", "groups", "Limit execution to releases in these groups"),
        ("--exclude-target", "exclude_targets", "Exclude releases with these names"),
        ("--exclude-group", "exclude_groups", "Exclude releases in these groups"),
    ):
        args.add_argument(
            flag,
            dest=dest,
            action=CommaAppendAction,
            default=[],
            help=f"{description}, comma separated and may be repeated",
        )
    args.add_argument(
        "--ns-override",
        type=str,
        default=None,
        help="Override the namespace of every release, only this namespace is created",
    )
    args.add_argument(
        "--context-override",
        type=str,
        default=None,
        help="Override the managing context of the desired and current state",
    )


def add_action_flags(args: ArgumentParser) -> None:
    """Add flags controlling what the run does with the plan."""
    args.add_argument(
        "--apply", action="store_true", help="Apply the plan directly"
    )
    args.add_argument(
        "--dry-run",
        action="store_true",
        help="Apply the plan with helm and kubectl dry-run flags",
    )
    args.add_argument(
        "--destroy",
        action="store_true",
        help="Delete all deployed releases of the desired state",
    )
    args.add_argument(
        "--keep-untracked-releases",
        action="store_true",
        help="Keep releases that are managed by helmsman but no longer tracked",
    )
    args.add_argument(
        "--no-ns", action="store_true", help="Don't create or configure namespaces"
    )
    args.add_argument(
        "-p",
        dest="parallel",
        type=int,
        default=1,
        help="Max number of concurrent decisions and commands",
    )
    args.add_argument(
        "--detailed-exit-code",
        action="store_true",
        help="Exit with code 2 when the plan contains changes",
    )
    args.add_argument(
        "--no-cleanup",
        action="store_true",
        help="Keep rendered values, decrypted secrets and downloaded files",
    )
    args.add_argument(
        "--migrate-context",
        action="store_true",
        help="Relabel the releases of the desired state with the managing context",
    )


def add_diff_flags(args: ArgumentParser) -> None:
    """Add flags controlling how diffs are computed and shown."""
    args.add_argument(
        "--show-diff", action="store_true", help="Show helm diff results"
    )
    args.add_argument(
        "--diff-context",
        type=int,
        default=-1,
        help="Number of lines of context to show around changes in helm diff output",
    )
    args.add_argument(
        "--show-secrets",
        action="store_true",
        help="Don't suppress secret values in helm diff output",
    )
    args.add_argument(
        "--kubectl-diff",
        action="store_true",
        help="Use kubectl diff instead of the helm diff plugin",
    )
    args.add_argument(
        "--no-color", action="store_true", help="Don't use colors in diff output"
    )


def add_substitution_flags(args: ArgumentParser) -> None:
    """Add flags controlling environment and SSM substitution."""
    args.add_argument(
        "--env-subst",
        default=True,
        action=BooleanOptionalAction,
        help="Substitute environment variables in desired state files",
    )
    args.add_argument(
        "--subst-env-values",
        action="store_true",
        help="Substitute environment variables in values, secrets and hook files",
    )
    args.add_argument(
        "--ssm-subst",
        default=True,
        action=BooleanOptionalAction,
        help="Substitute AWS SSM parameters in desired state files",
    )
    args.add_argument(
        "--subst-ssm-values",
        action="store_true",
        help="Substitute AWS SSM parameters in values, secrets and hook files",
    )
    args.add_argument(
        "--recursive-env-expand",
        default=True,
        action=BooleanOptionalAction,
        help="Expand environment variables found in the values of other variables",
    )


def add_upgrade_flags(args: ArgumentParser) -> None:
    """Add flags controlling how releases are upgraded."""
    args.add_argument(
        "--update-deps",
        action="store_true",
        help="Run helm dependency update on local charts",
    )
    args.add_argument(
        "--force-upgrades",
        action="store_true",
        help="Pass --force to helm upgrade",
    )
    args.add_argument(
        "--replace-on-rename",
        default=True,
        action=BooleanOptionalAction,
        help="Uninstall and reinstall a release whose chart name changed",
    )
    args.add_argument(
        "--always-upgrade",
        action="store_true",
        help="Upgrade releases even when the diff is empty",
    )
    args.add_argument(
        "--no-update",
        action="store_true",
        help="Skip updating the helm repositories",
    )
    args.add_argument(
        "--check-for-chart-updates",
        action="store_true",
        help="Warn when newer chart versions are available",
    )
    args.add_argument(
        "--download-charts",
        action="store_true",
        help="Pull remote charts locally before using them",
    )


def add_tolerance_flags(args: ArgumentParser) -> None:
    """Add flags relaxing validation and scheduling checks."""
    args.add_argument(
        "--skip-validation",
        action="store_true",
        help="Skip desired state and chart validation",
    )
    args.add_argument(
        "--skip-ignored",
        action="store_true",
        help="Don't show releases which are not selected by the run",
    )
    args.add_argument(
        "--skip-pending",
        action="store_true",
        help="Ignore releases in a pending state instead of failing",
    )
    args.add_argument(
        "--pending-max-retries",
        type=int,
        default=0,
        help="Number of times to check a pending release again before failing",
    )


def validate_args(parser: ArgumentParser, args: Namespace) -> None:
    """Reject flag combinations that contradict each other."""
    if args.apply and args.dry_run:
        parser.error("--apply and --dry-run can't be used together")
    if args.apply and args.destroy:
        parser.error("--destroy and --apply can't be used together")
    if args.targets and args.groups:
        parser.error("--target and --group can't be used together")
    if args.parallel < 1:
        parser.error("-p must be at least 1")
    if not args.files and not args.spec_file:
        parser.error("at least one desired state file is required, use -f or --spec")


def options(**kwargs: Any) -> Options:
    """Create an Options object from parsed flags."""
    names = {field.name for field in dataclasses.fields(Options)}
    return Options(**{key: value for key, value in kwargs.items() if key in names})
