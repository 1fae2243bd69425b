"""Command line tool for reconciling helm releases with a desired state file."""

import argparse
import asyncio
import logging
import sys
import traceback

from helmsman import __version__
from helmsman.app import run
from helmsman.exceptions import HelmsmanException
from . import flags

_LOGGER = logging.getLogger(__name__)

EXIT_CHANGES = 2


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="helmsman",
        description=(
            "Command line utility for deploying helm charts declared in "
            "desired state files."
        ),
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show verbose execution logs and full command errors",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show debug logs and print the commands of the plan",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    flags.add_input_flags(parser)
    flags.add_selection_flags(parser)
    flags.add_action_flags(parser)
    flags.add_diff_flags(parser)
    flags.add_substitution_flags(parser)
    flags.add_upgrade_flags(parser)
    flags.add_tolerance_flags(parser)
    return parser


def _log_level(args: argparse.Namespace) -> str:
    if args.log_level:
        return str(args.log_level)
    if args.debug:
        return "DEBUG"
    return "INFO"


def main(argv: list[str] | None = None) -> None:
    """Helmsman command line tool main entry point."""
    parser = _make_parser()
    args = parser.parse_args(argv)
    flags.validate_args(parser, args)

    level = _log_level(args)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s")

    options = flags.options(**vars(args))
    try:
        plan = asyncio.run(run(options))
    except HelmsmanException as err:
        if level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("helmsman error: ", err, file=sys.stderr)
        sys.exit(1)

    if options.detailed_exit_code and plan.has_changes:
        sys.exit(EXIT_CHANGES)
    sys.exit(0)


if __name__ == "__main__":
    main()
