"""The plan of decisions and commands that converge a cluster.

Decisions are human readable statements about each release. Commands are
the `helm` and `kubectl` invocations that carry them out, ordered by
priority: lower priorities run first and commands with equal priority keep
the order they were added in.

Execution runs the commands in priority bands. Within a band the commands
of different releases run concurrently, bounded by the run's parallelism,
while the commands of the same release always run one after another.
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
import datetime
import enum
import logging
import threading

from .command import Command
from .config import Options
from .exceptions import PlanExecutionError
from .notify import Notifier, NullNotifier
from .release_ops import label_cmd
from .state import Release

__all__ = [
    "DecisionType",
    "Decision",
    "PlannedCommand",
    "Plan",
]

_LOGGER = logging.getLogger(__name__)

CHANGE_MARKER = ">>"


class DecisionType(enum.Enum):
    """The kind of outcome a decision describes."""

    CREATE = "create"
    CHANGE = "change"
    DELETE = "delete"
    NOOP = "noop"
    IGNORED = "ignored"

    @property
    def is_change(self) -> bool:
        """Return True if the decision changes the cluster."""
        return self in (DecisionType.CREATE, DecisionType.CHANGE, DecisionType.DELETE)


@dataclass(frozen=True)
class Decision:
    """A statement about what happens to a release."""

    description: str
    priority: int
    type: DecisionType


@dataclass
class PlannedCommand:
    """A command of the plan with the hooks that surround it."""

    command: Command
    priority: int
    target: Release | None = None
    """The release the command acts on, used for serialization and labeling."""

    before: list[Command] = field(default_factory=list)
    after: list[Command] = field(default_factory=list)

    @property
    def key(self) -> str | None:
        """Serialization key, None when the command has no target release."""
        if self.target is None:
            return None
        return self.target.key

    def commands(self) -> list[Command]:
        """Return every command in execution order."""
        return [*self.before, self.command, *self.after]


class Plan:
    """Decisions and commands, safe to add to from concurrent deciders."""

    def __init__(self) -> None:
        """Initialize Plan."""
        self.decisions: list[Decision] = []
        self.commands: list[PlannedCommand] = []
        self.created = datetime.datetime.now(datetime.timezone.utc)
        self._lock = threading.Lock()

    def add_decision(
        self, description: str, priority: int, decision_type: DecisionType
    ) -> None:
        """Record a decision."""
        with self._lock:
            self.decisions.append(Decision(description, priority, decision_type))

    def add_command(
        self,
        cmd: Command,
        priority: int,
        target: Release | None = None,
        before: Iterable[Command] = (),
        after: Iterable[Command] = (),
    ) -> None:
        """Queue a command with the hooks to run around it."""
        with self._lock:
            self.commands.append(
                PlannedCommand(cmd, priority, target, list(before), list(after))
            )

    def sort(self) -> None:
        """Stable sort of commands and decisions by ascending priority."""
        _LOGGER.debug(
            "Sorting the commands in the plan based on priorities (order flags) ... "
        )
        with self._lock:
            self.commands.sort(key=lambda c: c.priority)
            self.decisions.sort(key=lambda d: d.priority)

    @property
    def has_changes(self) -> bool:
        """Return True if any decision changes the cluster."""
        return any(d.type.is_change for d in self.decisions)

    def print(self) -> None:
        """Log the decisions, graded by how much they change."""
        _LOGGER.info("-------- PLAN starts here --------------")
        for decision in self.decisions:
            line = f"{decision.description} -- priority: {decision.priority}"
            if decision.type in (DecisionType.IGNORED, DecisionType.NOOP):
                _LOGGER.info(line)
            elif decision.type == DecisionType.DELETE:
                _LOGGER.warning(line)
            else:
                _LOGGER.info("%s %s", CHANGE_MARKER, line)
        _LOGGER.info("-------- PLAN ends here --------------")

    def print_cmds(self) -> None:
        """Print the commands the plan would run, hooks included."""
        _LOGGER.info("Printing the commands of the current plan ...")
        for planned in self.commands:
            for cmd in planned.commands():
                print(cmd.string)

    def summary(self) -> str:
        """Return the descriptions of the planned commands, one per line."""
        return "\n".join(planned.command.description for planned in self.commands)

    async def send_to_slack(self, notifier: Notifier) -> None:
        """Post the planned commands."""
        await notifier.notify(self.summary())

    def bands(self) -> list[list[list[PlannedCommand]]]:
        """Group the sorted commands into priority bands of per-release sequences."""
        bands: list[list[list[PlannedCommand]]] = []
        current: int | None = None
        groups: dict[str | int, list[PlannedCommand]] = {}
        for index, planned in enumerate(self.commands):
            if current is None or planned.priority != current:
                if groups:
                    bands.append(list(groups.values()))
                groups = {}
                current = planned.priority
            key = planned.key if planned.key is not None else index
            groups.setdefault(key, []).append(planned)
        if groups:
            bands.append(list(groups.values()))
        return bands

    async def exec(
        self,
        options: Options,
        storage_backend: str,
        context: str,
        notifier: Notifier | None = None,
    ) -> None:
        """Run the plan, raising `PlanExecutionError` on the first fatal failure."""
        notifier = notifier or NullNotifier()
        self.sort()
        if not self.commands:
            _LOGGER.info("Nothing to execute")
            return
        _LOGGER.info("Executing plan... ")
        executor = _Executor(options, storage_backend, context, notifier)
        failed = asyncio.Event()
        for band in self.bands():
            sem = asyncio.Semaphore(options.pool_size)

            async def _run(sequence: list[PlannedCommand]) -> None:
                async with sem:
                    for planned in sequence:
                        # Sequences waiting on the semaphore never start once
                        # another sequence has failed.
                        if failed.is_set():
                            return
                        try:
                            await executor.run(planned)
                        except Exception:
                            failed.set()
                            raise

            results = await asyncio.gather(
                *(_run(sequence) for sequence in band), return_exceptions=True
            )
            errors = [r for r in results if isinstance(r, BaseException)]
            for error in errors:
                if not isinstance(error, PlanExecutionError):
                    raise error
                _LOGGER.error(str(error))
            if errors:
                raise errors[0]
        _LOGGER.info("Plan applied")


class _Executor:
    """Runs planned commands and labels the releases they touched."""

    def __init__(
        self, options: Options, storage_backend: str, context: str, notifier: Notifier
    ) -> None:
        self._options = options
        self._backend = storage_backend
        self._context = context
        self._notifier = notifier

    async def run(self, planned: PlannedCommand) -> None:
        for cmd in planned.before:
            await self.run_one(cmd, planned.target)
        await self.run_one(planned.command, planned.target)
        target = planned.target
        if (
            target is not None
            and target.is_enabled
            and not self._options.dry_run
            and not self._options.destroy
        ):
            await self.run_one(label_cmd(target, self._backend, self._context), target)
        for cmd in planned.after:
            await self.run_one(cmd, planned.target)

    async def run_one(self, cmd: Command, target: Release | None) -> None:
        result = await cmd.exec()
        if not cmd.succeeded(result):
            message = result.stderr.strip()
            if not self._options.verbose:
                message = message.split("---")[0].strip()
            if cmd.best_effort:
                _LOGGER.warning(
                    "Command '%s' returned [ %d ] exit code and error message [ %s ]",
                    cmd.description or cmd.string,
                    result.code,
                    message,
                )
                return
            raise PlanExecutionError(cmd.description or cmd.string, result.code, message)
        if result.stdout.strip():
            _LOGGER.info(result.stdout.strip())
        _LOGGER.info("Finished: %s", cmd.description or cmd.string)
        await self._notifier.notify(f"{cmd.description} ... SUCCESS!", executing=True)
