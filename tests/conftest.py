"""Shared fixtures for helmsman tests.

Engine tests never spawn `helm` or `kubectl`. The `runner` fixture replaces
`Command.exec` with a fake that records every command line and answers with
canned exit statuses registered by argument prefix.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from helmsman import command
from helmsman.command import Command, ExitStatus

TESTDATA = Path(__file__).parent / "testdata"


@dataclass
class Call:
    """A command line seen by the fake runner."""

    args: list[str]
    stdin: str | None = None

    @property
    def string(self) -> str:
        return " ".join(self.args)


class FakeRunner:
    """Answers commands by the longest registered argument prefix.

    Commands without a matching rule succeed with empty output. A rule may
    hold several statuses which are returned in turn, the last one repeating.
    """

    def __init__(self) -> None:
        self._rules: list[tuple[tuple[str, ...], list[ExitStatus]]] = []
        self.calls: list[Call] = []

    def add(
        self,
        prefix: Sequence[str],
        stdout: str = "",
        stderr: str = "",
        code: int = 0,
    ) -> None:
        """Answer commands starting with `prefix`."""
        self.add_sequence(prefix, [ExitStatus(code, stdout, stderr)])

    def add_sequence(self, prefix: Sequence[str], statuses: list[ExitStatus]) -> None:
        """Answer commands starting with `prefix` with each status in turn."""
        self._rules.append((tuple(prefix), list(statuses)))

    def answer(self, cmd: Command, stdin: str | None = None) -> ExitStatus:
        args = cmd.args
        self.calls.append(Call(args, stdin))
        best: tuple[tuple[str, ...], list[ExitStatus]] | None = None
        for prefix, statuses in self._rules:
            if tuple(args[: len(prefix)]) != prefix:
                continue
            if best is None or len(prefix) >= len(best[0]):
                best = (prefix, statuses)
        if best is None:
            return ExitStatus(0)
        statuses = best[1]
        if len(statuses) > 1:
            return statuses.pop(0)
        return statuses[0]

    def commands(self, *prefix: str) -> list[list[str]]:
        """Return the recorded command lines starting with `prefix`."""
        return [
            call.args
            for call in self.calls
            if tuple(call.args[: len(prefix)]) == prefix
        ]

    def strings(self) -> list[str]:
        return [call.string for call in self.calls]


@pytest.fixture(name="runner")
def runner_fixture(monkeypatch: pytest.MonkeyPatch) -> FakeRunner:
    """Fixture replacing subprocess execution with a `FakeRunner`."""
    runner = FakeRunner()

    async def _exec(cmd: Command, stdin: str | None = None) -> ExitStatus:
        return runner.answer(cmd, stdin)

    monkeypatch.setattr(Command, "exec", _exec)
    return runner


@pytest.fixture(name="sleeps")
def sleeps_fixture(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Fixture skipping back off delays, returning the requested delays."""
    delays: list[float] = []

    async def _sleep(delay: float, result: Any = None) -> Any:
        delays.append(delay)
        return result

    monkeypatch.setattr(command.asyncio, "sleep", _sleep)
    return delays


@pytest.fixture(name="tools")
def tools_fixture(monkeypatch: pytest.MonkeyPatch) -> set[str]:
    """Fixture controlling which executables appear to be on the PATH."""
    installed = {"helm", "kubectl"}

    def _tool_exists(tool: str) -> bool:
        return tool in installed

    for module in ("helmsman.command", "helmsman.app", "helmsman.secrets", "helmsman.validate"):
        monkeypatch.setattr(f"{module}.tool_exists", _tool_exists)
    return installed


@pytest.fixture(name="clean_env", autouse=True)
def clean_env_fixture(monkeypatch: pytest.MonkeyPatch) -> None:
    """Fixture restoring the variables a run exports."""
    for key in ("KUBECONFIG", "HELM_DRIVER"):
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)


@pytest.fixture(name="testdata")
def testdata_fixture() -> Path:
    """Fixture for the directory holding desired state files and charts."""
    return TESTDATA
