"""Fixtures for the command line tool tests."""

from collections.abc import Callable
from dataclasses import dataclass, field
import logging

import pytest

from helmsman.config import Options
from helmsman.exceptions import HelmsmanException
from helmsman.plan import DecisionType, Plan
from helmsman.tool import helmsman

_LOGGER = logging.getLogger(__name__)


@dataclass
class FakeRun:
    """Records the options of each run and returns a canned plan."""

    options: list[Options] = field(default_factory=list)
    changes: bool = False
    error: HelmsmanException | None = None

    async def __call__(self, options: Options) -> Plan:
        self.options.append(options)
        if self.error is not None:
            raise self.error
        plan = Plan()
        if self.changes:
            plan.add_decision("install", 0, DecisionType.CREATE)
        else:
            plan.add_decision("up-to-date", 0, DecisionType.NOOP)
        return plan


@pytest.fixture(name="fake_run")
def fake_run_fixture(monkeypatch: pytest.MonkeyPatch) -> FakeRun:
    """Fixture replacing the pipeline run by the command line tool."""
    fake = FakeRun()
    monkeypatch.setattr(helmsman, "run", fake)
    return fake


@pytest.fixture(name="main")
def main_fixture() -> Callable[..., int]:
    """Fixture invoking the tool and returning its exit code."""

    def _main(*args: str) -> int:
        with pytest.raises(SystemExit) as exc_info:
            helmsman.main(list(args))
        code = exc_info.value.code
        _LOGGER.debug("helmsman %s exited with %s", " ".join(args), code)
        return code if isinstance(code, int) else 1

    return _main
