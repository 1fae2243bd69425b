"""Tracing of the phases of a run, logged at debug level."""

from collections.abc import Iterator
from contextlib import contextmanager
import contextvars
import logging
from time import perf_counter

_LOGGER = logging.getLogger(__name__)

__all__ = ["trace_context"]


_PHASES: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "phases", default=()
)


@contextmanager
def trace_context(name: str) -> Iterator[None]:
    """Log entering and leaving a phase, nested phases are joined with `>`."""
    phases = (*_PHASES.get(), name)
    token = _PHASES.set(phases)
    label = " > ".join(phases)
    start = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        _PHASES.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, perf_counter() - start)
