"""Utilities for timing the phases of a sync cycle."""

import contextvars
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


trace: contextvars.ContextVar[list[str]] = contextvars.ContextVar("trace")


@dataclass
class TraceCollector:
    """Accumulates the time spent per trace name."""

    timings: defaultdict[str, float] = field(default_factory=lambda: defaultdict(float))
    counts: defaultdict[str, int] = field(default_factory=lambda: defaultdict(int))

    def add(self, name: str, duration: float) -> None:
        self.timings[name] += duration
        self.counts[name] += 1

    def summary(self) -> list[dict[str, str]]:
        """Rows of name, total, count and average, slowest first."""
        return [
            {
                "phase": name,
                "total": f"{duration:0.2f}s",
                "count": str(self.counts[name]),
                "avg": f"{duration / self.counts[name]:0.2f}s",
            }
            for name, duration in sorted(
                self.timings.items(), key=lambda x: x[1], reverse=True
            )
        ]


_collector: contextvars.ContextVar[TraceCollector | None] = contextvars.ContextVar(
    "_collector", default=None
)


@contextmanager
def get_trace_collector() -> Generator[TraceCollector, None, None]:
    """Collect the timings of every trace started within the block."""
    collector = TraceCollector()
    token = _collector.set(collector)
    try:
        yield collector
    finally:
        _collector.reset(token)


@contextmanager
def trace_context(name: str, phase: str | None = None) -> Generator[None, None, None]:
    """Log the time spent in the enclosed block, nested under any outer trace.

    The duration is also added to the active collector under `phase`, which
    defaults to the name.
    """
    stack = trace.get([])
    token = trace.set(stack + [name])
    label = " > ".join(stack + [name])
    t1 = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        t2 = perf_counter()
        trace.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, (t2 - t1))
        if (collector := _collector.get()) is not None:
            collector.add(phase or name, t2 - t1)
