"""Allocation and memory deltas across a scoped unit of work.

Design by Contract:
- Garbage collection is suspended only for the duration of the block and
  ALWAYS re-enabled afterwards (including when the block raises), if it was
  enabled before
- Elapsed time MUST be non-negative (crash if negative)

Object counts come from ``gc.get_objects()``, so they cover container
objects (class instances, lists, dicts, ...) but not ints or strings; the
allocated block count covers everything the interpreter allocates.
``measure_memory`` uses psutil RSS instead, which also sees native
allocations the interpreter cannot.
"""

import gc
import sys
import time
import tracemalloc
from collections import Counter
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, NamedTuple

import psutil
from beartype import beartype
from loguru import logger

from runtime_introspect._output import Output, format_bytes, format_ms


class AllocationSnapshot(NamedTuple):
    counts: dict[str, int]
    blocks: int
    collections: int
    traced_bytes: int | None

    @classmethod
    def take(cls, traced: bool) -> "AllocationSnapshot":
        counts = dict(Counter(type(o).__qualname__ for o in gc.get_objects()))
        return cls(
            counts=counts,
            blocks=sys.getallocatedblocks(),
            collections=sum(s["collections"] for s in gc.get_stats()),
            traced_bytes=tracemalloc.get_traced_memory()[0] if traced else None,
        )


@dataclass
class AllocationReport:
    """Delta between two snapshots. Filled in when the measured scope exits."""

    label: str
    counts: dict[str, int] = field(default_factory=dict)
    blocks: int = 0
    collections: int = 0
    traced_bytes: int | None = None
    elapsed: float = 0.0
    result: Any = None

    @beartype
    def fill(self, before: AllocationSnapshot, after: AllocationSnapshot) -> None:
        deltas: dict[str, int] = {}
        for name in before.counts.keys() | after.counts.keys():
            delta = after.counts.get(name, 0) - before.counts.get(name, 0)
            if delta != 0:
                deltas[name] = delta
        # the "before" snapshot is itself alive when "after" is taken
        deltas.pop(AllocationSnapshot.__qualname__, None)
        self.counts = dict(sorted(deltas.items(), key=lambda kv: (-abs(kv[1]), kv[0])))
        self.blocks = after.blocks - before.blocks
        self.collections = after.collections - before.collections
        if before.traced_bytes is not None and after.traced_bytes is not None:
            self.traced_bytes = after.traced_bytes - before.traced_bytes

    def top(self, limit: int = 10) -> list[tuple[str, int]]:
        assert limit > 0, f"limit must be positive: {limit}"
        return list(self.counts.items())[:limit]

    @beartype
    def print(self, out: Output, limit: int = 10) -> None:
        out.line(f"Allocations in {self.label} ({format_ms(self.elapsed)}):")
        if not self.counts:
            out.line("  no change in tracked object counts")
        for name, delta in self.top(limit):
            out.line(f"  {name:<40} {delta:>+10d}")
        out.line(f"  {'allocated blocks':<40} {self.blocks:>+10d}")
        if self.traced_bytes is not None:
            out.line(f"  {'traced memory':<40} {format_bytes(self.traced_bytes):>10}")
        if self.collections:
            out.line(f"  {'gc collections':<40} {self.collections:>+10d}")


class AllocationProfiler:
    """Measures object allocation and process memory deltas.

    Args:
        out: Where reports are printed
        trace_python: Also record tracemalloc traced bytes (starts tracemalloc
            for the duration of the measurement when it is not already running)
        verbose: Print each report when the measurement ends

    Example:
        profiler = AllocationProfiler(Output())
        report = profiler.measure(lambda: [Widget() for _ in range(1000)])
        report.counts["Widget"]  # -> 1000
    """

    @beartype
    def __init__(self, out: Output, trace_python: bool = False, verbose: bool = True) -> None:
        self.out = out
        self.trace_python = trace_python
        self.verbose = verbose

    @beartype
    @contextmanager
    def track(self, label: str = "block") -> Generator[AllocationReport, None, None]:
        """Measure allocations inside a ``with`` block.

        Yields:
            AllocationReport, filled in when the block exits normally
        """
        report = AllocationReport(label)
        started_tracemalloc = self.trace_python and not tracemalloc.is_tracing()
        if started_tracemalloc:
            tracemalloc.start()
        gc_was_enabled = gc.isenabled()
        try:
            before = AllocationSnapshot.take(self.trace_python)
            gc.disable()
            start = time.perf_counter()
            yield report
            report.elapsed = time.perf_counter() - start
            after = AllocationSnapshot.take(self.trace_python)
        finally:
            if gc_was_enabled:
                gc.enable()
            if started_tracemalloc:
                tracemalloc.stop()

        assert report.elapsed >= 0, f"Elapsed time cannot be negative: {report.elapsed:.6f}s"
        report.fill(before, after)
        logger.debug(f"Measured {label}: {len(report.counts)} type(s) changed")
        if self.verbose:
            report.print(self.out)

    @beartype
    def measure(self, block: Callable[[], Any], label: str | None = None) -> AllocationReport:
        """Run ``block`` with GC suspended and return the allocation delta.

        The block's return value is kept alive in ``report.result`` so the
        objects it returns are still counted in the second snapshot.
        """
        with self.track(label or _callable_name(block)) as report:
            report.result = block()
        return report

    @beartype
    def measure_memory(self, block: Callable[[], Any], label: str | None = None) -> int:
        """Run ``block`` and return the change in process RSS in bytes."""
        name = label or _callable_name(block)
        process = psutil.Process()
        rss_before = process.memory_info().rss
        start = time.perf_counter()
        block()
        elapsed = time.perf_counter() - start
        rss_after = process.memory_info().rss

        assert elapsed >= 0, f"Elapsed time cannot be negative: {elapsed:.6f}s"
        delta = rss_after - rss_before
        if self.verbose:
            self.out.line(
                f"Memory in {name} ({format_ms(elapsed)}): RSS {format_bytes(delta)} "
                f"(now {format_bytes(rss_after).lstrip('+')})"
            )
        return delta


def _callable_name(block: Callable[..., Any]) -> str:
    return getattr(block, "__qualname__", None) or type(block).__qualname__
