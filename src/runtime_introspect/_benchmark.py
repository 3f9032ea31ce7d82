"""Side-by-side timing of named operations.

Design by Contract:
- repetitions MUST be >= 0
- operation names MUST be non-empty and unique
- Reported totals are >= 0 always (perf_counter/process_time are monotonic)
- Report order is input order, never sorted by time
"""

import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from beartype import beartype
from loguru import logger

from runtime_introspect._output import Output


class AccumulatingTimer:
    """Lightweight accumulating timer for hot loops.

    Uses only time.perf_counter() and time.process_time(), so the per-entry
    overhead stays well below the cost of the operations being compared.

    Usage:
        timer = AccumulatingTimer("parse")
        for _ in range(100):
            with timer:
                parse(document)
        timer.total, timer.cpu_total, timer.count
    """

    @beartype
    def __init__(self, label: str) -> None:
        assert label, "Timer label must be non-empty"
        self.label: str = label
        self._total: float = 0.0
        self._cpu_total: float = 0.0
        self._count: int = 0
        self._start: float = 0.0
        self._cpu_start: float = 0.0

    def __enter__(self) -> "AccumulatingTimer":
        self._cpu_start = time.process_time()
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self._total += time.perf_counter() - self._start
        self._cpu_total += time.process_time() - self._cpu_start
        self._count += 1

    @property
    def total(self) -> float:
        return self._total

    @property
    def cpu_total(self) -> float:
        return self._cpu_total

    @property
    def count(self) -> int:
        return self._count

    @beartype
    def reset(self) -> None:
        """Reset accumulated timing."""
        self._total = 0.0
        self._cpu_total = 0.0
        self._count = 0


@dataclass(frozen=True)
class BenchmarkResult:
    name: str
    repetitions: int
    real: float
    cpu: float

    @property
    def per_call_ms(self) -> float:
        return (self.real / self.repetitions * 1000) if self.repetitions > 0 else 0.0


@dataclass(frozen=True)
class BenchmarkReport:
    repetitions: int
    results: tuple[BenchmarkResult, ...]

    @property
    def names(self) -> list[str]:
        return [r.name for r in self.results]

    def __getitem__(self, name: str) -> BenchmarkResult:
        for result in self.results:
            if result.name == name:
                return result
        raise KeyError(name)

    @beartype
    def print(self, out: Output, title: str = "BENCHMARK") -> None:
        """Print the comparison table in input order."""
        width = 78
        fastest = min((r.real for r in self.results), default=0.0)
        out.line("=" * width)
        out.line(f"{title + f' (x{self.repetitions})':^{width}}")
        out.line("=" * width)
        out.line(f"{'Operation':<30} {'Real':>11} {'CPU':>11} {'Per-Call':>12} {'Relative':>9}")
        out.line("-" * width)
        for result in self.results:
            relative = f"{result.real / fastest:>8.2f}x" if fastest > 0 else f"{'-':>9}"
            out.line(
                f"{result.name:<30} "
                f"{result.real:>10.4f}s "
                f"{result.cpu:>10.4f}s "
                f"{result.per_call_ms:>10.4f}ms "
                f"{relative:>9}"
            )
        out.line("=" * width)


Operations = Mapping[str, Callable[[], Any]] | Sequence[tuple[str, Callable[[], Any]]]


class BenchmarkRunner:
    """Runs each named operation ``repetitions`` times, sequentially, in order.

    No warmup, no retries, no outlier rejection: the report is the plain sum
    of wall-clock and CPU time per operation.
    """

    @beartype
    def __init__(self, out: Output, verbose: bool = True) -> None:
        self.out = out
        self.verbose = verbose

    @beartype
    def compare(self, operations: Operations, repetitions: int) -> BenchmarkReport:
        """Time every operation and print the comparison.

        Args:
            operations: Mapping of name to callable, or sequence of
                (name, callable) pairs; order is preserved in the report
            repetitions: How many times each operation runs (MUST be >= 0)
        """
        assert repetitions >= 0, f"Repetitions must be non-negative: {repetitions}"
        pairs = list(operations.items()) if isinstance(operations, Mapping) else list(operations)
        names = [name for name, _ in pairs]
        assert len(set(names)) == len(names), f"Operation names must be unique: {names}"

        results = []
        for name, operation in pairs:
            timer = AccumulatingTimer(name)
            for _ in range(repetitions):
                with timer:
                    operation()
            assert timer.total >= 0, f"Elapsed time cannot be negative: {timer.total:.6f}s"
            results.append(BenchmarkResult(name, repetitions, timer.total, timer.cpu_total))
            logger.debug(f"Benchmarked {name}: {timer.total:.4f}s over {timer.count} run(s)")

        report = BenchmarkReport(repetitions, tuple(results))
        if self.verbose:
            report.print(self.out)
        return report
