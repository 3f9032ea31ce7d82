"""Per-target call statistics.

Design by Contract:
- Elapsed time MUST be non-negative (crash if negative)
- Labels MUST be non-empty
"""

import threading
from collections import defaultdict

from beartype import beartype
from loguru import logger

from runtime_introspect._output import Output


class CallStats:
    """Accumulates call timings per intercepted target.

    Thread-safe for concurrent record() calls, since intercepted methods may
    run on any thread of the host process.

    Example:
        stats = CallStats()
        stats.record("Order.save", elapsed=0.012)
        stats.record("Order.save", elapsed=0.020, raised=True)
        stats.print_summary(Output())
    """

    def __init__(self) -> None:
        self.timings: dict[str, list[float]] = defaultdict(list)
        self.errors: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    @beartype
    def record(self, label: str, elapsed: float, raised: bool = False) -> None:
        """Record one call (thread-safe).

        Args:
            label: Target label (e.g., "Order.save")
            elapsed: Call duration in seconds (MUST be >= 0)
            raised: Whether the call ended with an exception
        """
        assert label, "Stats label must be non-empty"
        assert elapsed >= 0, f"Elapsed time must be non-negative: {elapsed}"

        with self._lock:
            self.timings[label].append(elapsed)
            if raised:
                self.errors[label] += 1

    @beartype
    def get_results(self) -> dict[str, dict[str, float]]:
        """Aggregate per-label results.

        Returns:
            Dictionary mapping labels to a metrics dict with keys:
            calls, errors, total_time, mean_ms, max_ms.
        """
        with self._lock:
            snapshot = {label: list(times) for label, times in self.timings.items()}
            errors = dict(self.errors)

        results: dict[str, dict[str, float]] = {}
        for label, times in snapshot.items():
            total_time = sum(times)
            calls = len(times)
            results[label] = {
                "calls": float(calls),
                "errors": float(errors.get(label, 0)),
                "total_time": total_time,
                "mean_ms": (total_time / calls * 1000) if calls > 0 else 0.0,
                "max_ms": max(times) * 1000 if times else 0.0,
            }
        return results

    def reset(self) -> None:
        with self._lock:
            self.timings.clear()
            self.errors.clear()

    @beartype
    def print_summary(self, out: Output, title: str = "CALL STATISTICS") -> None:
        """Print a table of every recorded target."""
        results = self.get_results()
        if not results:
            out.line(f"{title}: no calls recorded")
            return

        out.line("=" * 90)
        out.line(f"{title:^90}")
        out.line("=" * 90)
        out.line(
            f"{'Target':<40} {'Calls':>8} {'Errors':>8} "
            f"{'Total':>10} {'Mean':>10} {'Max':>10}"
        )
        out.line("-" * 90)
        for label, metrics in results.items():
            out.line(
                f"{label:<40} "
                f"{metrics['calls']:>8.0f} "
                f"{metrics['errors']:>8.0f} "
                f"{metrics['total_time']:>9.3f}s "
                f"{metrics['mean_ms']:>8.3f}ms "
                f"{metrics['max_ms']:>8.3f}ms"
            )
        out.line("=" * 90)
        logger.info(f"Printed call statistics for {len(results)} target(s)")
