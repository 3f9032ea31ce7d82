"""Property-based tests for runtime_introspect using Hypothesis.

These tests verify the invariants that must hold for arbitrary inputs:
interception transparency, call counting accuracy, idempotent restore,
GC-suspension safety, trace ordering and benchmark report ordering.
"""

import gc
import io

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from runtime_introspect import (
    AllocationProfiler,
    BenchmarkRunner,
    CallStats,
    ExecutionTracer,
    InstrumentationRegistry,
    MethodInterceptor,
    Output,
    named,
)

# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

operands = st.integers(min_value=-10**6, max_value=10**6)

# Each element says whether that call should raise
call_plans = st.lists(st.booleans(), min_size=0, max_size=60)

exception_types = st.sampled_from([ValueError, KeyError, RuntimeError, ZeroDivisionError, OSError])

unique_names = st.lists(
    st.text(alphabet="abcdefghijklmnopqrstuvwxyz_", min_size=1, max_size=12),
    min_size=1,
    max_size=6,
    unique=True,
)

valid_elapsed = st.floats(min_value=0.0, max_value=1e6, allow_nan=False, allow_infinity=False)

TRACE_TARGETS = ("step_a", "step_b", "step_c")


def step_a() -> None:
    pass


def step_b() -> None:
    pass


def step_c() -> None:
    pass


STEPS = {"step_a": step_a, "step_b": step_b, "step_c": step_c}


def divide(a: int, b: int) -> float:
    return a / b


class Calculator:
    def divide(self, a: int, b: int) -> float:
        return divide(a, b)


def outcome(fn, *args):
    try:
        return ("ok", fn(*args))
    except Exception as exc:
        return ("raised", type(exc), str(exc))


# ---------------------------------------------------------------------------
# Interception
# ---------------------------------------------------------------------------

class TestInterceptionProperties:
    @given(a=operands, b=operands)
    def test_transparency(self, a, b):
        """Intercepted and plain calls return/raise exactly the same."""
        expected = outcome(Calculator().divide, a, b)

        interceptor = MethodInterceptor(InstrumentationRegistry())
        interceptor.intercept(Calculator, "divide", on_call=lambda call: None, on_return=lambda ret: None)
        try:
            actual = outcome(Calculator().divide, a, b)
        finally:
            interceptor.restore_all()

        assert actual == expected

    @given(plan=call_plans)
    def test_call_count_equals_invocations_including_raising_ones(self, plan):
        class Job:
            def run(self, fail: bool) -> str:
                if fail:
                    raise RuntimeError("job failed")
                return "ok"

        interceptor = MethodInterceptor(InstrumentationRegistry())
        record = interceptor.intercept(Job, "run")
        raised = 0
        job = Job()
        for fail in plan:
            try:
                job.run(fail)
            except RuntimeError:
                raised += 1
        interceptor.restore(record)

        assert record.call_count == len(plan)
        assert raised == sum(plan)

    @given(a=operands, b=operands)
    @settings(max_examples=30)
    def test_restore_is_exact(self, a, b):
        original = Calculator.__dict__["divide"]
        interceptor = MethodInterceptor(InstrumentationRegistry())
        interceptor.restore(interceptor.intercept(Calculator, "divide"))

        assert Calculator.__dict__["divide"] is original
        assert outcome(Calculator().divide, a, b) == outcome(divide, a, b)


# ---------------------------------------------------------------------------
# GC suspension
# ---------------------------------------------------------------------------

class TestGcSuspensionProperties:
    @given(exc_type=exception_types, message=st.text(max_size=20))
    @settings(max_examples=30)
    def test_gc_reenabled_after_any_exception(self, exc_type, message):
        profiler = AllocationProfiler(Output(io.StringIO()))

        def failing() -> None:
            raise exc_type(message)

        with pytest.raises(exc_type):
            profiler.measure(failing)
        assert gc.isenabled()

    @given(size=st.integers(min_value=0, max_value=300))
    @settings(max_examples=20)
    def test_list_count_tracks_allocation_size(self, size):
        profiler = AllocationProfiler(Output(io.StringIO()), verbose=False)
        report = profiler.measure(lambda: [[] for _ in range(size)])
        assert report.counts.get("list", 0) >= size
        assert gc.isenabled()


# ---------------------------------------------------------------------------
# Trace ordering
# ---------------------------------------------------------------------------

class TestTraceProperties:
    @given(
        script=st.lists(st.sampled_from(TRACE_TARGETS), max_size=30),
        wanted=st.sets(st.sampled_from(TRACE_TARGETS)),
    )
    @settings(max_examples=50)
    def test_reports_exactly_the_qualifying_events_in_order(self, script, wanted):
        seen: list[str] = []
        with ExecutionTracer(named(*wanted), lambda e: seen.append(e.function)):
            for name in script:
                STEPS[name]()
        assert seen == [name for name in script if name in wanted]


# ---------------------------------------------------------------------------
# Benchmark ordering
# ---------------------------------------------------------------------------

class TestBenchmarkProperties:
    @given(names=unique_names, repetitions=st.integers(min_value=0, max_value=20))
    @settings(max_examples=30)
    def test_report_preserves_input_order(self, names, repetitions):
        runner = BenchmarkRunner(Output(io.StringIO()))
        report = runner.compare([(name, lambda: None) for name in names], repetitions)

        assert report.names == names
        assert all(r.real >= 0 and r.cpu >= 0 for r in report.results)
        assert all(r.repetitions == repetitions for r in report.results)


# ---------------------------------------------------------------------------
# CallStats math
# ---------------------------------------------------------------------------

class TestCallStatsProperties:
    @given(data=st.lists(st.tuples(valid_elapsed, st.booleans()), min_size=1, max_size=20))
    def test_totals_and_error_counts(self, data):
        stats = CallStats()
        for elapsed, raised in data:
            stats.record("prop", elapsed=elapsed, raised=raised)

        results = stats.get_results()["prop"]
        assert results["calls"] == float(len(data))
        assert results["errors"] == float(sum(raised for _, raised in data))
        assert results["total_time"] == pytest.approx(sum(e for e, _ in data), rel=1e-9)
        assert results["max_ms"] == pytest.approx(max(e for e, _ in data) * 1000, rel=1e-9)
