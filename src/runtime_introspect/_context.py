"""InstrumentationContext: owner of all instrumentation one session installs.

Every registry, tracer, subscription and debug toggle belongs to a context
(the interactive helpers share one lazily created default context). Two
contexts keep separate bookkeeping, and ``close()`` (or leaving a ``with``
block) reverses everything the context installed.

Usage:
    with InstrumentationContext() as ctx:
        ctx.count_calls(Order, "save")
        ctx.time_calls(Order, "total")
        checkout(cart)
        ctx.print_summary()
"""

import http.client
from collections.abc import Callable, Iterable
from typing import Any

from beartype import beartype
from loguru import logger

from runtime_introspect._allocation import AllocationProfiler, AllocationReport
from runtime_introspect._benchmark import BenchmarkReport, BenchmarkRunner, Operations
from runtime_introspect._config import Config, load_config
from runtime_introspect._debug_io import DebugIOToggle, attach_debuglevel
from runtime_introspect._events import Formatter, Notifier, Pattern, QueryEventLogger, Subscription
from runtime_introspect._interceptor import (
    InterceptionRecord,
    MethodInterceptor,
    OnCall,
    OnReturn,
    argument_logger,
    call_counter,
    call_timer,
)
from runtime_introspect._output import Output, Writable
from runtime_introspect._registry import InstrumentationRegistry
from runtime_introspect._stats import CallStats
from runtime_introspect._tracer import (
    AttributeWatcher,
    ExecutionTracer,
    MatchHandler,
    Predicate,
    print_event,
)


class InstrumentationContext:
    """Injectable instrumentation session.

    Args:
        config: Settings (default: ``load_config()`` from the environment)
        stream: Where reports are written (default: ``sys.stdout`` at write time)
        notifier: Event bus the query logger subscribes to (default: a new one)
    """

    @beartype
    def __init__(
        self,
        config: Config | None = None,
        stream: Writable | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.config = config if config is not None else load_config()
        self.out = Output(stream, repr_limit=self.config.repr_limit)
        self.registry = InstrumentationRegistry()
        self.interceptor = MethodInterceptor(self.registry)
        self.stats = CallStats()
        self.notifier = notifier if notifier is not None else Notifier()
        self.query_logger = QueryEventLogger(self.notifier, self.out)
        self.allocations = AllocationProfiler(self.out)
        self.benchmarks = BenchmarkRunner(self.out)
        self.tracers: list[ExecutionTracer | AttributeWatcher] = []
        self.debug_toggles: dict[type, DebugIOToggle] = {}

    # -- interception -------------------------------------------------------

    @beartype
    def intercept(
        self,
        owner: object,
        method_name: str,
        on_call: OnCall | None = None,
        on_return: OnReturn | None = None,
        compose: bool = False,
        keep_log: bool = False,
    ) -> InterceptionRecord:
        return self.interceptor.intercept(
            owner,
            method_name,
            on_call=on_call,
            on_return=on_return,
            compose=compose,
            keep_log=keep_log,
            log_limit=self.config.log_limit,
        )

    @beartype
    def count_calls(self, owner: object, method_name: str, compose: bool = True) -> InterceptionRecord:
        """Print the running call count on every call."""
        return self.intercept(owner, method_name, on_call=call_counter(self.out), compose=compose)

    @beartype
    def time_calls(self, owner: object, method_name: str, compose: bool = True) -> InterceptionRecord:
        """Print every call's duration and record it into ``self.stats``."""
        return self.intercept(
            owner, method_name, on_return=call_timer(self.out, self.stats), compose=compose
        )

    @beartype
    def log_calls(self, owner: object, method_name: str, compose: bool = True) -> InterceptionRecord:
        """Print every call's arguments and keep a bounded call log."""
        return self.intercept(
            owner, method_name, on_call=argument_logger(self.out), compose=compose, keep_log=True
        )

    @beartype
    def restore(self, record: InterceptionRecord) -> None:
        self.interceptor.restore(record)

    def print_summary(self, title: str = "CALL STATISTICS") -> None:
        self.stats.print_summary(self.out, title)

    # -- tracing ------------------------------------------------------------

    @beartype
    def tracer(
        self,
        predicate: Predicate,
        on_match: MatchHandler | None = None,
        kinds: Iterable[str] = ("call",),
        all_threads: bool = False,
    ) -> ExecutionTracer:
        """Create (but do not enable) a tracer owned by this context."""
        tracer = ExecutionTracer(
            predicate,
            on_match if on_match is not None else print_event(self.out),
            kinds=kinds,
            all_threads=all_threads,
        )
        self.tracers.append(tracer)
        return tracer

    @beartype
    def watch(
        self,
        obj: object,
        attr: str,
        predicate: Predicate | None = None,
    ) -> AttributeWatcher:
        """Create (but do not enable) an attribute change watcher."""
        watcher = AttributeWatcher(
            obj, attr, self.out, stack_depth=self.config.stack_depth, predicate=predicate
        )
        self.tracers.append(watcher)
        return watcher

    # -- allocation, memory, timing -------------------------------------------

    @beartype
    def measure(self, block: Callable[[], Any], label: str | None = None) -> AllocationReport:
        return self.allocations.measure(block, label)

    @beartype
    def measure_memory(self, block: Callable[[], Any], label: str | None = None) -> int:
        return self.allocations.measure_memory(block, label)

    @beartype
    def compare(self, operations: Operations, repetitions: int) -> BenchmarkReport:
        return self.benchmarks.compare(operations, repetitions)

    # -- events ---------------------------------------------------------------

    @beartype
    def log_queries(self, channel: Pattern = "sql.query", formatter: Formatter | None = None) -> Subscription:
        return self.query_logger.subscribe(channel, formatter)

    # -- debug I/O ------------------------------------------------------------

    @beartype
    def debug_io(
        self,
        client_cls: type = http.client.HTTPConnection,
        attach: Callable[[Any], Any] = attach_debuglevel,
    ) -> DebugIOToggle:
        """Return the (single) debug toggle of ``client_cls`` for this context."""
        toggle = self.debug_toggles.get(client_cls)
        if toggle is None:
            toggle = DebugIOToggle(self.interceptor, self.config, client_cls, attach)
            self.debug_toggles[client_cls] = toggle
        return toggle

    # -- lifecycle ------------------------------------------------------------

    def close(self) -> None:
        """Disable tracers, cancel subscriptions, restore every wrapped method."""
        for tracer in reversed(self.tracers):
            tracer.disable()
        self.tracers.clear()
        self.query_logger.unsubscribe_all()
        for toggle in self.debug_toggles.values():
            toggle.disable_debug()
        self.debug_toggles.clear()
        restored = self.interceptor.restore_all() + self.registry.clear()
        logger.debug(f"Context closed; restored {restored} method(s)")

    def __enter__(self) -> "InstrumentationContext":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
