"""runtime-introspect: Opt-in instrumentation for live interactive sessions.

Provides:
- InstrumentationContext: Injectable session owning every instrument below
- MethodInterceptor: Observe calls to a method (count, time, arguments)
- ExecutionTracer / AttributeWatcher: Trace-hook based call/line tracing
- AllocationProfiler: Object-count and RSS deltas across a block
- Notifier / QueryEventLogger: Print structured events as they happen
- BenchmarkRunner: Side-by-side timing of named operations
- DebugIOToggle: Transport-level debug output for new client instances

Usage:
    from runtime_introspect import InstrumentationContext, defined_in

    with InstrumentationContext() as ctx:
        record = ctx.count_calls(Order, "save")
        with ctx.tracer(defined_in(Order, "save")):
            checkout(cart)
        report = ctx.measure(lambda: build_invoices(100))

Interactive shortcuts live in ``runtime_introspect.helpers``.
"""

from runtime_introspect._allocation import AllocationProfiler, AllocationReport, AllocationSnapshot
from runtime_introspect._benchmark import (
    AccumulatingTimer,
    BenchmarkReport,
    BenchmarkResult,
    BenchmarkRunner,
)
from runtime_introspect._config import Config, load_config
from runtime_introspect._context import InstrumentationContext
from runtime_introspect._debug_io import DebugIOToggle
from runtime_introspect._errors import (
    AlreadyInstrumented,
    ConfigError,
    IntrospectionError,
    NoSuchMethod,
    UnknownToken,
    UnsafeContext,
)
from runtime_introspect._events import Event, Notifier, QueryEventLogger, Subscription
from runtime_introspect._interceptor import (
    CallEvent,
    InterceptionRecord,
    MethodInterceptor,
    ReturnEvent,
)
from runtime_introspect._output import Output
from runtime_introspect._registry import InstrumentationRegistry, InstrumentationToken, Target
from runtime_introspect._stats import CallStats
from runtime_introspect._tracer import (
    AttributeChange,
    AttributeWatcher,
    ExecutionTracer,
    TraceEvent,
    all_of,
    any_of,
    defined_in,
    in_file,
    named,
    on_object,
)

__all__ = [
    "AccumulatingTimer",
    "AllocationProfiler",
    "AllocationReport",
    "AllocationSnapshot",
    "AlreadyInstrumented",
    "AttributeChange",
    "AttributeWatcher",
    "BenchmarkReport",
    "BenchmarkResult",
    "BenchmarkRunner",
    "CallEvent",
    "CallStats",
    "Config",
    "ConfigError",
    "DebugIOToggle",
    "Event",
    "ExecutionTracer",
    "InstrumentationContext",
    "InstrumentationRegistry",
    "InstrumentationToken",
    "InterceptionRecord",
    "IntrospectionError",
    "MethodInterceptor",
    "NoSuchMethod",
    "Notifier",
    "Output",
    "QueryEventLogger",
    "ReturnEvent",
    "Subscription",
    "Target",
    "TraceEvent",
    "UnknownToken",
    "UnsafeContext",
    "all_of",
    "any_of",
    "defined_in",
    "in_file",
    "load_config",
    "named",
    "on_object",
]

__version__ = "0.1.0"
