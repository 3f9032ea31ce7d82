"""Interactive shortcuts for a REPL startup file.

Every helper works on one shared, lazily created InstrumentationContext.
Put ``from runtime_introspect.helpers import *`` in ``PYTHONSTARTUP`` and
call them directly at the prompt:

    >>> count_method_calls(Order, "save")
    >>> Order().save()
    Order.save called 1 time
    >>> tracer = trace(Order, "save")     # prints every Order.save call
    >>> tracer.disable()
    >>> reset()                           # undo everything
"""

import http.client
import threading
from collections.abc import Callable
from typing import Any

from runtime_introspect._allocation import AllocationReport
from runtime_introspect._benchmark import BenchmarkReport, Operations
from runtime_introspect._context import InstrumentationContext
from runtime_introspect._debug_io import DebugIOToggle
from runtime_introspect._events import Formatter, Notifier, Pattern, Subscription
from runtime_introspect._interceptor import InterceptionRecord
from runtime_introspect._tracer import AttributeWatcher, ExecutionTracer, Predicate, defined_in

__all__ = [
    "compare_methods",
    "count_method_calls",
    "default_context",
    "disable_http_debug",
    "enable_http_debug",
    "log_queries",
    "measure_allocations",
    "measure_memory",
    "notifier",
    "reset",
    "summary",
    "trace",
    "track_changes",
    "track_method_calls",
    "track_time",
    "untrack",
]

_default: InstrumentationContext | None = None
_default_lock = threading.Lock()


def default_context() -> InstrumentationContext:
    global _default
    with _default_lock:
        if _default is None:
            _default = InstrumentationContext()
        return _default


def reset() -> None:
    """Undo everything the helpers installed and start over."""
    global _default
    with _default_lock:
        context, _default = _default, None
    if context is not None:
        context.close()


def track_method_calls(owner: object, method_name: str) -> InterceptionRecord:
    """Print the arguments of every call."""
    return default_context().log_calls(owner, method_name)


def count_method_calls(owner: object, method_name: str) -> InterceptionRecord:
    return default_context().count_calls(owner, method_name)


def track_time(owner: object, method_name: str) -> InterceptionRecord:
    return default_context().time_calls(owner, method_name)


def untrack(record: InterceptionRecord) -> None:
    default_context().restore(record)


def summary() -> None:
    default_context().print_summary()


def trace(
    target: type | Predicate,
    *method_names: str,
    kinds: tuple[str, ...] = ("call",),
) -> ExecutionTracer:
    """Start tracing calls of methods defined on a class (or any predicate).

    Returns the enabled tracer; call ``disable()`` on it to stop.
    """
    predicate = defined_in(target, *method_names) if isinstance(target, type) else target
    return default_context().tracer(predicate, kinds=kinds).enable()


def track_changes(obj: object, attr: str) -> AttributeWatcher:
    """Report every change of ``obj.attr`` with a short stack. Returns the enabled watcher."""
    return default_context().watch(obj, attr).enable()


def measure_allocations(block: Callable[[], Any], label: str | None = None) -> AllocationReport:
    return default_context().measure(block, label)


def measure_memory(block: Callable[[], Any], label: str | None = None) -> int:
    return default_context().measure_memory(block, label)


def compare_methods(operations: Operations, repetitions: int = 100) -> BenchmarkReport:
    return default_context().compare(operations, repetitions)


def notifier() -> Notifier:
    """The event bus ``log_queries`` listens on; publish host events here."""
    return default_context().notifier


def log_queries(channel: Pattern = "sql.query", formatter: Formatter | None = None) -> Subscription:
    return default_context().log_queries(channel, formatter)


def enable_http_debug(client_cls: type = http.client.HTTPConnection) -> DebugIOToggle:
    toggle = default_context().debug_io(client_cls)
    toggle.enable_debug()
    return toggle


def disable_http_debug(client_cls: type = http.client.HTTPConnection) -> None:
    default_context().debug_io(client_cls).disable_debug()
