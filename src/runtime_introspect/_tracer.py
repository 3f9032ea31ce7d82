"""Execution tracing through the interpreter's trace hook.

Unlike interception, tracing never touches the observed code: a global
``sys.settrace`` hook sees every call (and optionally every line/return) and
a predicate decides which events are reported.

The predicate runs for EVERY event of the chosen kinds, not only matching
ones. Keep it to identity and name comparisons; ``named`` and ``defined_in``
below only compare strings and code objects. Line tracing is an order of
magnitude slower than call tracing.

Usage:
    with ExecutionTracer(defined_in(Order, "save"), on_match=print):
        checkout(cart)
"""

import os
import sys
import threading
import traceback
import types
from collections.abc import Callable, Iterable
from typing import Any

from beartype import beartype
from loguru import logger

from runtime_introspect._errors import AlreadyInstrumented
from runtime_introspect._output import Output

_KINDS = frozenset({"call", "line", "return"})


class TraceEvent:
    """One interpreter event.

    Line number and receiver are captured when the event fires, so stored
    events keep describing that moment. ``stack()`` walks the live frame and
    is only accurate while the handler runs.
    """

    __slots__ = ("kind", "frame", "code", "arg", "lineno", "receiver")

    def __init__(self, kind: str, frame: types.FrameType, arg: Any) -> None:
        self.kind = kind
        self.frame = frame
        self.code = frame.f_code
        self.arg = arg
        self.lineno: int = frame.f_lineno
        # self (or cls) of the executing frame, if there is one
        self.receiver: Any = _receiver_of(frame)

    @property
    def function(self) -> str:
        return self.code.co_name

    @property
    def filename(self) -> str:
        return self.code.co_filename

    @property
    def owner(self) -> type | None:
        receiver = self.receiver
        if receiver is None:
            return None
        return receiver if isinstance(receiver, type) else type(receiver)

    @property
    def qualname(self) -> str:
        owner = self.owner
        if owner is None:
            return self.function
        return f"{owner.__qualname__}.{self.function}"

    def stack(self, limit: int = 5) -> traceback.StackSummary:
        """Innermost ``limit`` frames, oldest first, ending at this event."""
        return traceback.extract_stack(self.frame, limit=limit)

    def __repr__(self) -> str:
        return f"<TraceEvent {self.kind} {self.qualname} {self.filename}:{self.lineno}>"


def _receiver_of(frame: types.FrameType) -> Any:
    code = frame.f_code
    if code.co_argcount == 0 or code.co_varnames[0] not in ("self", "cls"):
        return None
    return frame.f_locals.get(code.co_varnames[0])


Predicate = Callable[[TraceEvent], bool]
MatchHandler = Callable[[TraceEvent], Any]


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def named(*names: str) -> Predicate:
    """Match events whose function name is one of ``names``."""
    wanted = frozenset(names)
    return lambda event: event.code.co_name in wanted


def defined_in(cls: type, *names: str) -> Predicate:
    """Match events executing code defined directly on ``cls``.

    Compares code objects by identity, so same-named methods of other classes
    never match. Restrict to ``names`` when given.
    """
    codes = set()
    for attr, value in vars(cls).items():
        if names and attr not in names:
            continue
        for func in _functions_of(value):
            code = getattr(func, "__code__", None)
            if code is not None:
                codes.add(code)
    frozen = frozenset(codes)
    return lambda event: event.code in frozen


def on_object(obj: object) -> Predicate:
    """Match events whose receiver (``self``/``cls``) is ``obj``."""
    return lambda event: event.receiver is obj


def in_file(path: str) -> Predicate:
    normalized = os.path.normcase(os.path.abspath(path))
    return lambda event: os.path.normcase(os.path.abspath(event.filename)) == normalized


def all_of(*predicates: Predicate) -> Predicate:
    return lambda event: all(p(event) for p in predicates)


def any_of(*predicates: Predicate) -> Predicate:
    return lambda event: any(p(event) for p in predicates)


def _functions_of(value: Any) -> Iterable[Any]:
    if isinstance(value, (staticmethod, classmethod)):
        return [value.__func__]
    if isinstance(value, property):
        return [f for f in (value.fget, value.fset, value.fdel) if f is not None]
    return [getattr(value, "__wrapped__", value), value]


# ---------------------------------------------------------------------------
# Tracer
# ---------------------------------------------------------------------------

class _TraceDispatcher:
    """The one hook this module installs, fanned out to every enabled tracer.

    ``sys.settrace`` holds a single function per thread, so tracers never
    install themselves. The dispatcher's hook goes in on the first enable in a
    thread and the previous function comes back when the last tracer of that
    thread is disabled. ``threading.settrace`` is handled the same way for
    tracers that follow new threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: tuple["ExecutionTracer", ...] = ()
        self._previous: dict[int, Any] = {}
        self._thread_users = 0
        self._thread_previous: Any = None

    def add(self, tracer: "ExecutionTracer") -> None:
        with self._lock:
            thread_id = threading.get_ident()
            if sys.gettrace() != self.global_hook:
                self._previous[thread_id] = sys.gettrace()
                sys.settrace(self.global_hook)
            if tracer.all_threads:
                if self._thread_users == 0:
                    self._thread_previous = threading.gettrace()
                    threading.settrace(self.global_hook)
                self._thread_users += 1
            self._active = self._active + (tracer,)

    def remove(self, tracer: "ExecutionTracer") -> None:
        with self._lock:
            self._active = tuple(t for t in self._active if t is not tracer)
            if tracer.all_threads:
                self._thread_users -= 1
                if self._thread_users == 0:
                    threading.settrace(self._thread_previous)
                    self._thread_previous = None
            thread_id = threading.get_ident()
            if thread_id == tracer.thread_id and thread_id in self._previous:
                if not any(t.thread_id == thread_id for t in self._active):
                    sys.settrace(self._previous.pop(thread_id))
            if not any(t.needs_local for t in self._active):
                for frame in tracer.armed_frames:
                    if frame.f_trace == self.local_hook:
                        frame.f_trace = None

    def global_hook(self, frame: types.FrameType, event: str, arg: Any) -> Any:
        needs_local = False
        for tracer in self._active:
            if not tracer.follows_current_thread():
                continue
            if "call" in tracer.kinds:
                tracer.dispatch(event, frame, arg)
            needs_local = needs_local or tracer.needs_local
        return self.local_hook if needs_local else None

    def local_hook(self, frame: types.FrameType, event: str, arg: Any) -> Any:
        tracers = self._active
        if not tracers:
            return None
        for tracer in tracers:
            if event in tracer.kinds and event != "call" and tracer.follows_current_thread():
                tracer.dispatch(event, frame, arg)
        return self.local_hook


_dispatcher = _TraceDispatcher()


class ExecutionTracer:
    """A trace hook registration: Disabled -> Enabled -> Disabled.

    Args:
        predicate: Filter run for every event of the chosen kinds
        on_match: Called, in execution order, for every matching event
        kinds: Any of "call", "line", "return" (default: call only)
        all_threads: Also trace threads started after ``enable()``

    Matches are delivered synchronously from inside the hook; there is no
    buffering. Any number of tracers may be enabled at once and each sees
    every event it asks for. The trace function installed before the first
    of them (a debugger or coverage tool) is put back when the last one is
    disabled.
    """

    @beartype
    def __init__(
        self,
        predicate: Predicate,
        on_match: MatchHandler,
        kinds: Iterable[str] = ("call",),
        all_threads: bool = False,
    ) -> None:
        self.kinds = frozenset(kinds)
        assert self.kinds, "Tracer needs at least one event kind"
        assert self.kinds <= _KINDS, f"Unknown event kinds: {sorted(self.kinds - _KINDS)}"
        self.predicate = predicate
        self.on_match = on_match
        self.all_threads = all_threads
        self.match_count = 0
        self.thread_id: int | None = None
        self.armed_frames: list[types.FrameType] = []
        self.needs_local = bool(self.kinds & {"line", "return"})
        self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> "ExecutionTracer":
        """Start receiving events. Raises AlreadyInstrumented if already enabled."""
        if self._enabled:
            raise AlreadyInstrumented(repr(self))
        self.thread_id = threading.get_ident()
        self._enabled = True
        _dispatcher.add(self)
        if self.needs_local:
            self._arm_running_frames(sys._getframe(1))
        logger.debug(f"Tracer enabled for {sorted(self.kinds)}")
        return self

    def disable(self) -> None:
        """Stop receiving events. Other enabled tracers are unaffected. Idempotent."""
        if not self._enabled:
            return
        self._enabled = False
        _dispatcher.remove(self)
        self.armed_frames.clear()
        logger.debug(f"Tracer disabled after {self.match_count} match(es)")

    def __enter__(self) -> "ExecutionTracer":
        return self.enable()

    def __exit__(self, *args: Any) -> None:
        self.disable()

    def follows_current_thread(self) -> bool:
        return self.all_threads or threading.get_ident() == self.thread_id

    def _arm_running_frames(self, frame: types.FrameType | None) -> None:
        while frame is not None:
            if frame.f_code.co_filename != __file__:
                frame.f_trace = _dispatcher.local_hook
                self.armed_frames.append(frame)
            frame = frame.f_back

    def dispatch(self, kind: str, frame: types.FrameType, arg: Any) -> None:
        if not self._enabled or frame.f_code.co_filename == __file__:
            return
        event = TraceEvent(kind, frame, arg)
        try:
            if not self.predicate(event):
                return
            self.match_count += 1
            self.on_match(event)
        except Exception:
            logger.opt(exception=True).warning(f"Trace handler failed on {event!r}")

    def __repr__(self) -> str:
        state = "enabled" if self._enabled else "disabled"
        return f"<ExecutionTracer {sorted(self.kinds)} {state}>"


def print_event(out: Output) -> MatchHandler:
    """Default match handler: one line per event."""

    def on_match(event: TraceEvent) -> None:
        out.line(f"[{event.kind}] {event.qualname} {event.filename}:{event.lineno}")

    return on_match


# ---------------------------------------------------------------------------
# Attribute change tracking
# ---------------------------------------------------------------------------

class AttributeChange:
    __slots__ = ("attr", "old", "new", "stack")

    def __init__(self, attr: str, old: Any, new: Any, stack: traceback.StackSummary) -> None:
        self.attr = attr
        self.old = old
        self.new = new
        self.stack = stack

    def __repr__(self) -> str:
        return f"<AttributeChange {self.attr}: {self.old!r} -> {self.new!r}>"


class AttributeWatcher:
    """Report every change of ``getattr(obj, attr)`` with the stack at that point.

    The value is re-read on every line and return event, so a change is
    reported at the first event after the statement that made it. Only value
    inequality counts as a change; re-assigning an equal value is silent.
    """

    @beartype
    def __init__(
        self,
        obj: object,
        attr: str,
        out: Output,
        stack_depth: int = 5,
        predicate: Predicate | None = None,
        on_change: Callable[[AttributeChange], Any] | None = None,
    ) -> None:
        assert attr, "Attribute name must be non-empty"
        assert stack_depth > 0, f"stack_depth must be positive: {stack_depth}"
        self.obj = obj
        self.attr = attr
        self.out = out
        self.stack_depth = stack_depth
        self.on_change = on_change if on_change is not None else self._print_change
        self.changes: list[AttributeChange] = []
        self._last = self._read()
        self._tracer = ExecutionTracer(
            predicate if predicate is not None else _always,
            self._check,
            kinds=("line", "return"),
        )

    @property
    def enabled(self) -> bool:
        return self._tracer.enabled

    def enable(self) -> "AttributeWatcher":
        self._last = self._read()
        self._tracer.enable()
        return self

    def disable(self) -> None:
        self._tracer.disable()

    def __enter__(self) -> "AttributeWatcher":
        return self.enable()

    def __exit__(self, *args: Any) -> None:
        self.disable()

    def _read(self) -> Any:
        return getattr(self.obj, self.attr, None)

    def _check(self, event: TraceEvent) -> None:
        current = self._read()
        if current == self._last:
            return
        change = AttributeChange(
            self.attr, self._last, current, event.stack(limit=self.stack_depth)
        )
        self._last = current
        self.changes.append(change)
        self.on_change(change)

    def _print_change(self, change: AttributeChange) -> None:
        self.out.line(f"{self.attr} changed: {change.old!r} -> {change.new!r}")
        for frame in reversed(change.stack):
            self.out.line(f"    {frame.filename}:{frame.lineno} in {frame.name}")


def _always(event: TraceEvent) -> bool:
    return True
