"""Method interception: observe every call to a named method, then delegate.

The installed replacement is transparent: it returns the original result
unchanged and lets the original exception propagate untouched. Observer
callbacks only add side effects; a failing observer is logged and skipped.

Usage:
    interceptor = MethodInterceptor(InstrumentationRegistry())
    record = interceptor.intercept(Order, "save", on_call=lambda call: print(call.args))
    Order().save()
    record.call_count  # -> 1
    interceptor.restore(record)
"""

import functools
import inspect
import threading
import time
import types
from collections import deque
from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from typing import Any

from beartype import beartype
from loguru import logger

from runtime_introspect._errors import AlreadyInstrumented, NoSuchMethod, UnknownToken
from runtime_introspect._output import Output, format_ms
from runtime_introspect._registry import (
    _MISSING,
    InstrumentationRegistry,
    InstrumentationToken,
    Target,
)
from runtime_introspect._stats import CallStats


@dataclass(frozen=True)
class CallEvent:
    """One invocation of an intercepted method, before it runs."""

    label: str
    receiver: Any
    args: tuple[Any, ...]
    kwargs: dict[str, Any]
    call_number: int


@dataclass(frozen=True)
class ReturnEvent:
    """One invocation of an intercepted method, after it finished."""

    call: CallEvent
    elapsed: float
    result: Any = None
    exception: BaseException | None = None

    @property
    def raised(self) -> bool:
        return self.exception is not None


@dataclass(frozen=True)
class CallLogEntry:
    call_number: int
    args: tuple[Any, ...]
    kwargs: dict[str, Any] = field(default_factory=dict)
    elapsed: float = 0.0
    raised: bool = False


OnCall = Callable[[CallEvent], Any]
OnReturn = Callable[[ReturnEvent], Any]


class InterceptionRecord:
    """State of one intercepted target: counter, observer chain, call log."""

    def __init__(self, target: Target, keep_log: bool, log_limit: int) -> None:
        assert log_limit > 0, f"log_limit must be positive: {log_limit}"
        self.target = target
        self.label = target.label
        self.token: InstrumentationToken | None = None
        self.observers: list[tuple[OnCall | None, OnReturn | None]] = []
        self.log: deque[CallLogEntry] | None = deque(maxlen=log_limit) if keep_log else None
        self._count = 0
        self._detached = False
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        return self._count

    @property
    def active(self) -> bool:
        return self.token is not None

    def add_observer(self, on_call: OnCall | None, on_return: OnReturn | None) -> None:
        with self._lock:
            self.observers = [*self.observers, (on_call, on_return)]

    def detach(self) -> None:
        """Stop observing. A replacement still reachable afterwards only delegates."""
        self._detached = True

    def invoke(
        self,
        receiver: Any,
        original: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Any:
        if self._detached:
            return original(*args, **kwargs)
        call, observers = self._begin(receiver, args, kwargs)
        start = time.perf_counter()
        try:
            result = original(*args, **kwargs)
        except BaseException as exc:
            self._finish(observers, ReturnEvent(call, time.perf_counter() - start, exception=exc))
            raise
        self._finish(observers, ReturnEvent(call, time.perf_counter() - start, result=result))
        return result

    async def invoke_async(
        self,
        receiver: Any,
        original: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Any:
        """Like ``invoke`` for coroutine functions; elapsed covers the awaited call."""
        if self._detached:
            return await original(*args, **kwargs)
        call, observers = self._begin(receiver, args, kwargs)
        start = time.perf_counter()
        try:
            result = await original(*args, **kwargs)
        except BaseException as exc:
            self._finish(observers, ReturnEvent(call, time.perf_counter() - start, exception=exc))
            raise
        self._finish(observers, ReturnEvent(call, time.perf_counter() - start, result=result))
        return result

    def invoke_generator(
        self,
        receiver: Any,
        original: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Generator[Any, Any, Any]:
        """Like ``invoke`` for generator functions.

        The call starts at the first ``next()`` and ends when the generator is
        exhausted or closed; elapsed includes time spent by the consumer.
        """
        if self._detached:
            return (yield from original(*args, **kwargs))
        call, observers = self._begin(receiver, args, kwargs)
        start = time.perf_counter()
        try:
            result = yield from original(*args, **kwargs)
        except GeneratorExit:
            self._finish(observers, ReturnEvent(call, time.perf_counter() - start))
            raise
        except BaseException as exc:
            self._finish(observers, ReturnEvent(call, time.perf_counter() - start, exception=exc))
            raise
        self._finish(observers, ReturnEvent(call, time.perf_counter() - start, result=result))
        return result

    def _begin(
        self,
        receiver: Any,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> tuple[CallEvent, list[tuple[OnCall | None, OnReturn | None]]]:
        with self._lock:
            self._count += 1
            call_number = self._count
        call = CallEvent(self.label, receiver, args, kwargs, call_number)
        observers = self.observers
        for on_call, _ in observers:
            if on_call is not None:
                self._safely(on_call, call)
        return call, observers

    def _finish(
        self,
        observers: list[tuple[OnCall | None, OnReturn | None]],
        event: ReturnEvent,
    ) -> None:
        if self.log is not None:
            self.log.append(
                CallLogEntry(
                    event.call.call_number,
                    event.call.args,
                    event.call.kwargs,
                    event.elapsed,
                    event.raised,
                )
            )
        for _, on_return in observers:
            if on_return is not None:
                self._safely(on_return, event)

    def _safely(self, callback: Callable[[Any], Any], event: Any) -> None:
        try:
            callback(event)
        except Exception:
            logger.opt(exception=True).warning(f"Observer for {self.label} raised; call continues")

    def __repr__(self) -> str:
        state = "active" if self.active else "restored"
        return f"<InterceptionRecord {self.label} calls={self._count} {state}>"


class MethodInterceptor:
    """Installs call-observing replacements through an InstrumentationRegistry."""

    def __init__(self, registry: InstrumentationRegistry) -> None:
        self.registry = registry
        self._records: dict[int, InterceptionRecord] = {}
        self._lock = threading.Lock()

    @beartype
    def intercept(
        self,
        owner: object,
        method_name: str,
        on_call: OnCall | None = None,
        on_return: OnReturn | None = None,
        compose: bool = False,
        keep_log: bool = False,
        log_limit: int = 100,
    ) -> InterceptionRecord:
        """Wrap ``owner.method_name`` so each call notifies the observers.

        Args:
            owner: Class, module or single instance that exposes the method
            method_name: Attribute name of the method
            on_call: Called with a CallEvent before the original runs
            on_return: Called with a ReturnEvent after the original finished
            compose: If the target is already intercepted, chain the observers
                after the existing ones instead of failing
            keep_log: Keep a bounded log of (args, kwargs, elapsed, raised)
            log_limit: Maximum number of log entries kept

        Raises:
            NoSuchMethod: If the attribute is missing or not callable.
            AlreadyInstrumented: If already intercepted and ``compose`` is False.
        """
        target = Target(owner, method_name)
        with self._lock:
            existing = self.registry.lookup(owner, method_name)
            if existing is not None:
                record = self._records.get(existing.id)
                if not compose or record is None:
                    raise AlreadyInstrumented(target.label)
                record.add_observer(on_call, on_return)
                logger.debug(f"Composed observer #{len(record.observers)} on {record.label}")
                return record

            record = InterceptionRecord(target, keep_log=keep_log, log_limit=log_limit)
            record.add_observer(on_call, on_return)
            replacement = self._build_replacement(target, record)
            record.token = self.registry.register(target, replacement)
            self._records[record.token.id] = record
        return record

    @beartype
    def restore(self, record: InterceptionRecord) -> None:
        """Reinstall the original method and stop observing.

        Raises:
            UnknownToken: If the method was replaced after wrapping. The record
                is detached anyway, so a wrapper left in place only delegates.
        """
        token = record.token
        assert token is not None, f"{record.label} is not active"
        with self._lock:
            self._records.pop(token.id, None)
            record.token = None
            record.detach()
            self.registry.unregister(token)

    def records(self) -> list[InterceptionRecord]:
        with self._lock:
            return list(self._records.values())

    def restore_all(self) -> int:
        """Restore every active record, newest first. Stale ones are logged and dropped."""
        restored = 0
        for record in reversed(self.records()):
            try:
                self.restore(record)
                restored += 1
            except UnknownToken as exc:
                logger.warning(f"Dropped stale interception: {exc}")
        return restored

    def _build_replacement(self, target: Target, record: InterceptionRecord) -> Any:
        if not target.is_class:
            bound = getattr(target.owner, target.name, _MISSING)
            if bound is _MISSING or not callable(bound):
                raise NoSuchMethod(_owner_label(target.owner), target.name)
            owner = target.owner
            return _forwarder(record, bound, lambda args, kwargs: (owner, bound, args, kwargs))

        raw = target.static_attribute()
        if isinstance(raw, staticmethod):
            func = raw.__func__
            return staticmethod(
                _forwarder(record, func, lambda args, kwargs: (None, func, args, kwargs))
            )

        if isinstance(raw, classmethod):
            func = raw.__func__

            def split_class(args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
                cls = args[0]
                return cls, types.MethodType(func, cls), args[1:], kwargs

            return classmethod(_forwarder(record, func, split_class))

        if raw is _MISSING or not callable(raw):
            raise NoSuchMethod(_owner_label(target.owner), target.name)

        if hasattr(type(raw), "__get__"):
            def bind(receiver: Any) -> Callable[..., Any]:
                return raw.__get__(receiver, type(receiver))
        else:
            def bind(receiver: Any) -> Callable[..., Any]:
                return raw

        def split_method(args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
            if not args:
                raise TypeError(f"{target.label}() missing required positional argument: 'self'")
            receiver = args[0]
            return receiver, bind(receiver), args[1:], kwargs

        return _forwarder(record, raw, split_method)


Split = Callable[
    [tuple[Any, ...], dict[str, Any]],
    tuple[Any, Callable[..., Any], tuple[Any, ...], dict[str, Any]],
]


def _forwarder(record: InterceptionRecord, template: Any, split: Split) -> Callable[..., Any]:
    """A function shaped like ``template`` that routes calls through ``record``.

    Coroutine functions get a coroutine function and generator functions a
    generator function, so ``inspect`` still classifies the replacement like
    the original and timing covers the whole await or iteration.
    ``split(args, kwargs)`` picks out the receiver, the callable to run and
    the arguments left for it.
    """
    if inspect.iscoroutinefunction(template):
        @functools.wraps(template)
        async def forward_async(*args: Any, **kwargs: Any) -> Any:
            return await record.invoke_async(*split(args, kwargs))

        return forward_async

    if inspect.isgeneratorfunction(template):
        @functools.wraps(template)
        def forward_generator(*args: Any, **kwargs: Any) -> Any:
            return (yield from record.invoke_generator(*split(args, kwargs)))

        return forward_generator

    @functools.wraps(template)
    def forward(*args: Any, **kwargs: Any) -> Any:
        return record.invoke(*split(args, kwargs))

    return forward


def _owner_label(owner: object) -> str:
    if isinstance(owner, type):
        return owner.__qualname__
    if isinstance(owner, types.ModuleType):
        return owner.__name__
    return f"{type(owner).__qualname__} instance"


# ---------------------------------------------------------------------------
# Observer variants
# ---------------------------------------------------------------------------

def call_counter(out: Output) -> OnCall:
    """Observer printing the running call count of the target."""

    def on_call(event: CallEvent) -> None:
        times = "time" if event.call_number == 1 else "times"
        out.line(f"{event.label} called {event.call_number} {times}")

    return on_call


def call_timer(out: Output, stats: CallStats | None = None) -> OnReturn:
    """Observer printing each call's duration and recording it into ``stats``."""

    def on_return(event: ReturnEvent) -> None:
        suffix = f" (raised {type(event.exception).__name__})" if event.raised else ""
        out.line(f"{event.call.label} took {format_ms(event.elapsed)}{suffix}")
        if stats is not None:
            stats.record(event.call.label, event.elapsed, raised=event.raised)

    return on_return


def argument_logger(out: Output) -> OnCall:
    """Observer printing the arguments of every call."""

    def on_call(event: CallEvent) -> None:
        parts = [out.short_repr(a) for a in event.args]
        parts.extend(f"{k}={out.short_repr(v)}" for k, v in event.kwargs.items())
        out.line(f"{event.label}({', '.join(parts)})")

    return on_call
