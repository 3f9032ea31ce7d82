"""Named, structured event channels and a query logger on top of them.

``Notifier`` is a minimal in-process notification bus: the host application
publishes ``(name, payload, duration)`` events, usually through
``instrument()``, and subscribers receive them synchronously on the
publishing thread, in subscription order.

Usage:
    notifier = Notifier()
    logger_ = QueryEventLogger(notifier, Output())
    subscription = logger_.subscribe("sql.query")

    with notifier.instrument("sql.query", sql="SELECT 1"):
        cursor.execute("SELECT 1")
    # prints: sql.query (0.412ms) SELECT 1

    subscription.unsubscribe()
"""

import re
import threading
import time
from collections.abc import Callable, Generator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from beartype import beartype
from loguru import logger

from runtime_introspect._output import Output, format_ms


@dataclass(frozen=True)
class Event:
    name: str
    payload: Mapping[str, Any]
    duration: float
    thread: str = field(default_factory=lambda: threading.current_thread().name)


Listener = Callable[[Event], Any]
Pattern = str | re.Pattern[str]


class Subscription:
    """Handle of one standing listener. ``unsubscribe()`` is idempotent."""

    def __init__(self, notifier: "Notifier", pattern: Pattern, listener: Listener) -> None:
        self.notifier = notifier
        self.pattern = pattern
        self.listener = listener
        self.active = True

    def matches(self, name: str) -> bool:
        if isinstance(self.pattern, str):
            return self.pattern == name
        return self.pattern.fullmatch(name) is not None

    def unsubscribe(self) -> None:
        if self.active:
            self.notifier._remove(self)
            self.active = False

    def __repr__(self) -> str:
        pattern = self.pattern if isinstance(self.pattern, str) else self.pattern.pattern
        state = "active" if self.active else "cancelled"
        return f"<Subscription {pattern!r} {state}>"


class Notifier:
    """In-process event bus. Thread-safe subscribe/unsubscribe/publish."""

    def __init__(self) -> None:
        self._subscriptions: tuple[Subscription, ...] = ()
        self._lock = threading.Lock()

    @beartype
    def subscribe(self, pattern: Pattern, listener: Listener) -> Subscription:
        """Register ``listener`` for every event whose name matches ``pattern``.

        Args:
            pattern: Exact event name, or a compiled regex matched against the
                full name
            listener: Called with an Event for each matching publish
        """
        subscription = Subscription(self, pattern, listener)
        with self._lock:
            self._subscriptions = (*self._subscriptions, subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions = tuple(s for s in self._subscriptions if s is not subscription)

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return self._subscriptions

    @beartype
    def publish(self, name: str, payload: Mapping[str, Any], duration: float) -> int:
        """Deliver one event to every matching listener.

        Returns:
            Number of listeners the event was delivered to.
        """
        assert name, "Event name must be non-empty"
        assert duration >= 0, f"Event duration must be non-negative: {duration}"
        event = Event(name, payload, duration)
        delivered = 0
        for subscription in self._subscriptions:
            if not subscription.matches(name):
                continue
            delivered += 1
            try:
                subscription.listener(event)
            except Exception:
                logger.opt(exception=True).warning(f"Listener for {name!r} raised")
        return delivered

    @beartype
    @contextmanager
    def instrument(self, name: str, **payload: Any) -> Generator[dict[str, Any], None, None]:
        """Time the ``with`` block and publish it as ``name``.

        The yielded dict is the payload and may be extended inside the block.
        The event is published even when the block raises, with the
        exception recorded under ``payload["exception"]``.
        """
        start = time.perf_counter()
        try:
            yield payload
        except BaseException as exc:
            payload["exception"] = (type(exc).__name__, str(exc))
            raise
        finally:
            self.publish(name, payload, time.perf_counter() - start)


Formatter = Callable[[Mapping[str, Any], float], str]


def describe_query(payload: Mapping[str, Any], duration: float) -> str:
    """Default formatter: ``(1.234ms) SELECT ...``."""
    description = payload.get("sql") or payload.get("description") or dict(payload)
    return f"({format_ms(duration)}) {description}"


class QueryEventLogger:
    """Prints one line for every event published on the subscribed channels."""

    @beartype
    def __init__(self, notifier: Notifier, out: Output) -> None:
        self.notifier = notifier
        self.out = out
        self.subscriptions: list[Subscription] = []

    @beartype
    def subscribe(self, channel: Pattern, formatter: Formatter | None = None) -> Subscription:
        """Print ``formatter(payload, duration)`` for every event on ``channel``."""
        fmt = formatter if formatter is not None else describe_query

        def listener(event: Event) -> None:
            self.out.line(f"{event.name} {fmt(event.payload, event.duration)}")

        subscription = self.notifier.subscribe(channel, listener)
        self.subscriptions.append(subscription)
        logger.debug(f"Logging events on {subscription!r}")
        return subscription

    def unsubscribe_all(self) -> None:
        for subscription in self.subscriptions:
            subscription.unsubscribe()
        self.subscriptions.clear()
