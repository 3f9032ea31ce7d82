"""Bookkeeping for replaced attributes.

The registry is the only place that writes to an owner's namespace. It
captures the raw attribute (``staticmethod``/``classmethod`` wrappers
included) before installing a replacement, so restoring puts back the exact
object that was there, or removes the override when the original was
inherited from a base class.
"""

import inspect
import itertools
import threading
import time
import types
from dataclasses import dataclass
from typing import Any

from beartype import beartype
from loguru import logger

from runtime_introspect._errors import AlreadyInstrumented, UnknownToken

_MISSING: Any = object()

# (owner id, name, replacement id) -> (replacement, original) for replacements
# whose token was dropped as stale while a later wrapper still delegates to
# them. Shared by every registry in the process; a later restore that would
# reinstall such a replacement reinstalls its original instead.
_retired: dict[tuple[int, str, int], tuple[Any, Any]] = {}
_retired_lock = threading.Lock()


@dataclass(frozen=True, eq=False)
class Target:
    """An owner (class, module or single instance) plus an attribute name."""

    owner: object
    name: str

    def __post_init__(self) -> None:
        assert self.name, "Target method name must be non-empty"

    @property
    def key(self) -> tuple[int, str]:
        return (id(self.owner), self.name)

    @property
    def is_class(self) -> bool:
        return isinstance(self.owner, type)

    @property
    def is_module(self) -> bool:
        return isinstance(self.owner, types.ModuleType)

    @property
    def label(self) -> str:
        if self.is_class:
            return f"{self.owner.__qualname__}.{self.name}"  # type: ignore[attr-defined]
        if self.is_module:
            return f"{self.owner.__name__}.{self.name}"  # type: ignore[attr-defined]
        return f"{type(self.owner).__qualname__}(0x{id(self.owner):x}).{self.name}"

    def own_attribute(self) -> Any:
        """Raw attribute stored directly on the owner, or ``_MISSING``."""
        try:
            namespace = vars(self.owner)
        except TypeError:
            return _MISSING
        return namespace.get(self.name, _MISSING)

    def static_attribute(self) -> Any:
        """Raw attribute found by MRO lookup without triggering descriptors."""
        return inspect.getattr_static(self.owner, self.name, _MISSING)


class InstrumentationToken:
    """Opaque handle for one installed replacement."""

    def __init__(
        self,
        token_id: int,
        target: Target,
        original: Any,
        replacement: Any,
    ) -> None:
        self.id = token_id
        self.target = target
        self.original = original
        self.replacement = replacement
        self.wrapped_at = time.time()

    @property
    def had_own_attribute(self) -> bool:
        return self.original is not _MISSING

    def __repr__(self) -> str:
        return f"<InstrumentationToken #{self.id} {self.target.label}>"


class InstrumentationRegistry:
    """Tracks which (owner, name) pairs are currently replaced.

    Thread-safe: every read and write of the internal map happens under an
    RLock, and the attribute swap on the owner happens inside the same
    critical section as the map update.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[int, str], InstrumentationToken] = {}
        self._lock = threading.RLock()
        self._ids = itertools.count(1)

    @beartype
    def register(self, target: Target, replacement: object) -> InstrumentationToken:
        """Capture the original attribute and install ``replacement``.

        Raises:
            AlreadyInstrumented: If the target already has a registered replacement.
        """
        with self._lock:
            if target.key in self._entries:
                raise AlreadyInstrumented(target.label)
            token = InstrumentationToken(
                next(self._ids),
                target,
                original=target.own_attribute(),
                replacement=replacement,
            )
            setattr(target.owner, target.name, replacement)
            self._entries[target.key] = token
        logger.debug(f"Instrumented {target.label} (token #{token.id})")
        return token

    @beartype
    def unregister(self, token: InstrumentationToken) -> None:
        """Put back the attribute captured at registration time.

        Raises:
            UnknownToken: If the token is not registered here, or the owner's
                attribute was replaced after wrapping (the original can no
                longer be restored safely). A stale token is dropped; if a
                later replacement wraps it, restoring that one reinstates
                this token's original.
        """
        target = token.target
        with self._lock:
            if self._entries.get(target.key) is not token:
                raise UnknownToken(
                    f"Token #{token.id} for {target.label} is not registered",
                    context={"token": token.id},
                )
            del self._entries[target.key]
            if target.own_attribute() is not token.replacement:
                _retire(token)
                raise UnknownToken(
                    f"{target.label} was redefined after wrapping; leaving the new definition in place",
                    context={"token": token.id},
                )
            original = _unwrap_retired(target, token.original)
            if original is not _MISSING:
                setattr(target.owner, target.name, original)
            else:
                delattr(target.owner, target.name)
        logger.debug(f"Restored {target.label} (token #{token.id})")

    def lookup(self, owner: object, name: str) -> InstrumentationToken | None:
        with self._lock:
            return self._entries.get((id(owner), name))

    def is_instrumented(self, owner: object, name: str) -> bool:
        return self.lookup(owner, name) is not None

    def tokens(self) -> list[InstrumentationToken]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda t: t.id)

    def clear(self) -> int:
        """Unregister every token, newest first. Returns how many were restored."""
        restored = 0
        for token in reversed(self.tokens()):
            try:
                self.unregister(token)
                restored += 1
            except UnknownToken as exc:
                logger.warning(f"Dropped stale instrumentation: {exc}")
        return restored

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _retire(token: InstrumentationToken) -> None:
    key = (*token.target.key, id(token.replacement))
    with _retired_lock:
        _retired[key] = (token.replacement, token.original)


def _unwrap_retired(target: Target, original: Any) -> Any:
    """Follow retired replacements of ``target`` back to the attribute they replaced."""
    with _retired_lock:
        while True:
            key = (*target.key, id(original))
            entry = _retired.get(key)
            if entry is None or entry[0] is not original:
                return original
            del _retired[key]
            original = entry[1]
