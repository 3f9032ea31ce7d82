"""Plain-text output helpers shared by every instrument."""

import reprlib
import sys
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Writable(Protocol):
    def write(self, s: str, /) -> Any: ...


class Output:
    """Line writer bound to a stream.

    When no stream is given, ``sys.stdout`` is resolved on every write so
    stream redirection (pytest's capsys, ``contextlib.redirect_stdout``)
    applies to instruments installed before the redirect.
    """

    def __init__(self, stream: Writable | None = None, repr_limit: int = 200) -> None:
        self._stream = stream
        self._repr = reprlib.Repr()
        self._repr.maxstring = repr_limit
        self._repr.maxother = repr_limit
        self._repr.maxlong = repr_limit

    @property
    def stream(self) -> Writable:
        return self._stream if self._stream is not None else sys.stdout

    def line(self, text: str = "") -> None:
        self.stream.write(text + "\n")

    def short_repr(self, value: Any) -> str:
        return self._repr.repr(value)


def format_bytes(n: int | float) -> str:
    sign = "-" if n < 0 else "+"
    size = float(abs(n))
    for unit in ("B", "KiB", "MiB"):
        if size < 1024:
            return f"{sign}{size:.1f}{unit}" if unit != "B" else f"{sign}{int(size)}B"
        size /= 1024
    return f"{sign}{size:.2f}GiB"


def format_ms(seconds: float) -> str:
    return f"{seconds * 1000:.3f}ms"
