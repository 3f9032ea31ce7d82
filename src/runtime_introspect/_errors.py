"""Error taxonomy for instrumentation control.

Every error carries an optional context dict that is rendered into the
message, so a failed ``intercept`` or ``unregister`` in an interactive
session says which owner/method it was about.
"""

from typing import Any


class IntrospectionError(Exception):
    """Base class for all toolkit errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} [{context_str}]"


class NoSuchMethod(IntrospectionError, AttributeError):
    """The requested attribute is missing on the owner or is not callable."""

    def __init__(self, owner_label: str, method_name: str) -> None:
        super().__init__(
            f"{owner_label} has no callable attribute {method_name!r}",
            context={"owner": owner_label, "method": method_name},
        )
        self.method_name = method_name


class AlreadyInstrumented(IntrospectionError):
    """A target (or tracer) is already active and composition was not requested."""

    def __init__(self, label: str) -> None:
        super().__init__(f"{label} is already instrumented", context={"target": label})
        self.label = label


class UnknownToken(IntrospectionError):
    """Restoration requested with a token the registry cannot honour."""


class UnsafeContext(IntrospectionError):
    """A debug-only operation was attempted in a production environment."""

    def __init__(self, operation: str, environment: str) -> None:
        super().__init__(
            f"Refusing to {operation} in environment {environment!r}",
            context={"environment": environment},
        )
        self.environment = environment


class ConfigError(IntrospectionError):
    """An environment variable could not be parsed into a config field."""

    def __init__(self, message: str, field_name: str, field_value: Any) -> None:
        super().__init__(
            message,
            context={"field": field_name, "value": str(field_value)[:100]},
        )
        self.field_name = field_name
