"""Creation-time switch for transport-level debug output of a client class.

``enable_debug()`` intercepts the client's ``__init__`` so that every
instance created afterwards gets debug output attached. Instances created
before the switch are left alone. By default this targets
``http.client.HTTPConnection`` (which ``urllib`` and ``requests``' urllib3
connections build on) and calls ``set_debuglevel(1)``, so request and
response headers are echoed to stdout.
"""

import http.client
from collections.abc import Callable
from typing import Any

from beartype import beartype
from loguru import logger

from runtime_introspect._config import Config
from runtime_introspect._errors import UnsafeContext
from runtime_introspect._interceptor import InterceptionRecord, MethodInterceptor, ReturnEvent


def attach_debuglevel(instance: Any) -> None:
    instance.set_debuglevel(1)


class DebugIOToggle:
    """Process-wide debug switch for one client class.

    Args:
        interceptor: Interceptor used to patch the client's constructor
        config: Refuses to enable when ``config.is_production``
        client_cls: Class whose new instances get debug output
        attach: Called with each newly constructed instance
    """

    @beartype
    def __init__(
        self,
        interceptor: MethodInterceptor,
        config: Config,
        client_cls: type = http.client.HTTPConnection,
        attach: Callable[[Any], Any] = attach_debuglevel,
    ) -> None:
        self.interceptor = interceptor
        self.config = config
        self.client_cls = client_cls
        self.attach = attach
        self._record: InterceptionRecord | None = None

    @property
    def enabled(self) -> bool:
        return self._record is not None

    def enable_debug(self) -> InterceptionRecord:
        """Attach debug output to every client created from now on.

        Raises:
            UnsafeContext: If the configured environment is a production one.
            AlreadyInstrumented: If the constructor is intercepted elsewhere.
        """
        if self.config.is_production:
            raise UnsafeContext(
                f"enable debug output for {self.client_cls.__qualname__}",
                self.config.environment,
            )
        if self._record is not None:
            return self._record
        self._record = self.interceptor.intercept(
            self.client_cls, "__init__", on_return=self._on_constructed
        )
        logger.info(f"Debug output enabled for new {self.client_cls.__qualname__} instances")
        return self._record

    def disable_debug(self) -> None:
        """Stop attaching debug output to new instances. Idempotent."""
        if self._record is None:
            return
        record, self._record = self._record, None
        self.interceptor.restore(record)
        logger.info(f"Debug output disabled for new {self.client_cls.__qualname__} instances")

    def _on_constructed(self, event: ReturnEvent) -> None:
        # subclasses calling super().__init__ pass through here too
        if not event.raised:
            self.attach(event.call.receiver)
