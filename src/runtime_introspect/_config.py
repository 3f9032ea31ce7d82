"""Toolkit configuration.

All values have an explicit default in ``Config``; ``load_config`` only
overrides what the environment sets.

Environment Variables:
    INTROSPECT_ENV: Environment name (falls back to APP_ENV, then "development")
    INTROSPECT_STACK_DEPTH: Frames kept in change-report stacks (default: 5)
    INTROSPECT_REPR_LIMIT: Max characters of an argument repr (default: 200)
    INTROSPECT_LOG_LIMIT: Max entries kept in a per-call log (default: 100)
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from beartype import beartype

from runtime_introspect._errors import ConfigError

DEFAULT_PRODUCTION_ENVIRONMENTS = frozenset({"production", "prod"})


@dataclass(frozen=True)
class Config:
    environment: str = "development"
    production_environments: frozenset[str] = field(
        default=DEFAULT_PRODUCTION_ENVIRONMENTS
    )
    stack_depth: int = 5
    repr_limit: int = 200
    log_limit: int = 100

    def __post_init__(self) -> None:
        assert self.stack_depth > 0, f"stack_depth must be positive: {self.stack_depth}"
        assert self.repr_limit > 0, f"repr_limit must be positive: {self.repr_limit}"
        assert self.log_limit > 0, f"log_limit must be positive: {self.log_limit}"

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in self.production_environments


def _int_setting(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer", key, raw) from None
    if value <= 0:
        raise ConfigError(f"{key} must be positive", key, raw)
    return value


@beartype
def load_config(environ: Mapping[str, str] | None = None) -> Config:
    """Build a Config from environment variables.

    Args:
        environ: Mapping to read from (defaults to ``os.environ``)

    Raises:
        ConfigError: If a numeric setting is malformed or non-positive.
    """
    env = os.environ if environ is None else environ
    environment = env.get("INTROSPECT_ENV") or env.get("APP_ENV") or "development"
    return Config(
        environment=environment,
        stack_depth=_int_setting(env, "INTROSPECT_STACK_DEPTH", 5),
        repr_limit=_int_setting(env, "INTROSPECT_REPR_LIMIT", 200),
        log_limit=_int_setting(env, "INTROSPECT_LOG_LIMIT", 100),
    )
