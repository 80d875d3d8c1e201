"""Runtime settings read from the environment; CLI options override them."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigurationError
from .report import DEFAULT_TAIL_LINES

ENV_PREFIX = "MATRIXCI_"


def _int(env: Mapping[str, str], key: str, default: Optional[int], minimum: int) -> Optional[int]:
    raw = env.get(ENV_PREFIX + key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{key} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{ENV_PREFIX}{key} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], key: str) -> Optional[float]:
    raw = env.get(ENV_PREFIX + key)
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{key} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(f"{ENV_PREFIX}{key} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    max_workers: Optional[int] = None      # None = one worker per instance
    run_timeout: Optional[float] = None    # seconds
    output_tail: int = DEFAULT_TAIL_LINES
    log_level: str = "WARNING"
    log_format: str = "console"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        log_format = env.get(ENV_PREFIX + "LOG_FORMAT", "console")
        if log_format not in ("console", "json"):
            raise ConfigurationError(f"{ENV_PREFIX}LOG_FORMAT must be 'console' or 'json', got {log_format!r}")
        return cls(
            max_workers=_int(env, "MAX_WORKERS", None, 1),
            run_timeout=_float(env, "RUN_TIMEOUT"),
            output_tail=_int(env, "OUTPUT_TAIL", DEFAULT_TAIL_LINES, 0),
            log_level=env.get(ENV_PREFIX + "LOG_LEVEL", "WARNING").upper(),
            log_format=log_format,
        )
