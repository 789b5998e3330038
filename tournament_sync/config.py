"""Configuration helpers for the sync runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def env_bool(name: str, *, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def env_int(name: str, *, default: int | None = None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class EngineConfig:
    table_name: str | None
    aws_region: str
    verification_max_attempts: int
    best_time_max_attempts: int
    history_rebuild_enabled: bool
    best_time_sync_enabled: bool
    log_level: str


def _positive(value: int | None, default: int) -> int:
    if value is None or value < 1:
        return default
    return value


def read_engine_config() -> EngineConfig:
    return EngineConfig(
        table_name=os.getenv("TOURNAMENT_TABLE_NAME") or None,
        aws_region=os.getenv("AWS_REGION", "us-east-1"),
        verification_max_attempts=_positive(
            env_int("VERIFICATION_MAX_ATTEMPTS"), 5
        ),
        best_time_max_attempts=_positive(env_int("BEST_TIME_MAX_ATTEMPTS"), 3),
        history_rebuild_enabled=env_bool("HISTORY_REBUILD_ENABLED", default=True),
        best_time_sync_enabled=env_bool("BEST_TIME_SYNC_ENABLED", default=True),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


__all__ = ["EngineConfig", "env_bool", "env_int", "read_engine_config"]
