"""Process-wide DynamoDB handle, created on first use."""

from __future__ import annotations

import boto3

from .config import EngineConfig, read_engine_config
from .storage import TournamentStorage

_table = None


def get_table(config: EngineConfig | None = None):
    global _table
    if _table is None:
        config = config or read_engine_config()
        if not config.table_name:
            raise RuntimeError("TOURNAMENT_TABLE_NAME is not configured")
        dynamodb = boto3.resource("dynamodb", region_name=config.aws_region)
        _table = dynamodb.Table(config.table_name)
    return _table


def get_storage(config: EngineConfig | None = None) -> TournamentStorage:
    return TournamentStorage(get_table(config))


def reset_clients() -> None:
    global _table
    _table = None


__all__ = ["get_storage", "get_table", "reset_clients"]
