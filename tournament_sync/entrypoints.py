"""Runtime entry points for the DynamoDB stream and the verification endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable, Mapping
from typing import Final

from .best_times import BestTimeUpdater
from .clients import get_storage
from .config import EngineConfig, read_engine_config
from .handlers import Authorizer, VerificationHandler
from .history import HistoryAggregator
from .storage import TournamentStorage
from .triggers import RecordTriggers, change_from_stream_record
from .verification import MembershipVerifier

log: Final = logging.getLogger("tournament-sync")

_authorizer: Authorizer | None = None


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def register_authorizer(authorizer: Authorizer | None) -> None:
    """Install the bearer-token check supplied by the host application."""
    global _authorizer
    _authorizer = authorizer


def build_triggers(storage: TournamentStorage, config: EngineConfig) -> RecordTriggers:
    best_times = (
        BestTimeUpdater(storage, max_attempts=config.best_time_max_attempts)
        if config.best_time_sync_enabled
        else None
    )
    history = HistoryAggregator(storage) if config.history_rebuild_enabled else None
    return RecordTriggers(best_times=best_times, history=history)


def build_verification_handler(
    storage: TournamentStorage, config: EngineConfig, authorizer: Authorizer
) -> VerificationHandler:
    verifier = MembershipVerifier(
        storage, max_attempts=config.verification_max_attempts
    )
    return VerificationHandler(verifier, authorizer)


async def process_stream_records(
    triggers: RecordTriggers, records: Iterable[Mapping[str, object]]
) -> int:
    handled = 0
    for raw in records:
        change = change_from_stream_record(raw)
        if change is None:
            log.debug("Skipping unsupported stream record %s", raw.get("eventID"))
            continue
        await triggers.handle_stream_change(change)
        handled += 1
    return handled


async def _reject_all(_token: str) -> str | None:
    log.error("No authorizer registered; rejecting verification request")
    return None


def _json_response(status: int, payload: Mapping[str, object]) -> dict[str, object]:
    return {
        "statusCode": status,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(payload),
    }


def stream_handler(event: Mapping[str, object], context: object = None) -> dict[str, int]:
    config = read_engine_config()
    configure_logging(config.log_level)
    triggers = build_triggers(get_storage(config), config)
    records = event.get("Records") or []
    handled = asyncio.run(process_stream_records(triggers, records))  # type: ignore[arg-type]
    return {"handled": handled}


def verification_handler(
    event: Mapping[str, object], context: object = None
) -> dict[str, object]:
    config = read_engine_config()
    configure_logging(config.log_level)
    raw_body = event.get("body")
    if isinstance(raw_body, str):
        try:
            body: object = json.loads(raw_body) if raw_body else {}
        except ValueError:
            return _json_response(400, {"error": "Request body must be JSON"})
    else:
        body = raw_body or {}
    headers = event.get("headers") or {}
    handler = build_verification_handler(
        get_storage(config), config, _authorizer or _reject_all
    )
    status, payload = asyncio.run(handler.handle(headers, body))  # type: ignore[arg-type]
    return _json_response(status, payload)


__all__ = [
    "build_triggers",
    "build_verification_handler",
    "configure_logging",
    "process_stream_records",
    "register_authorizer",
    "stream_handler",
    "verification_handler",
]
