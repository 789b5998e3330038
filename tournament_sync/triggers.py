from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

from boto3.dynamodb.types import TypeDeserializer

from .best_times import BEST_TIME_COLLECTIONS, BestTimeUpdater
from .history import HistoryAggregator, affected_global_ids
from .models import RECORD_COLLECTIONS, ScoreRecord
from .storage import KEY_ATTRIBUTES, VERSION_ATTRIBUTE, from_dynamo

log: Final = logging.getLogger("tournament-sync")

_deserializer = TypeDeserializer()


@dataclass(frozen=True, slots=True)
class Created:
    after: dict[str, object]

    @property
    def before(self) -> None:
        return None


@dataclass(frozen=True, slots=True)
class Updated:
    before: dict[str, object]
    after: dict[str, object]


@dataclass(frozen=True, slots=True)
class Deleted:
    before: dict[str, object]

    @property
    def after(self) -> None:
        return None


DocumentChange = Created | Updated | Deleted


@dataclass(frozen=True, slots=True)
class StreamChange:
    collection: str
    document_id: str
    change: DocumentChange


def _image(raw: object) -> dict[str, object] | None:
    if not isinstance(raw, Mapping) or not raw:
        return None
    return {
        key: from_dynamo(_deserializer.deserialize(value))
        for key, value in raw.items()
        if key not in KEY_ATTRIBUTES and key != VERSION_ATTRIBUTE
    }


def change_from_stream_record(record: Mapping[str, object]) -> StreamChange | None:
    """Decode one DynamoDB Streams record; unsupported shapes yield None."""
    dynamodb = record.get("dynamodb")
    if not isinstance(dynamodb, Mapping):
        return None
    keys = dynamodb.get("Keys")
    if not isinstance(keys, Mapping) or "pk" not in keys or "sk" not in keys:
        return None
    collection = str(_deserializer.deserialize(keys["pk"]))
    document_id = str(_deserializer.deserialize(keys["sk"]))

    before = _image(dynamodb.get("OldImage"))
    after = _image(dynamodb.get("NewImage"))
    event_name = record.get("eventName")
    change: DocumentChange
    if event_name == "INSERT" and after is not None:
        change = Created(after)
    elif event_name == "MODIFY" and after is not None:
        change = Updated(before or {}, after)
    elif event_name == "REMOVE":
        change = Deleted(before or {})
    else:
        return None
    return StreamChange(collection, document_id, change)


class RecordTriggers:
    """Fan record writes out to the best-time and history handlers.

    There is no caller to report to: each handler's failure is logged and
    swallowed, and the next write for the athlete repairs the state.
    """

    def __init__(
        self,
        *,
        best_times: BestTimeUpdater | None,
        history: HistoryAggregator | None,
    ) -> None:
        self._best_times = best_times
        self._history = history

    async def handle(self, collection: str, document_id: str, change: DocumentChange) -> None:
        if collection not in RECORD_COLLECTIONS:
            return
        after = change.after
        if after is None:
            # Deletions do not touch derived data; use the backfill script to prune.
            log.debug("Ignoring deletion of %s/%s", collection, document_id)
            return
        record = ScoreRecord.from_item(collection, document_id, after)
        global_ids = affected_global_ids(record)
        if change.before:
            # Athletes dropped from the record by this update must lose it too.
            previous = ScoreRecord.from_item(collection, document_id, change.before)
            for global_id in affected_global_ids(previous):
                if global_id not in global_ids:
                    global_ids.append(global_id)
        await self._sync_best_time(collection, record)
        await self._sync_history(record, global_ids)

    async def handle_stream_change(self, change: StreamChange) -> None:
        await self.handle(change.collection, change.document_id, change.change)

    async def _sync_best_time(self, collection: str, record: ScoreRecord) -> None:
        if self._best_times is None or collection not in BEST_TIME_COLLECTIONS:
            return
        try:
            await self._best_times.apply(collection, record)
        except Exception:  # pylint: disable=broad-except
            log.exception("Error updating best time from %s", record.path)

    async def _sync_history(self, record: ScoreRecord, global_ids: list[str]) -> None:
        if self._history is None:
            return
        if not global_ids:
            return
        try:
            await self._history.rebuild_many(global_ids)
        except Exception:  # pylint: disable=broad-except
            log.exception("Error rebuilding history from %s", record.path)


__all__ = [
    "Created",
    "Deleted",
    "DocumentChange",
    "RecordTriggers",
    "StreamChange",
    "Updated",
    "change_from_stream_record",
]
