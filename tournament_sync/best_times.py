from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Final, Literal

from .models import ScoreRecord, User, format_timestamp
from .storage import TournamentStorage, where
from .validation import ConditionFailedError

log: Final = logging.getLogger("tournament-sync")

BEST_TIME_COLLECTIONS = ("records", "overall_records")

_CODE_EVENT_TYPES: Final = {
    "3-3-3": "3-3-3",
    "3-6-3": "3-6-3",
    "cycle": "Cycle",
    "overall": "Overall",
}
_EVENT_SUBSTRINGS: Final = (("3-3-3", "3-3-3"), ("3-6-3", "3-6-3"), ("cycle", "Cycle"))

OutcomeStatus = Literal[
    "updated",
    "not_improved",
    "skipped",
    "user_not_found",
    "conflict",
]


def utc_now() -> datetime:
    return datetime.now(UTC)


def event_type_for(record: ScoreRecord) -> str | None:
    if record.code:
        event_type = _CODE_EVENT_TYPES.get(record.code.strip().lower())
        if event_type is not None:
            return event_type
    if not record.event:
        return None
    lowered = record.event.lower()
    for needle, event_type in _EVENT_SUBSTRINGS:
        if needle in lowered:
            return event_type
    return None


def season_for(moment: datetime) -> str:
    """Seasons run July to June: 2024-08-01 is ``2024-2025``, 2024-03-01 is ``2023-2024``."""
    moment = moment.astimezone(UTC)
    start_year = moment.year if moment.month >= 7 else moment.year - 1
    return f"{start_year}-{start_year + 1}"


def candidate_time(collection: str, record: ScoreRecord) -> float | None:
    """Return the finishing time to compare, or None when it is not a valid finish.

    Zero encodes "did not finish" and is never a best time.
    """
    if collection == "overall_records":
        value = record.overall_time if record.overall_time is not None else record.best_time
    else:
        value = record.best_time
    if value is None or not math.isfinite(value) or value <= 0:
        return None
    return round(value, 3)


@dataclass(slots=True)
class BestTimeOutcome:
    status: OutcomeStatus
    event_type: str | None = None
    time: float | None = None
    previous: float | None = None

    @property
    def updated(self) -> bool:
        return self.status == "updated"


class BestTimeUpdater:
    """Keep each athlete's per-event best time at its minimum.

    The user document is rewritten with a version-conditioned update, so two
    deliveries racing on the same athlete cannot overwrite a faster time with
    a slower one; the loser re-reads and compares again.
    """

    def __init__(
        self,
        storage: TournamentStorage,
        *,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._max_attempts = max_attempts
        self._clock = clock

    async def apply(self, collection: str, record: ScoreRecord) -> BestTimeOutcome:
        if collection not in BEST_TIME_COLLECTIONS or record.is_team:
            return BestTimeOutcome("skipped")
        global_id = record.participant_global_id
        event_type = event_type_for(record)
        time = candidate_time(collection, record)
        if not global_id or event_type is None or time is None:
            return BestTimeOutcome("skipped", event_type=event_type, time=time)

        for attempt in range(1, self._max_attempts + 1):
            user_doc = await self._storage.find_one(
                User.COLLECTION, where("global_id", global_id)
            )
            if user_doc is None:
                log.warning("User not found with global_id: %s", global_id)
                return BestTimeOutcome("user_not_found", event_type, time)

            user = User.from_item(user_doc.id, user_doc.data)
            current = user.best_times.get(event_type)
            if current is not None and time >= current.time:
                return BestTimeOutcome("not_improved", event_type, time, current.time)

            now = self._clock()
            stamp = format_timestamp(now)
            best_times = dict(user.raw_best_times)
            best_times[event_type] = {
                "time": time,
                "updated_at": stamp,
                "season": season_for(now),
            }
            try:
                await self._storage.compare_and_update(
                    User.COLLECTION,
                    user.id,
                    {"best_times": best_times, "updated_at": stamp},
                    expected_version=user_doc.version,
                )
            except ConditionFailedError:
                log.info(
                    "Best time for %s/%s changed concurrently (attempt %s/%s)",
                    global_id,
                    event_type,
                    attempt,
                    self._max_attempts,
                )
                continue
            log.info(
                "Updated %s best time for %s: %s -> %s",
                event_type,
                global_id,
                current.time if current is not None else None,
                time,
            )
            return BestTimeOutcome(
                "updated",
                event_type,
                time,
                current.time if current is not None else None,
            )

        log.warning(
            "Gave up updating %s best time for %s after %s attempts",
            event_type,
            global_id,
            self._max_attempts,
        )
        return BestTimeOutcome("conflict", event_type, time)


__all__ = [
    "BEST_TIME_COLLECTIONS",
    "BestTimeOutcome",
    "BestTimeUpdater",
    "candidate_time",
    "event_type_for",
    "season_for",
]
