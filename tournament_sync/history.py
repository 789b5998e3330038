"""Materialized per-athlete competition history.

Every rebuild recomputes the whole ``user_tournament_history`` document for
one athlete from the three record collections; nothing is patched
incrementally, so running it twice in a row yields the same tournaments.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Final

from botocore.exceptions import ClientError

from .models import (
    HistoryResult,
    ParticipantRole,
    ScoreRecord,
    TeamContext,
    TournamentInfo,
    TournamentSummary,
    User,
    UserTournamentHistory,
    utc_now_iso,
)
from .storage import (
    Document,
    DocumentKey,
    Filter,
    TournamentStorage,
    array_contains,
    where,
)

log: Final = logging.getLogger("tournament-sync")

EVENT_CATEGORIES: Final = {
    "double": "double",
    "team relay": "team_relay",
    "parent & child": "parent_&_child",
    "special need": "special_need",
    "stackout champion": "stackout_champion",
    "stack out champion": "stackout_champion",
    "stack up champion": "stackout_champion",
    "blindfolded cycle": "blindfolded_cycle",
}
DEFAULT_EVENT_CATEGORY: Final = "individual"


@dataclass(frozen=True, slots=True)
class HistoryQuery:
    collection: str
    filter_for: Callable[[str], Filter]
    label: str


def _participant(global_id: str) -> Filter:
    return where("participant_global_id", global_id)


def _leader(global_id: str) -> Filter:
    return where("leader_id", global_id)


def _member(global_id: str) -> Filter:
    return array_contains("member_global_ids", global_id)


HISTORY_QUERIES: Final = (
    HistoryQuery("records", _participant, "participant"),
    HistoryQuery("records", _leader, "leader"),
    HistoryQuery("records", _member, "member"),
    HistoryQuery("prelim_records", _participant, "participant"),
    HistoryQuery("prelim_records", _leader, "leader"),
    HistoryQuery("prelim_records", _member, "member"),
    HistoryQuery("overall_records", _participant, "participant"),
)


def event_category_for(event_type: str | None) -> str:
    if not event_type:
        return DEFAULT_EVENT_CATEGORY
    return EVENT_CATEGORIES.get(event_type.strip().lower(), DEFAULT_EVENT_CATEGORY)


def infer_round(record: ScoreRecord) -> str | None:
    if record.round:
        return record.round
    if record.classification == "prelim":
        return "prelim"
    if record.classification is not None:
        return "final"
    return None


def event_key_for(record: ScoreRecord) -> str | None:
    if record.code and record.event:
        return f"{record.code}-{record.event}"
    return record.code or record.event or None


def participant_role(record: ScoreRecord, global_id: str) -> ParticipantRole:
    if not record.is_team:
        return "participant"
    if record.leader_id == global_id:
        return "leader"
    if global_id in record.member_global_ids:
        return "member"
    return "participant"


def affected_global_ids(record: ScoreRecord) -> list[str]:
    ids: list[str] = []
    candidates = [record.participant_global_id, record.leader_id, *record.member_global_ids]
    for candidate in candidates:
        if candidate and candidate not in ids:
            ids.append(candidate)
    return ids


def build_result(record: ScoreRecord, global_id: str) -> HistoryResult:
    team_context = (
        TeamContext(record.leader_id, list(record.member_global_ids))
        if record.is_team
        else None
    )
    return HistoryResult(
        record_path=record.path,
        event=record.event,
        event_key=event_key_for(record),
        event_category=event_category_for(record.event),
        round=infer_round(record),
        best_time=record.best_time if record.best_time is not None else record.overall_time,
        try1=record.try1,
        try2=record.try2,
        try3=record.try3,
        status=record.status,
        classification=record.classification,
        result_type="team" if record.is_team else "individual",
        participant_role=participant_role(record, global_id),
        team_context=team_context,
        submitted_at=record.submitted_at,
        verified_at=record.verified_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
        video_url=record.video_url,
    )


def _millis(moment: datetime | None) -> int:
    if moment is None:
        return 0
    return int(moment.timestamp() * 1000)


def _result_sort_key(result: HistoryResult) -> tuple[int, str, str]:
    return (-_millis(result.activity_at), result.event or "", result.record_path)


def _summary_sort_key(summary: TournamentSummary) -> tuple[int, str]:
    return (-_millis(summary.last_activity_at), summary.tournament_id)


class HistoryAggregator:
    def __init__(
        self,
        storage: TournamentStorage,
        *,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._storage = storage
        self._clock = clock

    async def rebuild_many(
        self, global_ids: Iterable[str], *, write: bool = True
    ) -> dict[str, UserTournamentHistory | None]:
        """Rebuild several athletes concurrently; one failure never blocks the rest."""
        ids = list(dict.fromkeys(gid.strip() for gid in global_ids if gid and gid.strip()))

        async def run(global_id: str) -> UserTournamentHistory | None:
            try:
                return await self.rebuild(global_id, write=write)
            except Exception:  # pylint: disable=broad-except
                log.exception("Failed to rebuild history for %s", global_id)
                return None

        histories = await asyncio.gather(*(run(global_id) for global_id in ids))
        return dict(zip(ids, histories, strict=True))

    async def rebuild(
        self, global_id: str, *, write: bool = True
    ) -> UserTournamentHistory | None:
        global_id = global_id.strip()
        if not global_id:
            return None

        user_doc = await self._storage.find_one(
            User.COLLECTION, where("global_id", global_id)
        )
        if user_doc is None:
            log.warning(
                "No user found for global_id %s, skipping history rebuild", global_id
            )
            return None

        documents, had_failure = await self._fetch_records(global_id)
        if had_failure and not documents:
            log.warning(
                "Skipping history rebuild for %s: a record query failed and no records were found",
                global_id,
            )
            return None

        summaries = self._group_results(documents.values(), global_id)
        infos = await self._load_tournaments(summaries)
        for tournament_id, summary in summaries.items():
            summary.results.sort(key=_result_sort_key)
            summary.last_activity_at = max(
                (result.activity_at for result in summary.results if result.activity_at),
                default=None,
            )
            info = infos.get(tournament_id)
            if info is not None:
                summary.apply_info(info)

        ordered = sorted(summaries.values(), key=_summary_sort_key)
        history = UserTournamentHistory(
            global_id=global_id,
            user_id=user_doc.id,
            updated_at=self._clock(),
            tournaments=ordered,
        )
        if write:
            await self._storage.update(
                UserTournamentHistory.COLLECTION, global_id, history.to_item()
            )
        log.info(
            "Rebuilt history for %s: %s tournaments, %s records",
            global_id,
            history.tournament_count,
            history.record_count,
        )
        return history

    async def _fetch_records(
        self, global_id: str
    ) -> tuple[dict[DocumentKey, Document], bool]:
        results = await asyncio.gather(
            *(self._run_query(query, global_id) for query in HISTORY_QUERIES)
        )
        documents: dict[DocumentKey, Document] = {}
        had_failure = False
        for batch in results:
            if batch is None:
                had_failure = True
                continue
            for document in batch:
                documents.setdefault(document.key, document)
        return documents, had_failure

    async def _run_query(
        self, query: HistoryQuery, global_id: str
    ) -> list[Document] | None:
        try:
            return await self._storage.query(query.collection, query.filter_for(global_id))
        except ClientError as exc:
            log.warning(
                "Skipping %s %s query for %s: %s",
                query.collection,
                query.label,
                global_id,
                exc,
            )
            return None

    def _group_results(
        self, documents: Iterable[Document], global_id: str
    ) -> dict[str, TournamentSummary]:
        summaries: dict[str, TournamentSummary] = {}
        for document in documents:
            record = ScoreRecord.from_item(document.collection, document.id, document.data)
            if record.tournament_id is None:
                continue
            summary = summaries.get(record.tournament_id)
            if summary is None:
                summary = TournamentSummary(tournament_id=record.tournament_id, results=[])
                summaries[record.tournament_id] = summary
            summary.results.append(build_result(record, global_id))
        return summaries

    async def _load_tournaments(
        self, tournament_ids: Iterable[str]
    ) -> dict[str, TournamentInfo]:
        cache: dict[str, TournamentInfo] = {}
        ids = list(dict.fromkeys(tournament_ids))
        fetched = await asyncio.gather(
            *(self._storage.get(TournamentInfo.COLLECTION, tid) for tid in ids),
            return_exceptions=True,
        )
        for tournament_id, outcome in zip(ids, fetched, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                log.error(
                    "Failed to load tournament metadata for %s: %s",
                    tournament_id,
                    outcome,
                )
                continue
            if outcome is None:
                continue
            cache[tournament_id] = TournamentInfo.from_item(outcome.id, outcome.data)
        return cache


__all__ = [
    "EVENT_CATEGORIES",
    "HISTORY_QUERIES",
    "HistoryAggregator",
    "affected_global_ids",
    "build_result",
    "event_category_for",
    "event_key_for",
    "infer_round",
    "participant_role",
]
