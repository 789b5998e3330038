from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import ClassVar, Literal

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

RECORD_COLLECTIONS = ("records", "prelim_records", "overall_records")

ResultType = Literal["individual", "team"]
ParticipantRole = Literal["participant", "leader", "member"]


def utc_now_iso() -> str:
    """Return current UTC timestamp in ISO-8601 format (ms precision)."""
    return datetime.now(UTC).strftime(ISO_FORMAT)


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime(ISO_FORMAT)


def parse_timestamp(value: object) -> datetime | None:
    """Decode an ISO string, epoch number or datetime into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, (int, float, Decimal)):
        seconds = float(value)
        if not math.isfinite(seconds):
            return None
        # Values this large can only be epoch milliseconds.
        if abs(seconds) > 1e11:
            seconds /= 1000
        try:
            return datetime.fromtimestamp(seconds, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    return None


def to_number(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _clean_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _add_refs(target: list[str], value: object) -> None:
    if isinstance(value, str):
        values: Iterable[object] = [value]
    elif isinstance(value, (list, tuple)):
        values = value
    else:
        return
    for item in values:
        cleaned = _clean_str(item)
        if cleaned is not None and cleaned not in target:
            target.append(cleaned)


def _string_list(value: object) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if isinstance(item, str)]


@dataclass(slots=True)
class TournamentEvent:
    id: str
    type: str
    gender: str = "Mixed"
    codes: list[str] = field(default_factory=list)

    COLLECTION: ClassVar[str] = "events"

    @classmethod
    def from_item(cls, doc_id: str, item: Mapping[str, object]) -> TournamentEvent:
        gender = item.get("gender")
        codes = [
            code
            for code in _string_list(item.get("codes"))
            if code and code != "Overall"
        ]
        return cls(
            id=str(item.get("id") or doc_id),
            type=str(item.get("type", "")),
            gender=gender if gender in ("Male", "Female") else "Mixed",
            codes=codes,
        )


@dataclass(slots=True)
class TeamMember:
    global_id: str
    verified: bool = False
    extra: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        data = dict(self.extra)
        data["global_id"] = self.global_id
        data["verified"] = self.verified
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TeamMember:
        return cls(
            global_id=str(data.get("global_id", "")),
            verified=data.get("verified") is True,
            extra={
                key: value
                for key, value in data.items()
                if key not in ("global_id", "verified")
            },
        )


@dataclass(slots=True)
class Team:
    """A team roster.

    Event references arrive as ``event_id`` / ``event_ids`` (ids) or
    ``event`` / ``events`` (names), either scalar or list. They are collapsed
    here into two ordered, trimmed lists so nothing downstream has to care
    about the stored shape.
    """

    id: str
    tournament_id: str
    leader_id: str | None
    members: list[TeamMember]
    event_id_refs: list[str] = field(default_factory=list)
    event_name_refs: list[str] = field(default_factory=list)
    name: str | None = None

    COLLECTION: ClassVar[str] = "teams"

    @classmethod
    def from_item(cls, doc_id: str, item: Mapping[str, object]) -> Team:
        members_data = item.get("members", [])
        members = (
            [
                TeamMember.from_dict(entry)
                for entry in members_data
                if isinstance(entry, Mapping)
            ]
            if isinstance(members_data, (list, tuple))
            else []
        )
        id_refs: list[str] = []
        _add_refs(id_refs, item.get("event_id"))
        _add_refs(id_refs, item.get("event_ids"))
        name_refs: list[str] = []
        _add_refs(name_refs, item.get("event"))
        _add_refs(name_refs, item.get("events"))
        return cls(
            id=doc_id,
            tournament_id=str(item.get("tournament_id", "")),
            leader_id=_clean_str(item.get("leader_id")),
            members=members,
            event_id_refs=id_refs,
            event_name_refs=name_refs,
            name=_optional_str(item.get("name")),
        )

    def member_index(self, global_id: str) -> int | None:
        for index, member in enumerate(self.members):
            if member.global_id == global_id:
                return index
        return None

    def lists_athlete(self, global_id: str) -> bool:
        return self.leader_id == global_id or self.member_index(global_id) is not None

    def holds_verified_spot(self, global_id: str) -> bool:
        if self.leader_id == global_id:
            return True
        index = self.member_index(global_id)
        return index is not None and self.members[index].verified

    def display_name(self) -> str:
        return self.name or self.id

    def members_to_items(self) -> list[dict[str, object]]:
        return [member.to_dict() for member in self.members]


@dataclass(slots=True)
class Registration:
    id: str
    tournament_id: str
    user_global_id: str | None
    events_registered: list[str]

    COLLECTION: ClassVar[str] = "registrations"

    @classmethod
    def from_item(cls, doc_id: str, item: Mapping[str, object]) -> Registration:
        return cls(
            id=doc_id,
            tournament_id=str(item.get("tournament_id", "")),
            user_global_id=_clean_str(item.get("user_global_id"))
            or _clean_str(item.get("user_id")),
            events_registered=_string_list(item.get("events_registered")),
        )


@dataclass(slots=True)
class RegistrationRecord:
    tournament_id: str
    events: list[str]
    extra: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        data = dict(self.extra)
        data["tournament_id"] = self.tournament_id
        data["events"] = list(self.events)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RegistrationRecord:
        extra = {
            key: value
            for key, value in data.items()
            if key not in ("tournament_id", "events")
        }
        return cls(
            tournament_id=str(data.get("tournament_id", "")),
            events=_string_list(data.get("events")),
            extra=extra,
        )


@dataclass(slots=True)
class BestTime:
    time: float
    updated_at: str | None = None
    season: str | None = None
    legacy: bool = False

    @classmethod
    def decode(cls, value: object) -> BestTime | None:
        """Read either the legacy raw number or the ``{time, ...}`` map."""
        if isinstance(value, Mapping):
            time = to_number(value.get("time"))
            if time is None:
                return None
            updated_at = value.get("updated_at")
            return cls(
                time=time,
                updated_at=str(updated_at) if updated_at is not None else None,
                season=_optional_str(value.get("season")),
            )
        time = to_number(value)
        if time is None:
            return None
        return cls(time=time, legacy=True)


@dataclass(slots=True)
class User:
    id: str
    global_id: str
    registration_records: list[RegistrationRecord]
    best_times: dict[str, BestTime | None]
    raw_best_times: dict[str, object] = field(default_factory=dict)

    COLLECTION: ClassVar[str] = "users"

    @classmethod
    def from_item(cls, doc_id: str, item: Mapping[str, object]) -> User:
        records_data = item.get("registration_records", [])
        records = (
            [
                RegistrationRecord.from_dict(entry)
                for entry in records_data
                if isinstance(entry, Mapping)
            ]
            if isinstance(records_data, (list, tuple))
            else []
        )
        raw_best = item.get("best_times")
        raw_best_times = dict(raw_best) if isinstance(raw_best, Mapping) else {}
        return cls(
            id=doc_id,
            global_id=str(item.get("global_id", "")),
            registration_records=records,
            best_times={
                str(key): BestTime.decode(value)
                for key, value in raw_best_times.items()
            },
            raw_best_times=raw_best_times,
        )

    def registration_index(self, tournament_id: str) -> int | None:
        for index, record in enumerate(self.registration_records):
            if record.tournament_id == tournament_id:
                return index
        return None

    def registration_records_to_items(self) -> list[dict[str, object]]:
        return [record.to_dict() for record in self.registration_records]


@dataclass(slots=True)
class ScoreRecord:
    """One document from ``records``, ``prelim_records`` or ``overall_records``."""

    collection: str
    id: str
    tournament_id: str | None
    event: str | None
    code: str | None
    participant_global_id: str | None
    leader_id: str | None
    member_global_ids: list[str]
    team_id: str | None
    try1: float | None
    try2: float | None
    try3: float | None
    best_time: float | None
    overall_time: float | None
    status: str | None
    classification: str | None
    round: str | None
    video_url: str | None
    submitted_at: datetime | None
    verified_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None

    @classmethod
    def from_item(
        cls, collection: str, doc_id: str, item: Mapping[str, object]
    ) -> ScoreRecord:
        member_ids: list[str] = []
        _add_refs(member_ids, item.get("member_global_ids"))
        return cls(
            collection=collection,
            id=doc_id,
            tournament_id=_clean_str(item.get("tournament_id")),
            event=_optional_str(item.get("event")),
            code=_clean_str(item.get("code")),
            participant_global_id=_clean_str(item.get("participant_global_id")),
            leader_id=_clean_str(item.get("leader_id")),
            member_global_ids=member_ids,
            team_id=_clean_str(item.get("team_id")),
            try1=to_number(item.get("try1")),
            try2=to_number(item.get("try2")),
            try3=to_number(item.get("try3")),
            best_time=to_number(item.get("best_time")),
            overall_time=to_number(item.get("overall_time")),
            status=_optional_str(item.get("status")),
            classification=_optional_str(item.get("classification")),
            round=_clean_str(item.get("round")),
            video_url=_optional_str(item.get("video_url")),
            submitted_at=parse_timestamp(item.get("submitted_at")),
            verified_at=parse_timestamp(item.get("verified_at")),
            created_at=parse_timestamp(item.get("created_at")),
            updated_at=parse_timestamp(item.get("updated_at")),
        )

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.id}"

    @property
    def is_team(self) -> bool:
        return self.team_id is not None

    @property
    def activity_at(self) -> datetime | None:
        return self.updated_at or self.created_at or self.submitted_at or self.verified_at


@dataclass(slots=True)
class TournamentInfo:
    id: str
    name: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    country: str | None = None
    venue: str | None = None

    COLLECTION: ClassVar[str] = "tournaments"

    @classmethod
    def from_item(cls, doc_id: str, item: Mapping[str, object]) -> TournamentInfo:
        return cls(
            id=doc_id,
            name=_optional_str(item.get("name")),
            start_date=parse_timestamp(item.get("start_date")),
            end_date=parse_timestamp(item.get("end_date")),
            country=_optional_str(item.get("country")),
            venue=_optional_str(item.get("venue")),
        )


def _timestamp_or_none(moment: datetime | None) -> str | None:
    return format_timestamp(moment) if moment is not None else None


@dataclass(slots=True)
class TeamContext:
    leader_id: str | None
    member_ids: list[str]

    def to_dict(self) -> dict[str, object]:
        return {"leaderId": self.leader_id, "memberIds": list(self.member_ids)}


@dataclass(slots=True)
class HistoryResult:
    record_path: str
    event: str | None
    event_key: str | None
    event_category: str
    round: str | None
    best_time: float | None
    try1: float | None
    try2: float | None
    try3: float | None
    status: str | None
    classification: str | None
    result_type: ResultType
    participant_role: ParticipantRole
    team_context: TeamContext | None
    submitted_at: datetime | None
    verified_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None
    video_url: str | None

    @property
    def activity_at(self) -> datetime | None:
        return self.updated_at or self.created_at or self.submitted_at or self.verified_at

    def to_dict(self) -> dict[str, object]:
        return {
            "recordPath": self.record_path,
            "event": self.event,
            "eventKey": self.event_key,
            "eventCategory": self.event_category,
            "round": self.round,
            "bestTime": self.best_time,
            "try1": self.try1,
            "try2": self.try2,
            "try3": self.try3,
            "status": self.status,
            "classification": self.classification,
            "resultType": self.result_type,
            "participantRole": self.participant_role,
            "teamContext": (
                self.team_context.to_dict() if self.team_context is not None else None
            ),
            "submittedAt": _timestamp_or_none(self.submitted_at),
            "verifiedAt": _timestamp_or_none(self.verified_at),
            "createdAt": _timestamp_or_none(self.created_at),
            "updatedAt": _timestamp_or_none(self.updated_at),
            "videoUrl": self.video_url,
        }


@dataclass(slots=True)
class TournamentSummary:
    tournament_id: str
    results: list[HistoryResult]
    name: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    country: str | None = None
    venue: str | None = None
    last_activity_at: datetime | None = None

    def apply_info(self, info: TournamentInfo) -> None:
        self.name = info.name
        self.start_date = info.start_date
        self.end_date = info.end_date
        self.country = info.country
        self.venue = info.venue

    def to_dict(self) -> dict[str, object]:
        return {
            "tournamentId": self.tournament_id,
            "name": self.name,
            "startDate": _timestamp_or_none(self.start_date),
            "endDate": _timestamp_or_none(self.end_date),
            "country": self.country,
            "venue": self.venue,
            "lastActivityAt": _timestamp_or_none(self.last_activity_at),
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(slots=True)
class UserTournamentHistory:
    global_id: str
    user_id: str
    updated_at: str
    tournaments: list[TournamentSummary]

    COLLECTION: ClassVar[str] = "user_tournament_history"

    @property
    def tournament_count(self) -> int:
        return len(self.tournaments)

    @property
    def record_count(self) -> int:
        return sum(len(summary.results) for summary in self.tournaments)

    def to_item(self) -> dict[str, object]:
        return {
            "globalId": self.global_id,
            "userId": self.user_id,
            "updatedAt": self.updated_at,
            "tournamentCount": self.tournament_count,
            "recordCount": self.record_count,
            "tournaments": [summary.to_dict() for summary in self.tournaments],
        }


__all__ = [
    "ISO_FORMAT",
    "RECORD_COLLECTIONS",
    "BestTime",
    "HistoryResult",
    "Registration",
    "RegistrationRecord",
    "ScoreRecord",
    "Team",
    "TeamContext",
    "TeamMember",
    "TournamentEvent",
    "TournamentInfo",
    "TournamentSummary",
    "User",
    "UserTournamentHistory",
    "format_timestamp",
    "parse_timestamp",
    "to_number",
    "utc_now_iso",
]
