"""Consistency handlers for tournament rosters, registrations and records."""

from .best_times import BestTimeOutcome, BestTimeUpdater, event_type_for, season_for
from .event_refs import (
    EventLabelResolver,
    all_event_references,
    format_event_label,
    normalized_event_references,
    preferred_event_keys,
)
from .history import HistoryAggregator, affected_global_ids, infer_round
from .models import (
    BestTime,
    HistoryResult,
    Registration,
    ScoreRecord,
    Team,
    TeamMember,
    TournamentEvent,
    User,
    UserTournamentHistory,
    utc_now_iso,
)
from .storage import Document, DocumentKey, TournamentStorage, Transaction
from .triggers import Created, Deleted, RecordTriggers, Updated, change_from_stream_record
from .validation import (
    AuthorizationError,
    EventConflictError,
    MembershipError,
    NotFoundError,
    TournamentSyncError,
    TransactionConflictError,
    ValidationError,
)
from .verification import MembershipVerifier, VerificationResult

__all__ = [
    "BestTime",
    "BestTimeOutcome",
    "BestTimeUpdater",
    "event_type_for",
    "season_for",
    "EventLabelResolver",
    "all_event_references",
    "format_event_label",
    "normalized_event_references",
    "preferred_event_keys",
    "HistoryAggregator",
    "affected_global_ids",
    "infer_round",
    "HistoryResult",
    "Registration",
    "ScoreRecord",
    "Team",
    "TeamMember",
    "TournamentEvent",
    "User",
    "UserTournamentHistory",
    "utc_now_iso",
    "Document",
    "DocumentKey",
    "TournamentStorage",
    "Transaction",
    "Created",
    "Deleted",
    "RecordTriggers",
    "Updated",
    "change_from_stream_record",
    "AuthorizationError",
    "EventConflictError",
    "MembershipError",
    "NotFoundError",
    "TournamentSyncError",
    "TransactionConflictError",
    "ValidationError",
    "MembershipVerifier",
    "VerificationResult",
]
