from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import ClassVar


class TournamentSyncError(Exception):
    """Base exception for failures reported back to a caller."""

    status_code: ClassVar[int] = 500


class ValidationError(TournamentSyncError):
    """Raised when a request payload is missing required fields."""

    status_code = 400


class AuthorizationError(TournamentSyncError):
    """Raised when the bearer credential is missing or rejected."""

    status_code = 401


class NotFoundError(TournamentSyncError):
    status_code = 404


class MembershipError(TournamentSyncError):
    """Raised when the caller cannot act on the team or tournament."""

    status_code = 400


class EventConflictError(TournamentSyncError):
    """Raised when verification would duplicate event participation."""

    status_code = 409


class TransactionConflictError(TournamentSyncError):
    """Raised when an optimistic transaction keeps losing races."""


class ConditionFailedError(TournamentSyncError):
    """Raised when a conditional single-document write is rejected."""


@dataclass(frozen=True, slots=True)
class VerificationRequest:
    tournament_id: str
    team_id: str
    member_id: str
    registration_id: str

    FIELDS: ClassVar[tuple[tuple[str, str], ...]] = (
        ("tournamentId", "tournament_id"),
        ("teamId", "team_id"),
        ("memberId", "member_id"),
        ("registrationId", "registration_id"),
    )


def parse_verification_request(payload: object) -> VerificationRequest:
    if not isinstance(payload, Mapping):
        raise ValidationError("Missing fields")
    values: dict[str, str] = {}
    missing: list[str] = []
    for wire_name, attr_name in VerificationRequest.FIELDS:
        raw = payload.get(wire_name)
        value = raw.strip() if isinstance(raw, str) else ""
        if not value:
            missing.append(wire_name)
            continue
        values[attr_name] = value
    if missing:
        raise ValidationError(f"Missing fields: {', '.join(missing)}")
    return VerificationRequest(**values)


def parse_bearer_token(headers: Mapping[str, str] | None) -> str:
    if not headers:
        raise AuthorizationError("Missing or invalid auth header")
    header = None
    for name, value in headers.items():
        if name.lower() == "authorization":
            header = value
            break
    if not header or not header.startswith("Bearer "):
        raise AuthorizationError("Missing or invalid auth header")
    token = header[len("Bearer ") :].strip()
    if not token:
        raise AuthorizationError("Missing or invalid auth header")
    return token


__all__ = [
    "AuthorizationError",
    "ConditionFailedError",
    "EventConflictError",
    "MembershipError",
    "NotFoundError",
    "TournamentSyncError",
    "TransactionConflictError",
    "ValidationError",
    "VerificationRequest",
    "parse_bearer_token",
    "parse_verification_request",
]
