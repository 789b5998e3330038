from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Final

from botocore.exceptions import BotoCoreError, ClientError

from .event_refs import (
    EventLabelResolver,
    normalize_event_keys,
    normalized_event_references,
    preferred_event_keys,
)
from .models import Registration, Team, User, utc_now_iso
from .storage import Document, TournamentStorage, Transaction, where
from .validation import (
    EventConflictError,
    MembershipError,
    NotFoundError,
    VerificationRequest,
)

log: Final = logging.getLogger("tournament-sync")

ALREADY_REGISTERED_MESSAGE = (
    "You are already registered for one or more of these team events."
)


def merge_unique(existing: list[str], additions: list[str]) -> list[str]:
    merged = list(existing)
    for value in additions:
        if value not in merged:
            merged.append(value)
    return merged


@dataclass(slots=True)
class VerificationResult:
    team_id: str
    member_id: str
    already_verified: bool
    registered_events: list[str] = field(default_factory=list)
    event_labels: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "success": True,
            "teamId": self.team_id,
            "memberId": self.member_id,
            "alreadyVerified": self.already_verified,
            "registeredEvents": list(self.registered_events),
            "eventLabels": list(self.event_labels),
        }


@dataclass(slots=True)
class VerificationReads:
    """Everything one verification attempt reads before deciding."""

    team: Team
    user: User
    member_index: int
    sibling_teams: list[Team] = field(default_factory=list)


class MembershipVerifier:
    """Flip one team member to verified without duplicating event participation.

    Each attempt gathers its reads through a :class:`Transaction`, validates
    them, then buffers the three writes (registration, user, team). The
    commit is conditional on every document read, so a concurrent
    verification touching the same athlete forces a clean retry.
    """

    def __init__(
        self,
        storage: TournamentStorage,
        *,
        labels: EventLabelResolver | None = None,
        max_attempts: int = 5,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._storage = storage
        self._labels = labels or EventLabelResolver(storage)
        self._max_attempts = max_attempts
        self._clock = clock

    async def verify(
        self,
        tournament_id: str,
        team_id: str,
        member_id: str,
        registration_id: str,
    ) -> VerificationResult:
        request = VerificationRequest(
            tournament_id=tournament_id,
            team_id=team_id,
            member_id=member_id,
            registration_id=registration_id,
        )

        async def attempt(transaction: Transaction) -> VerificationResult:
            return await self._attempt(transaction, request)

        result = await self._storage.run_transaction(
            attempt, max_attempts=self._max_attempts
        )
        if result.already_verified:
            log.info(
                "Member %s already verified on team %s; nothing to do",
                member_id,
                team_id,
            )
            return result

        log.info(
            "Verified member %s on team %s (tournament %s, events %s)",
            member_id,
            team_id,
            tournament_id,
            result.registered_events,
        )
        try:
            result.event_labels = await self._labels.resolve_labels(
                tournament_id, result.registered_events
            )
        except (BotoCoreError, ClientError) as exc:
            log.warning(
                "Could not resolve event labels for tournament %s: %s",
                tournament_id,
                exc,
            )
        return result

    async def _attempt(
        self, transaction: Transaction, request: VerificationRequest
    ) -> VerificationResult:
        reads = await self._read_team_and_user(transaction, request)
        member = reads.team.members[reads.member_index]
        if member.verified:
            return VerificationResult(
                team_id=request.team_id,
                member_id=request.member_id,
                already_verified=True,
            )

        record_index = reads.user.registration_index(request.tournament_id)
        if record_index is None:
            raise MembershipError("You are not registered for this tournament.")

        team_events = normalized_event_references(reads.team)
        if team_events:
            reads.sibling_teams = await self._read_sibling_teams(
                transaction, request, reads.team
            )
            self._check_sibling_teams(request.member_id, reads.sibling_teams, team_events)
            record = reads.user.registration_records[record_index]
            if normalize_event_keys(record.events) & team_events:
                raise EventConflictError(ALREADY_REGISTERED_MESSAGE)

        keys_to_register = preferred_event_keys(reads.team)

        registration = await self._read_registration(transaction, request)
        if team_events and (
            normalize_event_keys(registration.events_registered) & team_events
        ):
            raise EventConflictError(ALREADY_REGISTERED_MESSAGE)

        self._stage_writes(
            transaction, reads, registration, record_index, keys_to_register
        )
        return VerificationResult(
            team_id=request.team_id,
            member_id=request.member_id,
            already_verified=False,
            registered_events=keys_to_register,
        )

    async def _read_team_and_user(
        self, transaction: Transaction, request: VerificationRequest
    ) -> VerificationReads:
        team_doc = await transaction.get(Team.COLLECTION, request.team_id)
        if team_doc is None:
            raise NotFoundError("Team not found")
        team = Team.from_item(team_doc.id, team_doc.data)
        if team.tournament_id != request.tournament_id:
            raise MembershipError("This team does not belong to the tournament.")

        user_doc = await self._storage.find_one(
            User.COLLECTION, where("global_id", request.member_id)
        )
        if user_doc is None:
            raise NotFoundError("User not found")
        transaction.track(user_doc)
        user = User.from_item(user_doc.id, user_doc.data)

        member_index = team.member_index(request.member_id)
        if member_index is None:
            raise MembershipError("You are not a member of this team.")
        return VerificationReads(team=team, user=user, member_index=member_index)

    async def _read_sibling_teams(
        self, transaction: Transaction, request: VerificationRequest, team: Team
    ) -> list[Team]:
        documents = await transaction.query(
            Team.COLLECTION, where("tournament_id", request.tournament_id)
        )
        siblings: list[Team] = []
        involved: list[Document] = []
        for document in documents:
            if document.id == team.id:
                continue
            sibling = Team.from_item(document.id, document.data)
            if sibling.lists_athlete(request.member_id):
                involved.append(document)
                siblings.append(sibling)
        # A concurrent verification on any of these rosters must void this attempt.
        transaction.track_all(involved)
        return siblings

    def _check_sibling_teams(
        self, member_id: str, siblings: list[Team], team_events: set[str]
    ) -> None:
        for sibling in siblings:
            if not sibling.holds_verified_spot(member_id):
                continue
            if normalized_event_references(sibling) & team_events:
                raise EventConflictError(
                    f'You are already verified in team "{sibling.display_name()}" '
                    "for one or more of these events."
                )

    async def _read_registration(
        self, transaction: Transaction, request: VerificationRequest
    ) -> Registration:
        document = await transaction.get(
            Registration.COLLECTION, request.registration_id
        )
        if document is None:
            raise NotFoundError("Registration not found")
        registration = Registration.from_item(document.id, document.data)
        if (
            registration.tournament_id
            and registration.tournament_id != request.tournament_id
        ):
            raise NotFoundError("Registration not found")
        if (
            registration.user_global_id
            and registration.user_global_id != request.member_id
        ):
            raise NotFoundError("Registration not found")
        return registration

    def _stage_writes(
        self,
        transaction: Transaction,
        reads: VerificationReads,
        registration: Registration,
        record_index: int,
        keys_to_register: list[str],
    ) -> None:
        now = self._clock()

        transaction.update(
            Registration.COLLECTION,
            registration.id,
            {
                "events_registered": merge_unique(
                    registration.events_registered, keys_to_register
                ),
                "updated_at": now,
            },
        )

        record = reads.user.registration_records[record_index]
        record.events = merge_unique(record.events, keys_to_register)
        transaction.update(
            User.COLLECTION,
            reads.user.id,
            {"registration_records": reads.user.registration_records_to_items()},
        )

        reads.team.members[reads.member_index].verified = True
        transaction.update(
            Team.COLLECTION,
            reads.team.id,
            {"members": reads.team.members_to_items()},
        )


__all__ = ["MembershipVerifier", "VerificationResult", "merge_unique"]
