from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Final

from .validation import (
    AuthorizationError,
    TournamentSyncError,
    parse_bearer_token,
    parse_verification_request,
)
from .verification import MembershipVerifier

log: Final = logging.getLogger("tournament-sync")

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred during verification."

# Resolves a bearer token to a principal id; raises or returns None to reject.
Authorizer = Callable[[str], Awaitable[str | None]]

Response = tuple[int, dict[str, object]]


class VerificationHandler:
    def __init__(self, verifier: MembershipVerifier, authorizer: Authorizer) -> None:
        self._verifier = verifier
        self._authorizer = authorizer

    async def authenticate(self, headers: Mapping[str, str] | None) -> str:
        token = parse_bearer_token(headers)
        try:
            principal = await self._authorizer(token)
        except AuthorizationError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Token verification failed: %s", exc)
            raise AuthorizationError("Invalid token") from exc
        if not principal:
            raise AuthorizationError("Invalid token")
        return principal

    async def handle(self, headers: Mapping[str, str] | None, body: object) -> Response:
        try:
            principal = await self.authenticate(headers)
        except AuthorizationError as exc:
            return exc.status_code, {"error": str(exc)}

        try:
            request = parse_verification_request(body)
            result = await self._verifier.verify(
                request.tournament_id,
                request.team_id,
                request.member_id,
                request.registration_id,
            )
        except TournamentSyncError as exc:
            if exc.status_code >= 500:
                log.error("Verification failed for principal %s: %s", principal, exc)
                return exc.status_code, {"error": UNEXPECTED_ERROR_MESSAGE}
            log.info(
                "Verification rejected for principal %s (%s): %s",
                principal,
                exc.status_code,
                exc,
            )
            return exc.status_code, {"error": str(exc)}
        except Exception:  # pylint: disable=broad-except
            log.exception(
                "Error updating verification for principal %s, payload %r",
                principal,
                body,
            )
            return 500, {"error": UNEXPECTED_ERROR_MESSAGE}
        return 200, result.to_dict()


__all__ = ["Authorizer", "Response", "VerificationHandler", "UNEXPECTED_ERROR_MESSAGE"]
