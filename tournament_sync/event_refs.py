"""Resolve the event references a team carries into canonical keys and labels."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from .models import Team, TournamentEvent
from .storage import TournamentStorage, where


def all_event_references(team: Team | None) -> list[str]:
    """Ids followed by names, trimmed and de-duplicated with case preserved."""
    if team is None:
        return []
    references: list[str] = []
    for reference in [*team.event_id_refs, *team.event_name_refs]:
        if reference not in references:
            references.append(reference)
    return references


def normalized_event_references(team: Team | None) -> set[str]:
    return {reference.lower() for reference in all_event_references(team)}


def normalize_event_keys(values: Iterable[str]) -> set[str]:
    return {value.strip().lower() for value in values if value and value.strip()}


def preferred_event_keys(team: Team | None, fallback: Sequence[str] = ()) -> list[str]:
    if team is not None and team.event_id_refs:
        return list(team.event_id_refs)
    if team is not None and team.event_name_refs:
        return list(team.event_name_refs)
    return list(fallback)


def format_event_label(event: TournamentEvent) -> str:
    codes_label = f" ({', '.join(event.codes)})" if event.codes else ""
    gender = event.gender if event.gender in ("Male", "Female") else "Mixed"
    return f"{event.type} - {gender}{codes_label}"


def event_candidates(event: TournamentEvent) -> set[str]:
    candidates = {event.id, event.type, format_event_label(event)}
    for code in event.codes:
        candidates.add(code)
        candidates.add(f"{code}-{event.type}")
    return {candidate.lower() for candidate in candidates if candidate}


class EventLabelResolver:
    def __init__(self, storage: TournamentStorage) -> None:
        self._storage = storage

    async def list_events(self, tournament_id: str) -> list[TournamentEvent]:
        documents = await self._storage.query(
            TournamentEvent.COLLECTION, where("tournament_id", tournament_id)
        )
        return [TournamentEvent.from_item(doc.id, doc.data) for doc in documents]

    async def resolve_labels(
        self, tournament_id: str, references: Iterable[str]
    ) -> list[str]:
        wanted = [ref.strip().lower() for ref in references if ref and ref.strip()]
        if not wanted:
            return []
        events = await self.list_events(tournament_id)
        indexed = [(event_candidates(event), format_event_label(event)) for event in events]
        labels: list[str] = []
        for reference in wanted:
            for candidates, label in indexed:
                if reference in candidates:
                    if label not in labels:
                        labels.append(label)
                    break
        return labels


__all__ = [
    "EventLabelResolver",
    "all_event_references",
    "event_candidates",
    "format_event_label",
    "normalize_event_keys",
    "normalized_event_references",
    "preferred_event_keys",
]
