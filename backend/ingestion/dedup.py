"""Canonical-id de-duplication of ledger rows reported by more than one source."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from app.domain import EventSource, TradeEvent

# Applied in order, each at most once: doubled prefixes first, then single ones.
_ID_PREFIXES = (
    "trade-trade-",
    "bet-bet-",
    "claim-claim-",
    "trade-",
    "bet-",
    "claim-",
)


def canonical_id(event_id: str) -> str:
    """Strip the source namespace from an event id to get its dedup key."""

    value = str(event_id or "").strip()
    for prefix in _ID_PREFIXES:
        if value.startswith(prefix):
            value = value[len(prefix) :]
    return value


def dedup_rank(source: EventSource | str, tx_hash: str | None) -> tuple[int, int]:
    """Sortable priority: trade > claim > stake, then rows carrying a tx hash."""

    return (EventSource(source).priority, 1 if tx_hash else 0)


def event_rank(event: TradeEvent) -> tuple[int, int]:
    return dedup_rank(event.source, event.tx_hash)


def outranks(
    challenger: tuple[tuple[int, int], str],
    incumbent: tuple[tuple[int, int], str],
) -> bool:
    """Compare ``(rank, id)`` pairs; on equal rank the smaller id wins.

    The id tie-break makes the surviving row independent of arrival order.
    """

    challenger_rank, challenger_id = challenger
    incumbent_rank, incumbent_id = incumbent
    if challenger_rank != incumbent_rank:
        return challenger_rank > incumbent_rank
    return challenger_id < incumbent_id


@dataclass(slots=True)
class DedupResult:
    events: list[TradeEvent] = field(default_factory=list)
    dropped: int = 0


def dedupe_events(events: Iterable[TradeEvent]) -> DedupResult:
    """Keep one row per canonical id.

    The highest-ranked row wins and keeps its original id. Output preserves the
    order in which each canonical id was first seen, so callers that sorted
    their input keep that order.
    """

    winners: dict[str, TradeEvent] = {}
    total = 0
    for event in events:
        total += 1
        key = canonical_id(event.id)
        current = winners.get(key)
        if current is None or outranks(
            (event_rank(event), event.id), (event_rank(current), current.id)
        ):
            winners[key] = event
    return DedupResult(events=list(winners.values()), dropped=total - len(winners))
