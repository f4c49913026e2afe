from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db import session_scope
from app.domain import EventSource, MarketMeta, TradeEvent
from app.errors import LedgerPersistenceError
from app.repositories import LedgerRepository, UpsertStats

from .dedup import dedupe_events
from .normalize import markets_from_raw, normalize_event

# Indexer collection name -> ledger source.
COLLECTION_SOURCES: dict[str, EventSource] = {
    "trades": EventSource.TRADE,
    "bets": EventSource.STAKE,
    "claims": EventSource.CLAIM,
}


@dataclass(slots=True)
class NormalizedBatch:
    events: list[TradeEvent] = field(default_factory=list)
    markets: dict[str, MarketMeta] = field(default_factory=dict)
    rejected: int = 0
    dropped_duplicates: int = 0


def normalize_collections(
    rows_by_collection: Mapping[str, Iterable[dict[str, Any]]],
    *,
    subject: str | None = None,
) -> NormalizedBatch:
    """Normalize raw indexer collections into one de-duplicated batch.

    Rows are ordered newest first (timestamp, then id) before de-duplication,
    matching the order the indexer pages them in.
    """

    batch = NormalizedBatch()
    normalized: list[TradeEvent] = []
    raw_rows: list[dict[str, Any]] = []
    for collection, rows in rows_by_collection.items():
        source = COLLECTION_SOURCES.get(collection)
        if source is None:
            raise ValueError(f"unknown indexer collection {collection!r}")
        for raw in rows:
            raw_rows.append(raw)
            event = normalize_event(raw, source, subject=subject)
            if event is None:
                batch.rejected += 1
                continue
            normalized.append(event)

    normalized.sort(key=lambda event: (-event.timestamp, event.id))
    deduped = dedupe_events(normalized)
    batch.events = deduped.events
    batch.dropped_duplicates = deduped.dropped
    batch.markets = markets_from_raw(raw_rows)
    return batch


def persist_batch(
    events: Iterable[TradeEvent],
    markets: Iterable[MarketMeta] = (),
    *,
    session_factory: Callable[[], Session] | None = None,
) -> UpsertStats:
    """Write one batch atomically: every market and event, or nothing."""

    events = list(events)
    markets = list(markets)
    try:
        with session_scope(session_factory) as session:
            repo = LedgerRepository(session)
            repo.upsert_markets(markets)
            stats = repo.upsert_events(events)
    except SQLAlchemyError as exc:
        logger.error(
            "Ledger batch rolled back ({} events, {} markets): {}", len(events), len(markets), exc
        )
        raise LedgerPersistenceError(f"ledger batch failed: {exc}") from exc

    logger.info(
        "Persisted ledger batch: markets={} inserted={} updated={} replaced={} skipped={}",
        len(markets),
        stats.inserted,
        stats.updated,
        stats.replaced,
        stats.skipped,
    )
    return stats


def ingest_collections(
    rows_by_collection: Mapping[str, Iterable[dict[str, Any]]],
    *,
    subject: str | None = None,
    session_factory: Callable[[], Session] | None = None,
) -> tuple[NormalizedBatch, UpsertStats]:
    batch = normalize_collections(rows_by_collection, subject=subject)
    if batch.rejected or batch.dropped_duplicates:
        logger.info(
            "Normalized batch: kept={} rejected={} duplicates={}",
            len(batch.events),
            batch.rejected,
            batch.dropped_duplicates,
        )
    stats = persist_batch(batch.events, batch.markets.values(), session_factory=session_factory)
    return batch, stats
