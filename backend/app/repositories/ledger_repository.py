"""Ledger persistence: idempotent upserts and windowed reads."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Any, TypeVar

from loguru import logger
from sqlalchemy import Numeric, case, cast, func, select
from sqlalchemy.orm import Session

from app.domain import (
    ZERO,
    EventSource,
    LedgerBundle,
    MarketMeta,
    TradeEvent,
    TradeKind,
    Window,
)
from app.models import MarketRecord, TradeEventRecord
from ingestion.dedup import canonical_id, dedup_rank, outranks
from ingestion.normalize import merge_market_meta

T = TypeVar("T")

_MONEY_FIELDS = (
    "gross_in",
    "gross_out",
    "fee",
    "net_stake",
    "net_out",
    "cost_basis_closed",
    "realized_pnl",
)
# Optional columns: an incoming None never clears what is stored.
_OPTIONAL_FIELDS = (
    "outcome_code",
    "tx_hash",
    "spot_price_bps",
    "avg_price_bps",
    "league",
)
_MARKET_FIELDS = tuple(item.name for item in fields(MarketMeta) if item.name != "market_id")
_IN_CLAUSE_CHUNK = 500


def _chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for index in range(0, len(items), size):
        yield items[index : index + size]


def _decimal(value: str | None) -> Decimal:
    return Decimal(value) if value not in (None, "") else ZERO


def record_to_event(record: TradeEventRecord) -> TradeEvent:
    return TradeEvent(
        id=record.id,
        subject=record.subject,
        kind=TradeKind(record.kind),
        outcome_index=record.outcome_index,
        outcome_code=record.outcome_code,
        timestamp=int(record.timestamp),
        market_id=record.market_id,
        league=record.league,
        source=EventSource(record.source),
        tx_hash=record.tx_hash,
        shares=Decimal(record.shares) if record.shares not in (None, "") else None,
        spot_price_bps=record.spot_price_bps,
        avg_price_bps=record.avg_price_bps,
        **{name: _decimal(getattr(record, name)) for name in _MONEY_FIELDS},
    )


def record_to_market(record: MarketRecord) -> MarketMeta:
    return MarketMeta(
        market_id=record.market_id,
        **{name: getattr(record, name) for name in _MARKET_FIELDS},
    )


@dataclass(slots=True)
class UpsertStats:
    inserted: int = 0
    updated: int = 0
    replaced: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "replaced": self.replaced,
            "skipped": self.skipped,
        }


@dataclass(slots=True)
class WindowTotals:
    """SQL-side per-subject totals used to rank candidates before exact aggregation."""

    subject: str
    buy_gross: Decimal = ZERO
    returned: Decimal = ZERO
    buys: int = 0
    sells: int = 0
    claims: int = 0
    markets: int = 0


class LedgerRepository:
    """Encapsulate trade event and market persistence."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def upsert_market(self, market: MarketMeta) -> MarketRecord:
        existing = self._session.get(MarketRecord, market.market_id)
        if existing is None:
            record = MarketRecord(market_id=market.market_id)
            for name in _MARKET_FIELDS:
                setattr(record, name, getattr(market, name))
            record.is_final = bool(market.is_final)
            self._session.add(record)
            return record

        merged = merge_market_meta(record_to_market(existing), market)
        for name in _MARKET_FIELDS:
            value = getattr(merged, name)
            if getattr(existing, name) != value:
                setattr(existing, name, value)
        return existing

    def upsert_markets(self, markets: Iterable[MarketMeta]) -> int:
        count = 0
        for market in markets:
            self.upsert_market(market)
            count += 1
        return count

    def _ensure_market(self, event: TradeEvent) -> None:
        if self._session.get(MarketRecord, event.market_id) is None:
            self.upsert_market(MarketMeta(market_id=event.market_id, league=event.league))

    def upsert_event(self, event: TradeEvent, stats: UpsertStats | None = None) -> TradeEventRecord | None:
        """Insert or update one row by id, resolving cross-batch duplicates.

        Returns the stored record, or ``None`` when an already stored duplicate
        outranks the incoming row.
        """

        stats = stats if stats is not None else UpsertStats()
        key = canonical_id(event.id)
        existing = self._session.get(TradeEventRecord, event.id)

        if existing is None:
            incoming = (dedup_rank(event.source, event.tx_hash), event.id)
            duplicates = (
                self._session.execute(
                    select(TradeEventRecord).where(
                        TradeEventRecord.dedup_key == key,
                        TradeEventRecord.id != event.id,
                    )
                )
                .scalars()
                .all()
            )
            for duplicate in duplicates:
                stored = (dedup_rank(duplicate.source, duplicate.tx_hash), duplicate.id)
                if not outranks(incoming, stored):
                    stats.skipped += 1
                    return None
            for duplicate in duplicates:
                logger.debug("Replacing {} with higher priority row {}", duplicate.id, event.id)
                self._session.delete(duplicate)
                stats.replaced += 1

            self._ensure_market(event)
            existing = TradeEventRecord(id=event.id)
            is_new = True
            stats.inserted += 1
        else:
            is_new = False
            stats.updated += 1

        existing.dedup_key = key
        existing.source = event.source.value
        existing.subject = event.subject
        existing.kind = event.kind.value
        existing.outcome_index = event.outcome_index
        existing.timestamp = event.timestamp
        existing.market_id = event.market_id
        for name in _MONEY_FIELDS:
            new_value = str(getattr(event, name))
            if getattr(existing, name) != new_value:
                setattr(existing, name, new_value)
        for name in _OPTIONAL_FIELDS:
            value = getattr(event, name)
            if value is not None:
                setattr(existing, name, value)
        if event.shares is not None:
            existing.shares = str(event.shares)

        if is_new:
            self._session.add(existing)
        return existing

    def upsert_events(self, events: Iterable[TradeEvent]) -> UpsertStats:
        stats = UpsertStats()
        for event in events:
            self.upsert_event(event, stats)
        return stats

    # ------------------------------------------------------------------
    # Queries

    def get_market(self, market_id: str) -> MarketMeta | None:
        record = self._session.get(MarketRecord, market_id)
        return record_to_market(record) if record else None

    def load_markets(self, market_ids: Iterable[str]) -> dict[str, MarketMeta]:
        ids = sorted(set(market_ids))
        markets: dict[str, MarketMeta] = {}
        for chunk in _chunked(ids, _IN_CLAUSE_CHUNK):
            rows = self._session.execute(
                select(MarketRecord).where(MarketRecord.market_id.in_(chunk))
            ).scalars()
            for record in rows:
                markets[record.market_id] = record_to_market(record)
        return markets

    def _windowed_filters(
        self,
        leagues: Sequence[str] | None,
        window: Window | None,
        by: str,
    ) -> list[Any]:
        filters: list[Any] = []
        if leagues:
            filters.append(MarketRecord.league.in_([league.upper() for league in leagues]))
        if window is not None:
            column = MarketRecord.lock_time if by == "lock_time" else TradeEventRecord.timestamp
            if window.start is not None:
                filters.append(column >= window.start)
            if window.end is not None:
                filters.append(column < window.end)
        return filters

    def load_bundle(
        self,
        subjects: Sequence[str],
        *,
        leagues: Sequence[str] | None = None,
        window: Window | None = None,
        by: str = "lock_time",
    ) -> LedgerBundle:
        """Load subjects' events and their markets, windowed by market lock time or event time."""

        if by not in {"lock_time", "timestamp"}:
            raise ValueError(f"unsupported window column {by!r}")

        normalized = sorted({subject.lower() for subject in subjects})
        bundle = LedgerBundle(source_version=self.latest_timestamp())
        filters = self._windowed_filters(leagues, window, by)
        for chunk in _chunked(normalized, _IN_CLAUSE_CHUNK):
            query = (
                select(TradeEventRecord, MarketRecord)
                .join(MarketRecord, TradeEventRecord.market_id == MarketRecord.market_id)
                .where(TradeEventRecord.subject.in_(chunk), *filters)
                .order_by(TradeEventRecord.timestamp, TradeEventRecord.id)
            )
            for event_record, market_record in self._session.execute(query):
                bundle.events.append(record_to_event(event_record))
                if market_record.market_id not in bundle.markets:
                    bundle.markets[market_record.market_id] = record_to_market(market_record)
        bundle.events.sort(key=lambda event: event.sort_key)
        return bundle

    def list_subject_events(
        self,
        subject: str,
        *,
        leagues: Sequence[str] | None = None,
        window: Window | None = None,
        by: str = "timestamp",
        limit: int | None = None,
        offset: int = 0,
    ) -> list[TradeEvent]:
        """A subject's rows, newest first."""

        query = (
            select(TradeEventRecord)
            .join(MarketRecord, TradeEventRecord.market_id == MarketRecord.market_id)
            .where(TradeEventRecord.subject == subject.lower(), *self._windowed_filters(leagues, window, by))
            .order_by(TradeEventRecord.timestamp.desc(), TradeEventRecord.id.desc())
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        return [record_to_event(record) for record in self._session.execute(query).scalars()]

    def distinct_subjects(
        self,
        *,
        leagues: Sequence[str] | None = None,
        window: Window | None = None,
    ) -> list[str]:
        query = (
            select(TradeEventRecord.subject)
            .join(MarketRecord, TradeEventRecord.market_id == MarketRecord.market_id)
            .where(*self._windowed_filters(leagues, window, "lock_time"))
            .distinct()
            .order_by(TradeEventRecord.subject)
        )
        return list(self._session.execute(query).scalars())

    def aggregate_window(
        self,
        *,
        leagues: Sequence[str] | None = None,
        window: Window | None = None,
        subjects: Sequence[str] | None = None,
    ) -> dict[str, WindowTotals]:
        """Per-subject sums and counts computed in SQL.

        The database sums through NUMERIC casts, which SQLite approximates; use
        these figures to rank and select subjects, not as reported metrics.
        """

        amount = cast(TradeEventRecord.gross_in, Numeric(38, 18))
        proceeds = cast(TradeEventRecord.net_out, Numeric(38, 18))
        is_buy = TradeEventRecord.kind == TradeKind.BUY.value
        is_sell = TradeEventRecord.kind == TradeKind.SELL.value
        is_claim = TradeEventRecord.kind == TradeKind.CLAIM.value

        query = (
            select(
                TradeEventRecord.subject,
                func.sum(case((is_buy, amount), else_=0)),
                func.sum(case((is_sell | is_claim, proceeds), else_=0)),
                func.sum(case((is_buy, 1), else_=0)),
                func.sum(case((is_sell, 1), else_=0)),
                func.sum(case((is_claim, 1), else_=0)),
                func.count(func.distinct(TradeEventRecord.market_id)),
            )
            .join(MarketRecord, TradeEventRecord.market_id == MarketRecord.market_id)
            .where(*self._windowed_filters(leagues, window, "lock_time"))
            .group_by(TradeEventRecord.subject)
        )
        if subjects:
            query = query.where(TradeEventRecord.subject.in_([s.lower() for s in subjects]))

        totals: dict[str, WindowTotals] = {}
        for subject, buy_gross, returned, buys, sells, claims, markets in self._session.execute(query):
            totals[subject] = WindowTotals(
                subject=subject,
                buy_gross=Decimal(str(buy_gross or 0)),
                returned=Decimal(str(returned or 0)),
                buys=int(buys or 0),
                sells=int(sells or 0),
                claims=int(claims or 0),
                markets=int(markets or 0),
            )
        return totals

    def latest_timestamp(self) -> int | None:
        """Newest event timestamp stored; used as the source version of store-backed views."""

        value = self._session.execute(select(func.max(TradeEventRecord.timestamp))).scalar_one_or_none()
        return int(value) if value is not None else None
