"""Windowed per-subject metrics and per-position trade history.

Both functions are pure: they read a ``LedgerBundle`` and return new objects.
Rows are windowed by the lock time of their market, never by event time.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from decimal import Decimal

from loguru import logger

from app.domain import (
    ZERO,
    IncludePredicate,
    LedgerBundle,
    MarketMeta,
    PositionRow,
    SubjectMetrics,
    TradeEvent,
    TradeKind,
    Window,
)

_ONE = Decimal("1")


def _league_of(event: TradeEvent, market: MarketMeta) -> str | None:
    league = market.league or event.league
    return league.upper() if league else None


def _in_scope(
    event: TradeEvent,
    market: MarketMeta | None,
    leagues: set[str] | None,
    window: Window,
    include: IncludePredicate | None,
) -> bool:
    if market is None:
        return False
    if not window.contains(market.lock_time):
        return False
    if leagues is not None and _league_of(event, market) not in leagues:
        return False
    if include is not None and not include(event.subject, market):
        return False
    return True


def _league_set(leagues: Iterable[str] | None) -> set[str] | None:
    if leagues is None:
        return None
    return {league.upper() for league in leagues}


def compute_roi(returned: Decimal, traded: Decimal) -> Decimal | None:
    """``returned / traded - 1``; ``None`` when nothing was bought."""

    if traded <= 0:
        return None
    return returned / traded - _ONE


def aggregate_subjects(
    subjects: Iterable[str],
    leagues: Iterable[str] | None,
    window: Window,
    bundle: LedgerBundle,
    include: IncludePredicate | None = None,
) -> dict[str, SubjectMetrics]:
    """Metrics for every requested subject, including those with no rows in scope."""

    metrics = {subject.lower(): SubjectMetrics(subject=subject.lower()) for subject in subjects}
    league_filter = _league_set(leagues)
    touched: dict[str, set[str]] = defaultdict(set)
    missing_markets: set[str] = set()

    for event in bundle.events:
        entry = metrics.get(event.subject)
        if entry is None:
            continue
        market = bundle.market_for(event)
        if market is None:
            missing_markets.add(event.market_id)
            continue
        if not _in_scope(event, market, league_filter, window, include):
            continue

        touched[event.subject].add(event.market_id)
        if event.kind is TradeKind.BUY:
            entry.traded += event.gross_in
            entry.trade_count += 1
            league = _league_of(event, market)
            if league:
                volumes = entry.league_volume
                volumes[league] = volumes.get(league, ZERO) + event.gross_in
        elif event.kind is TradeKind.SELL:
            entry.returned += event.net_out
            entry.trade_count += 1
            entry.sells_net += event.net_out
            entry.sells_cost += event.cost_basis_closed
            entry.sells_pnl += event.realized_pnl
        else:
            entry.returned += event.net_out
            entry.claims += event.net_out

    if missing_markets:
        logger.warning("Skipped rows for {} markets without metadata", len(missing_markets))

    for subject, entry in metrics.items():
        entry.markets_touched = len(touched.get(subject, ()))
        entry.roi = compute_roi(entry.returned, entry.traded)
        entry.sells_roi = entry.sells_pnl / entry.sells_cost if entry.sells_cost > 0 else None
        entry.favorite_league = favorite_league(entry.league_volume)
    return metrics


def favorite_league(volumes: dict[str, Decimal]) -> str | None:
    """League with the largest buy volume; the first seen wins ties."""

    best: str | None = None
    best_volume = ZERO
    for league, volume in volumes.items():
        if volume > best_volume:
            best, best_volume = league, volume
    return best


def sum_metrics(subject: str, parts: Iterable[SubjectMetrics]) -> SubjectMetrics:
    """Combine per-member metrics into one total (for groups)."""

    total = SubjectMetrics(subject=subject)
    for part in parts:
        total.traded += part.traded
        total.returned += part.returned
        total.claims += part.claims
        total.trade_count += part.trade_count
        total.markets_touched += part.markets_touched
        total.sells_net += part.sells_net
        total.sells_cost += part.sells_cost
        total.sells_pnl += part.sells_pnl
        for league, volume in part.league_volume.items():
            total.league_volume[league] = total.league_volume.get(league, ZERO) + volume
    total.roi = compute_roi(total.returned, total.traded)
    total.sells_roi = total.sells_pnl / total.sells_cost if total.sells_cost > 0 else None
    total.favorite_league = favorite_league(total.league_volume)
    return total


def rank_by_roi(rows: Sequence[SubjectMetrics]) -> list[SubjectMetrics]:
    """ROI descending, subjects without ROI last, then traded volume and subject."""

    return sorted(
        rows,
        key=lambda row: (
            row.roi is None,
            -(row.roi or ZERO),
            -row.traded,
            row.subject,
        ),
    )


def _claim_allocation(
    market: MarketMeta,
    outcome_index: int,
    buy_gross: Decimal,
    market_buy_gross: Decimal,
    claim_total: Decimal,
) -> Decimal:
    if claim_total <= 0 or not market.is_final:
        return ZERO
    if market.is_tie:
        if market_buy_gross <= 0:
            return ZERO
        return claim_total * buy_gross / market_buy_gross
    if market.winning_outcome_index is None:
        return ZERO
    return claim_total if outcome_index == market.winning_outcome_index else ZERO


def _action(row: PositionRow, market: MarketMeta) -> str:
    if row.sell_amount > 0:
        return "Sold"
    if market.is_final and market.is_tie:
        return "Tie"
    if market.is_final and row.outcome_index is not None and market.winning_outcome_index is not None:
        return "Won" if row.outcome_index == market.winning_outcome_index else "Lost"
    if row.claim_amount > 0:
        return "Won"
    return "Pending"


def position_rows(
    subject: str,
    bundle: LedgerBundle,
    *,
    leagues: Iterable[str] | None = None,
    window: Window | None = None,
) -> list[PositionRow]:
    """One row per (market, outcome) a subject traded, newest activity first.

    Market-level claims go to the winning outcome's row; a resolved tie in a
    binary market is split pro-rata by buy volume. A claim in a market with no
    position rows gets its own row with no outcome.
    """

    subject = subject.lower()
    window = window or Window()
    league_filter = _league_set(leagues)

    rows: dict[tuple[str, int], PositionRow] = {}
    weighted_price: dict[tuple[str, int], Decimal] = defaultdict(lambda: ZERO)
    priced_gross: dict[tuple[str, int], Decimal] = defaultdict(lambda: ZERO)
    claims: dict[str, Decimal] = defaultdict(lambda: ZERO)
    claim_times: dict[str, int] = {}
    market_buy_gross: dict[str, Decimal] = defaultdict(lambda: ZERO)

    for event in bundle.events:
        if event.subject != subject:
            continue
        market = bundle.market_for(event)
        if not _in_scope(event, market, league_filter, window, None):
            continue

        if event.kind is TradeKind.CLAIM or event.outcome_index is None:
            claims[event.market_id] += event.net_out
            claim_times[event.market_id] = max(claim_times.get(event.market_id, 0), event.timestamp)
            continue

        key = (event.market_id, event.outcome_index)
        row = rows.get(key)
        if row is None:
            row = PositionRow(
                subject=subject,
                market_id=event.market_id,
                league=_league_of(event, market),
                lock_time=market.lock_time,
                outcome_index=event.outcome_index,
                outcome_code=event.outcome_code,
                is_final=market.is_final,
            )
            rows[key] = row
        row.last_timestamp = max(row.last_timestamp or 0, event.timestamp)

        if event.kind is TradeKind.BUY:
            row.buy_gross += event.gross_in
            market_buy_gross[event.market_id] += event.gross_in
            if event.avg_price_bps is not None and event.gross_in > 0:
                weighted_price[key] += Decimal(event.avg_price_bps) * event.gross_in
                priced_gross[key] += event.gross_in
        else:
            row.sell_amount += event.net_out

    markets_with_rows = {market_id for market_id, _ in rows}
    for (market_id, outcome_index), row in rows.items():
        market = bundle.markets[market_id]
        if priced_gross[(market_id, outcome_index)] > 0:
            row.all_in_price_bps = (
                weighted_price[(market_id, outcome_index)] / priced_gross[(market_id, outcome_index)]
            )
        row.claim_amount = _claim_allocation(
            market, outcome_index, row.buy_gross, market_buy_gross[market_id], claims.get(market_id, ZERO)
        )
        if row.claim_amount > 0 and market_id in claim_times:
            row.last_timestamp = max(row.last_timestamp or 0, claim_times[market_id])

    for market_id, amount in claims.items():
        if market_id in markets_with_rows or amount <= 0:
            continue
        market = bundle.markets[market_id]
        rows[(market_id, -1)] = PositionRow(
            subject=subject,
            market_id=market_id,
            league=market.league,
            lock_time=market.lock_time,
            outcome_index=None,
            outcome_code=None,
            claim_amount=amount,
            is_final=market.is_final,
            last_timestamp=claim_times.get(market_id),
        )

    for row in rows.values():
        market = bundle.markets[row.market_id]
        row.returned = max(ZERO, row.sell_amount + row.claim_amount)
        row.roi = (row.returned - row.buy_gross) / row.buy_gross if row.buy_gross > 0 else None
        row.action = _action(row, market)

    return sorted(
        rows.values(),
        key=lambda row: (-(row.last_timestamp or 0), row.market_id, row.outcome_index if row.outcome_index is not None else -1),
    )
