"""Weighted-average cost basis replay over a subject's ledger rows."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from decimal import Decimal

from loguru import logger

from app.domain import ZERO, Position, TradeEvent, TradeKind

PositionKey = tuple[str, str, int]


@dataclass(slots=True)
class ReplayResult:
    positions: dict[PositionKey, Position] = field(default_factory=dict)
    # Events in replay order; SELL rows carry the computed cost closed and realized P/L.
    events: list[TradeEvent] = field(default_factory=list)
    unmatched_sells: int = 0

    def open_positions(self) -> list[Position]:
        return [position for position in self.positions.values() if position.open_quantity > 0]

    @property
    def realized_pnl(self) -> Decimal:
        return sum((position.realized_pnl for position in self.positions.values()), ZERO)


def _apply_buy(position: Position, event: TradeEvent) -> None:
    cost = event.net_stake
    quantity = event.shares or ZERO
    position.bought_cost += cost
    position.open_cost_basis += cost
    if quantity <= 0:
        # Without a quantity the fill only moves cost.
        return

    previous_quantity = position.open_quantity
    position.open_quantity = previous_quantity + quantity
    position.bought_quantity += quantity
    fill_price = cost / quantity
    position.avg_entry_price = (
        position.avg_entry_price * previous_quantity + fill_price * quantity
    ) / position.open_quantity


def _apply_sell(position: Position, event: TradeEvent) -> tuple[Decimal, Decimal]:
    proceeds = event.net_out
    quantity = event.shares or ZERO
    position.sale_proceeds += proceeds

    if position.open_quantity <= 0 or quantity <= 0:
        position.unmatched_sells += 1
        logger.warning(
            "Sell {} for {} in market {} has no matched quantity (open={}, sold={}); recording zero cost",
            event.id,
            event.subject,
            event.market_id,
            position.open_quantity,
            quantity,
        )
        return ZERO, ZERO

    close_quantity = min(quantity, position.open_quantity)
    cost_closed = position.open_cost_basis * close_quantity / position.open_quantity
    realized = proceeds - cost_closed

    position.open_quantity -= close_quantity
    position.open_cost_basis -= cost_closed
    position.sold_quantity += close_quantity
    position.cost_closed += cost_closed
    position.realized_pnl += realized
    if position.open_quantity == 0:
        position.open_cost_basis = ZERO
        position.avg_entry_price = ZERO
    return cost_closed, realized


def replay_positions(events: Iterable[TradeEvent]) -> ReplayResult:
    """Replay BUY/SELL rows in ascending ``(timestamp, id)`` order.

    Pure and deterministic: the same rows always produce the same positions.
    CLAIM rows pass through untouched; they settle markets, not positions.
    """

    result = ReplayResult()
    for event in sorted(events, key=lambda item: item.sort_key):
        if event.kind is TradeKind.CLAIM or event.outcome_index is None:
            result.events.append(event)
            continue

        key = (event.subject, event.market_id, event.outcome_index)
        position = result.positions.get(key)
        if position is None:
            position = Position(
                subject=event.subject,
                market_id=event.market_id,
                outcome_index=event.outcome_index,
            )
            result.positions[key] = position

        if event.kind is TradeKind.BUY:
            _apply_buy(position, event)
            result.events.append(event)
            continue

        unmatched_before = position.unmatched_sells
        cost_closed, realized = _apply_sell(position, event)
        if position.unmatched_sells > unmatched_before:
            result.unmatched_sells += 1
        result.events.append(replace(event, cost_basis_closed=cost_closed, realized_pnl=realized))

    return result
