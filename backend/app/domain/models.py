"""Typed domain representations used across ingestion, accounting, and APIs."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable

ZERO = Decimal("0")

CLAIM_MARKER = "C"
TIE_CODE = "TIE"
DRAW_INDEX = 2


class TradeKind(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    CLAIM = "CLAIM"


class EventSource(str, Enum):
    """Where a ledger row came from; also its dedup priority (higher wins)."""

    STAKE = "stake"
    CLAIM = "claim"
    TRADE = "trade"

    @property
    def priority(self) -> int:
        return _SOURCE_PRIORITY[self]

    @property
    def id_prefix(self) -> str:
        return "bet-" if self is EventSource.STAKE else f"{self.value}-"


_SOURCE_PRIORITY = {
    EventSource.TRADE: 3,
    EventSource.CLAIM: 2,
    EventSource.STAKE: 1,
}


@dataclass(frozen=True, slots=True)
class TradeEvent:
    """Immutable ledger fact. All money fields are exact decimals."""

    id: str
    subject: str
    kind: TradeKind
    outcome_index: int | None
    outcome_code: str | None
    timestamp: int
    market_id: str
    league: str | None
    source: EventSource
    tx_hash: str | None = None
    gross_in: Decimal = ZERO
    gross_out: Decimal = ZERO
    fee: Decimal = ZERO
    net_stake: Decimal = ZERO
    net_out: Decimal = ZERO
    cost_basis_closed: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    shares: Decimal | None = None
    spot_price_bps: int | None = None
    avg_price_bps: int | None = None

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.timestamp, self.id)


@dataclass(slots=True)
class MarketMeta:
    """Market (game) metadata; resolution data fills in over time."""

    market_id: str
    league: str | None = None
    lock_time: int | None = None
    is_final: bool = False
    outcome_count: int | None = None
    winning_outcome_index: int | None = None
    winner_code: str | None = None
    team_a_code: str | None = None
    team_b_code: str | None = None
    team_a_name: str | None = None
    team_b_name: str | None = None
    question: str | None = None

    @property
    def is_tie(self) -> bool:
        """Legacy binary markets encode a tie as the reserved third index."""

        if not self.is_final or (self.outcome_count or 2) > 2:
            return False
        return (
            self.winner_code == TIE_CODE
            or self.winning_outcome_index is None
            or self.winning_outcome_index == DRAW_INDEX
        )


@dataclass(slots=True)
class Position:
    """Open state of one (subject, market, outcome) after replaying its events."""

    subject: str
    market_id: str
    outcome_index: int
    open_quantity: Decimal = ZERO
    open_cost_basis: Decimal = ZERO
    avg_entry_price: Decimal = ZERO
    bought_quantity: Decimal = ZERO
    bought_cost: Decimal = ZERO
    sold_quantity: Decimal = ZERO
    sale_proceeds: Decimal = ZERO
    cost_closed: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    unmatched_sells: int = 0

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.subject, self.market_id, self.outcome_index)


@dataclass(frozen=True, slots=True)
class MembershipInterval:
    """Half-open membership period ``[joined_at, left_at)``; open ended when left_at is None."""

    group_id: str
    subject: str
    joined_at: int
    left_at: int | None = None

    def covers(self, instant: int) -> bool:
        if instant < self.joined_at:
            return False
        return self.left_at is None or instant < self.left_at

    def overlaps(self, other: "MembershipInterval") -> bool:
        self_end = self.left_at if self.left_at is not None else float("inf")
        other_end = other.left_at if other.left_at is not None else float("inf")
        return self.joined_at < other_end and other.joined_at < self_end


@dataclass(frozen=True, slots=True)
class Window:
    """Half-open time range ``[start, end)`` in epoch seconds; ``None`` bounds are open."""

    start: int | None = None
    end: int | None = None

    def contains(self, instant: int | None) -> bool:
        if instant is None:
            return False
        if self.start is not None and instant < self.start:
            return False
        if self.end is not None and instant >= self.end:
            return False
        return True


IncludePredicate = Callable[[str, MarketMeta], bool]


@dataclass(slots=True)
class SubjectMetrics:
    subject: str
    traded: Decimal = ZERO
    returned: Decimal = ZERO
    claims: Decimal = ZERO
    roi: Decimal | None = None
    trade_count: int = 0
    markets_touched: int = 0
    favorite_league: str | None = None
    sells_net: Decimal = ZERO
    sells_cost: Decimal = ZERO
    sells_pnl: Decimal = ZERO
    sells_roi: Decimal | None = None
    # Buy gross per league, in first-seen order.
    league_volume: dict[str, Decimal] = field(default_factory=dict)

    @property
    def pnl(self) -> Decimal:
        return self.returned - self.traded


@dataclass(slots=True)
class PositionRow:
    """One row of a subject's trade history: a (market, outcome) with its outcome."""

    subject: str
    market_id: str
    league: str | None
    lock_time: int | None
    outcome_index: int | None
    outcome_code: str | None
    buy_gross: Decimal = ZERO
    all_in_price_bps: Decimal | None = None
    sell_amount: Decimal = ZERO
    claim_amount: Decimal = ZERO
    returned: Decimal = ZERO
    roi: Decimal | None = None
    action: str = "Pending"
    is_final: bool = False
    last_timestamp: int | None = None


@dataclass(slots=True)
class LedgerBundle:
    """Events and market metadata loaded together for one aggregation pass."""

    events: list[TradeEvent] = field(default_factory=list)
    markets: dict[str, MarketMeta] = field(default_factory=dict)
    source_version: Any = None

    def market_for(self, event: TradeEvent) -> MarketMeta | None:
        return self.markets.get(event.market_id)
