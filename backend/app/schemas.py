from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


class CacheMeta(BaseModel):
    stale: bool
    age_seconds: int | None = None
    last_ok_at: str | None = None
    last_error_at: str | None = None
    last_error: str | None = None
    source_version: Any = None


class MetricsRow(BaseModel):
    subject: str
    traded: Decimal
    returned: Decimal
    claims: Decimal
    pnl: Decimal
    roi: Decimal | None = None
    trade_count: int
    markets_touched: int
    favorite_league: str | None = None
    sells_net: Decimal
    sells_cost: Decimal
    sells_pnl: Decimal
    sells_roi: Decimal | None = None


class LeaderboardRow(MetricsRow):
    rank: int


class GroupRow(BaseModel):
    rank: int
    group_id: str
    slug: str
    name: str
    member_count: int
    active_members: int
    traded: Decimal
    returned: Decimal
    claims: Decimal
    pnl: Decimal
    roi: Decimal | None = None
    trade_count: int
    markets_touched: int
    favorite_league: str | None = None
    sells_net: Decimal
    sells_cost: Decimal
    sells_pnl: Decimal
    sells_roi: Decimal | None = None


class GroupMemberRow(LeaderboardRow):
    joined_at: int
    left_at: int | None = None
    active: bool


class TradeRow(BaseModel):
    id: str
    kind: str
    source: str
    outcome_index: int | None = None
    outcome_code: str | None = None
    timestamp: int
    market_id: str
    league: str | None = None
    tx_hash: str | None = None
    gross_in: Decimal
    gross_out: Decimal
    fee: Decimal
    net_stake: Decimal
    net_out: Decimal
    cost_basis_closed: Decimal
    realized_pnl: Decimal
    shares: Decimal | None = None
    spot_price_bps: int | None = None
    avg_price_bps: int | None = None
    lock_time: int | None = None
    is_final: bool | None = None


class OpenPosition(BaseModel):
    market_id: str
    outcome_index: int
    open_quantity: Decimal
    open_cost_basis: Decimal
    avg_entry_price: Decimal
    realized_pnl: Decimal
    unmatched_sells: int = 0


class PositionHistoryRow(BaseModel):
    market_id: str
    league: str | None = None
    lock_time: int | None = None
    outcome_index: int | None = None
    outcome_code: str | None = None
    buy_gross: Decimal
    all_in_price_bps: Decimal | None = None
    sell_amount: Decimal
    claim_amount: Decimal
    returned: Decimal
    roi: Decimal | None = None
    action: str
    is_final: bool
    last_timestamp: int | None = None


class CachedResponse(BaseModel):
    ok: bool = True
    meta: dict[str, Any] = Field(default_factory=dict)
    cache: CacheMeta


class LeaderboardResponse(CachedResponse):
    rows: list[LeaderboardRow]


class GroupLeaderboardResponse(CachedResponse):
    rows: list[GroupRow]


class GroupMembersResponse(CachedResponse):
    rows: list[GroupMemberRow]


class UserTradesResponse(CachedResponse):
    rows: list[TradeRow]


class PortfolioResponse(CachedResponse):
    subject: str
    stats: MetricsRow
    realized_pnl: Decimal
    unmatched_sells: int
    open_positions: list[OpenPosition]
    history: list[PositionHistoryRow]
