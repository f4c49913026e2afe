"""Domain models shared by ingestion, accounting and the API."""

from .models import (
    CLAIM_MARKER,
    DRAW_INDEX,
    TIE_CODE,
    ZERO,
    EventSource,
    IncludePredicate,
    LedgerBundle,
    MarketMeta,
    MembershipInterval,
    Position,
    PositionRow,
    SubjectMetrics,
    TradeEvent,
    TradeKind,
    Window,
)

__all__ = [
    "CLAIM_MARKER",
    "DRAW_INDEX",
    "TIE_CODE",
    "ZERO",
    "EventSource",
    "IncludePredicate",
    "LedgerBundle",
    "MarketMeta",
    "MembershipInterval",
    "Position",
    "PositionRow",
    "SubjectMetrics",
    "TradeEvent",
    "TradeKind",
    "Window",
]
