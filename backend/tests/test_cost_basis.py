from __future__ import annotations

from decimal import Decimal

from app.domain import EventSource, TradeKind
from app.services.cost_basis import replay_positions

SUBJECT = "0x" + "a" * 40


def test_weighted_average_cost_basis(make_event):
    events = [
        make_event("trade-3", kind=TradeKind.SELL, timestamp=30, net_out=70, shares=5),
        make_event("trade-1", timestamp=10, net_stake=100, shares=10),
        make_event("trade-2", timestamp=20, net_stake=140, shares=10),
    ]

    result = replay_positions(events)

    position = result.positions[(SUBJECT, "m1", 0)]
    assert position.open_quantity == Decimal("15")
    assert position.open_cost_basis == Decimal("180")
    assert position.avg_entry_price == Decimal("12")
    assert position.cost_closed == Decimal("60")
    assert position.realized_pnl == Decimal("10")
    assert result.realized_pnl == Decimal("10")
    assert result.unmatched_sells == 0

    sell = result.events[-1]
    assert sell.id == "trade-3"
    assert sell.cost_basis_closed == Decimal("60")
    assert sell.realized_pnl == Decimal("10")


def test_replay_is_deterministic(make_event):
    events = [
        make_event("trade-a", timestamp=10, net_stake=50, shares=100),
        make_event("trade-b", timestamp=10, net_stake=30, shares=40),
        make_event("trade-c", kind=TradeKind.SELL, timestamp=11, net_out=45, shares=70),
    ]

    forward = replay_positions(events)
    backward = replay_positions(list(reversed(events)))

    assert forward.positions == backward.positions
    assert [event.id for event in forward.events] == ["trade-a", "trade-b", "trade-c"]


def test_sell_without_open_quantity_is_unmatched(make_event):
    events = [make_event("trade-1", kind=TradeKind.SELL, net_out=25, shares=5)]

    result = replay_positions(events)

    position = result.positions[(SUBJECT, "m1", 0)]
    assert result.unmatched_sells == 1
    assert position.unmatched_sells == 1
    assert position.sale_proceeds == Decimal("25")
    assert position.realized_pnl == Decimal("0")
    assert result.events[0].cost_basis_closed == Decimal("0")


def test_sell_without_quantity_does_not_close_position(make_event):
    events = [
        make_event("trade-1", timestamp=1, net_stake=10, shares=20),
        make_event("trade-2", kind=TradeKind.SELL, timestamp=2, net_out=8),
    ]

    result = replay_positions(events)

    position = result.positions[(SUBJECT, "m1", 0)]
    assert position.open_quantity == Decimal("20")
    assert result.unmatched_sells == 1


def test_oversell_closes_only_open_quantity(make_event):
    events = [
        make_event("trade-1", timestamp=1, net_stake=10, shares=10),
        make_event("trade-2", kind=TradeKind.SELL, timestamp=2, net_out=30, shares=25),
    ]

    result = replay_positions(events)

    position = result.positions[(SUBJECT, "m1", 0)]
    assert position.open_quantity == Decimal("0")
    assert position.open_cost_basis == Decimal("0")
    assert position.realized_pnl == Decimal("20")
    assert result.open_positions() == []


def test_claims_pass_through_and_outcomes_are_separate(make_event):
    events = [
        make_event("trade-1", timestamp=1, net_stake=10, shares=20),
        make_event("trade-2", timestamp=2, outcome_index=1, net_stake=5, shares=10),
        make_event("claim-3", kind=TradeKind.CLAIM, source=EventSource.CLAIM, timestamp=3, net_out=20),
    ]

    result = replay_positions(events)

    assert set(result.positions) == {(SUBJECT, "m1", 0), (SUBJECT, "m1", 1)}
    assert result.events[-1].kind is TradeKind.CLAIM
    assert len(result.open_positions()) == 2
