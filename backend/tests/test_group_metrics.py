from __future__ import annotations

from decimal import Decimal

from app.domain import EventSource, LedgerBundle, MembershipInterval, TradeKind, Window
from app.services.group_metrics import (
    build_inclusion_predicate,
    count_active_members,
    group_leaderboard,
    group_member_metrics,
    group_members,
    group_metrics,
)

LOCK = 10_000
A = "0x" + "a" * 40
B = "0x" + "b" * 40
C = "0x" + "c" * 40


def _loader(bundle: LedgerBundle, calls: list | None = None):
    def load(subjects):
        if calls is not None:
            calls.append(list(subjects))
        wanted = set(subjects)
        return LedgerBundle(
            events=[event for event in bundle.events if event.subject in wanted],
            markets=bundle.markets,
        )

    return load


def test_interval_boundaries(make_market):
    market = make_market(lock_time=LOCK)
    include = build_inclusion_predicate(
        [
            MembershipInterval("g", A, joined_at=LOCK),
            MembershipInterval("g", B, joined_at=LOCK + 1),
            MembershipInterval("g", C, joined_at=0, left_at=LOCK),
        ]
    )

    assert include(A, market)
    assert not include(B, market)
    assert not include(C, market)
    assert not include(A, make_market(lock_time=None))
    assert not include("0xunknown", market)


def test_member_activity_outside_interval_is_excluded(make_event, make_market):
    bundle = LedgerBundle(
        events=[
            make_event("trade-1", subject=A, market_id="before", gross_in=10),
            make_event("trade-2", subject=A, market_id="during", gross_in=20),
            make_event("trade-3", subject=A, market_id="after", gross_in=40),
        ],
        markets={
            "before": make_market("before", lock_time=50),
            "during": make_market("during", lock_time=150),
            "after": make_market("after", lock_time=250),
        },
    )
    intervals = [MembershipInterval("g", A, joined_at=100, left_at=200)]

    metrics = group_member_metrics(intervals, None, Window(), _loader(bundle))

    assert metrics[A].traded == Decimal("20")


def test_rejoining_member_counts_each_interval(make_event, make_market):
    bundle = LedgerBundle(
        events=[
            make_event("trade-1", subject=A, market_id="first", gross_in=1),
            make_event("trade-2", subject=A, market_id="gap", gross_in=2),
            make_event("trade-3", subject=A, market_id="second", gross_in=4),
        ],
        markets={
            "first": make_market("first", lock_time=10),
            "gap": make_market("gap", lock_time=25),
            "second": make_market("second", lock_time=40),
        },
    )
    intervals = [
        MembershipInterval("g", A, joined_at=0, left_at=20),
        MembershipInterval("g", A, joined_at=30),
    ]

    metrics = group_member_metrics(intervals, None, Window(), _loader(bundle))

    assert metrics[A].traded == Decimal("5")


def test_members_are_loaded_in_batches(make_event, make_market):
    bundle = LedgerBundle(events=[], markets={"m1": make_market()})
    intervals = [MembershipInterval("g", subject, joined_at=0) for subject in (C, A, B)]
    calls: list = []

    group_member_metrics(intervals, None, Window(), _loader(bundle, calls), batch_size=2)

    assert calls == [[A, B], [C]]


def test_active_members_use_anchor():
    intervals = [
        MembershipInterval("g", A, joined_at=0),
        MembershipInterval("g", B, joined_at=0, left_at=100),
        MembershipInterval("g", C, joined_at=200),
    ]

    assert count_active_members(intervals, anchor=100) == 1
    assert count_active_members(intervals, anchor=99) == 2
    assert count_active_members(intervals, anchor=200) == 2


def test_group_summary_and_member_rows(make_event, make_market):
    bundle = LedgerBundle(
        events=[
            make_event("trade-1", subject=A, gross_in=10),
            make_event("trade-2", subject=B, gross_in=30),
            make_event("claim-3", subject=A, kind=TradeKind.CLAIM, source=EventSource.CLAIM, net_out=25),
        ],
        markets={"m1": make_market(lock_time=500)},
    )
    intervals = [
        MembershipInterval("g1", A, joined_at=0),
        MembershipInterval("g1", B, joined_at=0, left_at=600),
    ]

    summary = group_metrics("g1", "sharps", "Sharps", intervals, None, Window(), _loader(bundle), anchor=1_000)

    assert summary.member_count == 2
    assert summary.active_members == 1
    assert summary.metrics.traded == Decimal("40")
    assert summary.metrics.returned == Decimal("25")

    rows = group_members(summary, intervals, anchor=1_000)
    assert [row.subject for row in rows] == [A, B]
    assert rows[0].active and not rows[1].active
    assert rows[1].left_at == 600


def test_group_leaderboard_orders_by_roi(make_event, make_market):
    bundle = LedgerBundle(
        events=[
            make_event("trade-1", subject=A, gross_in=10),
            make_event("trade-2", subject=B, gross_in=10),
        ],
        markets={"m1": make_market()},
    )
    empty = group_metrics("g0", "empty", "Empty", [], None, Window(), _loader(bundle), anchor=0)
    first = group_metrics(
        "g1", "a", "A", [MembershipInterval("g1", A, joined_at=0)], None, Window(), _loader(bundle), anchor=0
    )

    ranked = group_leaderboard([empty, first])

    assert [summary.group_id for summary in ranked] == ["g1", "g0"]
    assert empty.metrics.roi is None
