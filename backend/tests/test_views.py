from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from app.db import session_scope
from app.domain import EventSource, TradeKind
from app.errors import DataUnavailableError, GroupNotFoundError
from app.repositories import GroupRepository, LedgerRepository
from app.services.views import ViewParams, build_cached_views, default_anchor, window_for
from ingestion.client import IndexerClient
from ingestion.service import persist_batch

A = "0x" + "a" * 40
B = "0x" + "b" * 40
C = "0x" + "c" * 40


@pytest.fixture
def seeded(session_factory, make_event, make_market):
    persist_batch(
        [
            make_event("trade-1", subject=A, gross_in=100, net_stake=100, shares=10, timestamp=100),
            make_event("trade-2", subject=A, gross_in=140, net_stake=140, shares=10, timestamp=200),
            make_event("trade-3", subject=A, kind=TradeKind.SELL, net_out=70, shares=5, timestamp=300),
            make_event("trade-4", subject=B, gross_in=50, market_id="m2", timestamp=150),
            make_event(
                "claim-5", subject=B, kind=TradeKind.CLAIM, source=EventSource.CLAIM, market_id="m2", net_out=100, timestamp=400
            ),
            make_event("trade-6", subject=C, gross_in=10, market_id="m3", league="NFL", timestamp=160),
        ],
        [
            make_market("m1", lock_time=1_000),
            make_market("m2", lock_time=2_000, is_final=True, winning_outcome_index=0),
            make_market("m3", lock_time=1_500, league="NFL"),
        ],
        session_factory=session_factory,
    )
    return session_factory


@pytest.fixture
def views(test_settings, seeded):
    cached = build_cached_views(test_settings, session_factory=seeded)
    yield cached
    cached.cache.shutdown()


def test_window_for_ranges():
    assert window_for("ALL", None).start is None
    assert window_for("d30", 3_000_000).start == 3_000_000 - 30 * 86_400
    assert window_for("D90", 10).end == 10
    with pytest.raises(ValueError):
        window_for("D7", 10)
    with pytest.raises(ValueError):
        window_for("D30", None)


def test_default_anchor_is_start_of_hour():
    assert default_anchor(7_201.5) == 7_200
    assert default_anchor(3_600) == 3_600


def test_leaderboard_ranks_by_roi(views):
    result = views.fetch("leaderboard", ViewParams(leagues=("NBA",)))
    payload = result.payload.to_dict()

    assert [row["subject"] for row in payload["rows"]] == [B, A]
    assert [row["rank"] for row in payload["rows"]] == [1, 2]
    assert payload["rows"][0]["roi"] == Decimal("1")
    assert payload["meta"]["total"] == 2
    assert payload["meta"]["source_version"] == 400
    assert result.meta.stale is False


def test_leaderboard_pages_and_caches(views):
    params = ViewParams(leagues=("NBA", "NFL"), page=2, page_size=1)

    first = views.fetch("leaderboard", params)
    second = views.fetch("leaderboard", params)

    assert first.payload is second.payload
    rows = first.payload.rows
    assert len(rows) == 1
    assert rows[0]["rank"] == 2
    assert first.payload.meta["total"] == 3


def test_leaderboard_window_uses_lock_time(views):
    result = views.fetch("leaderboard", ViewParams(leagues=("NBA", "NFL"), range="ALL", anchor=1_500))

    assert [row["subject"] for row in result.payload.rows] == [A]


def test_group_views(views, seeded):
    with session_scope(seeded) as session:
        groups = GroupRepository(session)
        groups.create_group(group_id="g1", slug="Sharps", name="Sharps")
        groups.create_group(group_id="g2", slug="squares", name="Squares")
        session.flush()
        groups.add_interval("g1", B, joined_at=0)
        groups.add_interval("g1", A, joined_at=1_200)
        groups.add_interval("g2", A, joined_at=0, left_at=5_000)

    board = views.fetch("group_leaderboard", ViewParams(leagues=("NBA",), anchor=10_000)).payload
    assert [row["slug"] for row in board.rows] == ["sharps", "squares"]
    sharps = board.rows[0]
    assert sharps["member_count"] == 2
    assert sharps["active_members"] == 2
    assert sharps["traded"] == Decimal("50")
    assert board.rows[1]["active_members"] == 0

    members = views.fetch("group_members", ViewParams(leagues=("NBA",), group="sharps", anchor=10_000)).payload
    assert [row["subject"] for row in members.rows] == [B, A]
    assert members.rows[1]["traded"] == Decimal("0")
    assert members.meta["group"]["slug"] == "sharps"


def test_unknown_group_is_data_unavailable(views):
    with pytest.raises(DataUnavailableError) as excinfo:
        views.fetch("group_members", ViewParams(leagues=("NBA",), group="nobody", anchor=0))

    assert isinstance(excinfo.value.cause, GroupNotFoundError)


def test_portfolio_replays_positions(views):
    payload = views.fetch("portfolio", ViewParams(leagues=("NBA",), subject=A)).payload.to_dict()

    assert payload["subject"] == A
    assert payload["realized_pnl"] == Decimal("10")
    assert payload["unmatched_sells"] == 0
    [position] = payload["open_positions"]
    assert position["open_quantity"] == Decimal("15")
    assert position["open_cost_basis"] == Decimal("180")
    assert payload["stats"]["traded"] == Decimal("240")
    assert payload["stats"]["sells_pnl"] == Decimal("10")
    [history] = payload["history"]
    assert history["action"] == "Sold"
    assert history["sell_amount"] == Decimal("70")


def test_sell_results_match_between_leaderboard_and_portfolio(views, seeded):
    board = views.fetch("leaderboard", ViewParams(leagues=("NBA",))).payload
    portfolio = views.fetch("portfolio", ViewParams(leagues=("NBA",), subject=A)).payload

    [row] = [row for row in board.rows if row["subject"] == A]
    stats = portfolio.fields["stats"]
    assert row["sells_pnl"] == stats["sells_pnl"] == Decimal("10")
    assert row["sells_cost"] == stats["sells_cost"] == Decimal("60")
    assert row["sells_roi"] == stats["sells_roi"]

    with session_scope(seeded) as session:
        groups = GroupRepository(session)
        groups.create_group(group_id="g1", slug="sharps", name="Sharps")
        session.flush()
        groups.add_interval("g1", A, joined_at=0)

    members = views.fetch("group_members", ViewParams(leagues=("NBA",), group="sharps", anchor=10_000)).payload
    [member] = members.rows
    assert member["sells_pnl"] == Decimal("10")
    assert member["sells_cost"] == Decimal("60")


def test_user_trades_fetches_and_writes_through(test_settings, seeded):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": {
                    "_meta": {"block": {"number": 991}},
                    "trades": [
                        {
                            "id": "0xnew",
                            "type": "BUY",
                            "game": {"id": "m9", "league": "NBA", "lockTime": 9_000},
                            "timestamp": 500,
                            "side": "B",
                            "grossInDec": "12",
                            "netStakeDec": "12",
                        }
                    ],
                    "bets": [],
                    "claims": [],
                }
            },
        )

    views = build_cached_views(
        test_settings,
        session_factory=seeded,
        indexer_factory=lambda: IndexerClient(
            url="https://indexer.test/graphql", transport=httpx.MockTransport(handler)
        ),
    )
    result = views.fetch("user_trades", ViewParams(leagues=("NBA",), subject=A))

    assert result.meta.source_version == 991
    [row] = result.payload.rows
    assert row["id"] == "trade-0xnew"
    assert row["lock_time"] == 9_000
    with session_scope(seeded) as session:
        stored = LedgerRepository(session).list_subject_events(A)
    assert stored[0].id == "trade-0xnew"
    views.cache.shutdown()


def test_cache_keys_differ_by_view_scope(views):
    user = views.views["portfolio"]
    assert user.cache_key(ViewParams(leagues=("NBA",), subject=A)) != user.cache_key(
        ViewParams(leagues=("NBA",), subject=B)
    )
    members = views.views["group_members"]
    assert members.cache_key(ViewParams(leagues=("NBA",), group="x")).startswith("group_members_v1:group:x:")
