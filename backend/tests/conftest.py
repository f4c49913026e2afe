from __future__ import annotations

import argparse
import sys
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.db import create_db_engine, create_session_factory, init_db
from app.domain import EventSource, MarketMeta, TradeEvent, TradeKind

SUBJECT = "0x" + "a" * 40
OTHER_SUBJECT = "0x" + "b" * 40
_RAW_FIELDS = {"tx_hash", "spot_price_bps", "avg_price_bps"}


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'tradeledger.db'}",
        subgraph_query_url="https://indexer.test/graphql",
        indexer_page_size=2,
        indexer_max_pages=5,
        cache_ttl_seconds=60,
        cache_stale_seconds=300,
        cache_revalidate_seconds=30,
        group_member_batch_size=2,
        default_leagues="nba,nfl",
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def make_event():
    def factory(
        event_id: str,
        *,
        kind: TradeKind = TradeKind.BUY,
        subject: str = SUBJECT,
        market_id: str = "m1",
        outcome_index: int | None = 0,
        timestamp: int = 1_000,
        source: EventSource = EventSource.TRADE,
        league: str | None = "NBA",
        **amounts,
    ) -> TradeEvent:
        values = {
            name: value if value is None or name in _RAW_FIELDS else Decimal(str(value))
            for name, value in amounts.items()
        }
        if kind is TradeKind.CLAIM:
            outcome_index = None
        return TradeEvent(
            id=event_id,
            subject=subject,
            kind=kind,
            outcome_index=outcome_index,
            outcome_code="C" if kind is TradeKind.CLAIM else str(outcome_index),
            timestamp=timestamp,
            market_id=market_id,
            league=league,
            source=source,
            **values,
        )

    return factory


@pytest.fixture
def make_market():
    def factory(market_id: str = "m1", **overrides) -> MarketMeta:
        values = {"league": "NBA", "lock_time": 5_000, "outcome_count": 2}
        values.update(overrides)
        return MarketMeta(market_id=market_id, **values)

    return factory


@pytest.fixture
def backfill_args(tmp_path) -> argparse.Namespace:
    return argparse.Namespace(
        range="ALL",
        anchor=None,
        leagues="NBA",
        subject=None,
        concurrency=1,
        max_subjects=0,
        start_index=0,
        dry_run=False,
        summary_path=tmp_path / "backfill.json",
    )
