from __future__ import annotations

import pytest

from app.core.config import DEFAULT_LEAGUES, Settings
from app.errors import ConfigurationError


def _settings(**overrides) -> Settings:
    values = {"subgraph_query_url": "https://indexer.test/graphql"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_default_leagues_parsed_from_csv():
    assert _settings(default_leagues=" nba, nfl ,,").default_leagues == ["NBA", "NFL"]
    assert _settings(default_leagues="").default_leagues == list(DEFAULT_LEAGUES)
    assert _settings(default_leagues=["epl"]).default_leagues == ["EPL"]


def test_page_size_is_clamped():
    settings = _settings(min_page_size=5, default_page_size=25, max_page_size=100)

    assert settings.clamp_page_size(None) == 25
    assert settings.clamp_page_size(1) == 5
    assert settings.clamp_page_size(50) == 50
    assert settings.clamp_page_size(1_000) == 100


def test_postgres_urls_are_normalized():
    settings = _settings(database_url="postgres://user:pw@db.example.com:5432/ledger")

    resolved = settings.resolved_database_url

    assert resolved.startswith("postgresql+psycopg://")
    assert "sslmode=require" in resolved


def test_production_requires_supabase_url():
    settings = _settings(environment="production", supabase_db_url=None)

    with pytest.raises(ConfigurationError):
        settings.resolved_database_url
    with pytest.raises(ConfigurationError, match="SUPABASE_DB_URL"):
        settings.validate_runtime()


def test_supabase_url_must_be_postgres():
    with pytest.raises(ValueError):
        _settings(supabase_db_url="mysql://user@host/db")


def test_validate_runtime_lists_every_problem():
    settings = _settings(
        subgraph_query_url="  ",
        cache_ttl_seconds=600,
        cache_stale_seconds=60,
        min_page_size=50,
        max_page_size=10,
    )

    with pytest.raises(ConfigurationError) as excinfo:
        settings.validate_runtime()

    message = str(excinfo.value)
    assert "SUBGRAPH_QUERY_URL" in message
    assert "CACHE_STALE_SECONDS" in message
    assert "MIN_PAGE_SIZE" in message


def test_indexer_can_be_optional():
    _settings(subgraph_query_url=None, require_indexer=False).validate_runtime()


def test_indexer_page_size_limit():
    with pytest.raises(ValueError):
        _settings(indexer_page_size=1_001)
