from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.errors import ConfigurationError


DEFAULT_LEAGUES = ("MLB", "NFL", "NBA", "NHL", "EPL", "UCL")


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("sslmode", "require")
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


def _split_csv(value: Any, *, upper: bool = False) -> list[str]:
    if value in (None, "", []):
        return []
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",")]
    elif isinstance(value, (list, tuple, set)):
        items = [str(part).strip() for part in value]
    else:
        raise ValueError("expected a list or a comma-separated string")
    cleaned = [item for item in items if item]
    return [item.upper() for item in cleaned] if upper else cleaned


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/tradeledger.db",
        description="SQLAlchemy compatible database URL",
    )
    supabase_db_url: AnyUrl | str | None = Field(
        default=None,
        description="Supabase pooled Postgres connection string for production runs",
    )

    subgraph_query_url: str | None = Field(
        default=None,
        description="GraphQL endpoint of the upstream event indexer",
    )
    subgraph_auth_header: str | None = Field(
        default=None,
        description="Value sent as the Authorization header on indexer requests",
    )
    indexer_page_size: int = Field(
        default=1000,
        description="Rows requested per indexer page (the indexer rejects more than 1000)",
        ge=1,
        le=1000,
    )
    indexer_max_pages: int = Field(
        default=50,
        description="Upper bound on pages fetched per paginated indexer call",
        ge=1,
    )
    indexer_timeout_seconds: float = Field(
        default=20.0,
        description="HTTP timeout applied to indexer requests",
        gt=0,
    )
    require_indexer: bool = Field(
        default=True,
        description="Fail fast at startup when the indexer endpoint is not configured",
    )
    default_leagues: list[str] | str = Field(
        default_factory=lambda: list(DEFAULT_LEAGUES),
        description="Comma-separated list or array of leagues included when a request names none",
    )

    cache_ttl_seconds: int = Field(
        default=60, description="Age below which a cached payload is fresh", ge=0
    )
    cache_stale_seconds: int = Field(
        default=300,
        description="Age up to which a stale payload is still served while revalidating",
        ge=0,
    )
    cache_revalidate_seconds: int = Field(
        default=30,
        description="Minimum spacing between background revalidations of one key",
        ge=0,
    )
    cache_worker_threads: int = Field(
        default=4, description="Threads used for background cache revalidation", ge=1
    )
    cache_worker_enabled: bool = Field(
        default=False, description="Run the cache warm-up loop alongside the API"
    )
    cache_worker_interval_seconds: int = Field(
        default=60, description="Seconds between cache warm-up ticks", ge=1
    )

    min_page_size: int = Field(default=5, description="Smallest page a caller may request", ge=1)
    default_page_size: int = Field(default=25, description="Page size used when a caller names none", ge=1)
    max_page_size: int = Field(default=100, description="Largest page a caller may request", ge=1)
    group_member_batch_size: int = Field(
        default=120,
        description="Members aggregated per batch when computing group metrics",
        ge=1,
    )
    leaderboard_max_subjects: int = Field(
        default=500,
        description="Maximum number of subjects ranked by the leaderboard view",
        ge=1,
    )

    backfill_concurrency: int = Field(
        default=4, description="Subjects paged concurrently by the backfill worker", ge=1
    )
    backfill_sleep_seconds: float = Field(
        default=0.0, description="Pause between indexer pages during backfill", ge=0
    )
    backfill_max_subjects: int = Field(
        default=0, description="Stop the backfill after this many subjects (0 = no limit)", ge=0
    )

    @field_validator("database_url", "supabase_db_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value

        if value.startswith("postgresql+psycopg://") or value.startswith(
            "postgresql+asyncpg://"
        ):
            return value

        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("supabase_db_url")
    @classmethod
    def _require_postgres_scheme(cls, value: Any) -> Any:
        if value is None:
            return value
        scheme = str(value).split(":", 1)[0].lower()
        valid_schemes = {
            "postgres",
            "postgresql",
            "postgresql+psycopg",
            "postgresql+asyncpg",
        }
        if scheme not in valid_schemes:
            raise ValueError(
                "SUPABASE_DB_URL must be a PostgreSQL connection string (e.g. postgresql://...)."
            )
        return value

    @field_validator("default_leagues", mode="after")
    @classmethod
    def _parse_default_leagues(cls, value: Any) -> list[str]:
        leagues = _split_csv(value, upper=True)
        return leagues or list(DEFAULT_LEAGUES)

    @field_validator("subgraph_query_url", "subgraph_auth_header", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def resolved_database_url(self) -> str:
        environment = self.environment.lower()
        if environment == "production":
            if not self.supabase_db_url:
                raise ConfigurationError(
                    "SUPABASE_DB_URL must be set when ENVIRONMENT=production"
                )
            return _ensure_sqlalchemy_postgres_scheme(str(self.supabase_db_url))
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    def clamp_page_size(self, requested: int | None) -> int:
        if requested is None:
            requested = self.default_page_size
        return max(self.min_page_size, min(self.max_page_size, int(requested)))

    def validate_runtime(self) -> None:
        """Raise ConfigurationError when administrative configuration is missing.

        Called once at process start (API startup, worker entrypoints); request
        handlers never trigger it.
        """

        problems: list[str] = []
        if self.environment.lower() == "production" and not self.supabase_db_url:
            problems.append("SUPABASE_DB_URL must be set when ENVIRONMENT=production")
        if self.require_indexer and not self.subgraph_query_url:
            problems.append("SUBGRAPH_QUERY_URL is not configured")
        if self.cache_stale_seconds < self.cache_ttl_seconds:
            problems.append("CACHE_STALE_SECONDS must not be smaller than CACHE_TTL_SECONDS")
        if self.min_page_size > self.max_page_size:
            problems.append("MIN_PAGE_SIZE must not exceed MAX_PAGE_SIZE")
        if problems:
            raise ConfigurationError("; ".join(problems))


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
