from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from app.core.config import settings
from app.domain import Window
from app.errors import IndexerError

from . import queries

_OPEN_START = 0
_OPEN_END = 9_999_999_999


def _window_vars(window: Window) -> dict[str, str]:
    start = window.start if window.start is not None else _OPEN_START
    end = window.end if window.end is not None else _OPEN_END
    return {"start": str(start), "end": str(end)}


def _paging_var(prefix: str, collection: str) -> str:
    return f"{prefix}{collection[0].upper()}{collection[1:]}"


@dataclass(slots=True)
class PagedResult:
    rows: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    block_number: int | None = None
    pages: int = 0
    truncated: bool = False

    def get(self, collection: str) -> list[dict[str, Any]]:
        return self.rows.get(collection, [])


class IndexerClient:
    """GraphQL client for the upstream event indexer."""

    def __init__(
        self,
        *,
        url: str | None = None,
        auth_header: str | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        timeout: float | None = None,
        sleep_seconds: float = 0.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url or settings.subgraph_query_url
        self.auth_header = auth_header if auth_header is not None else settings.subgraph_auth_header
        self.page_size = min(page_size or settings.indexer_page_size, 1000)
        self.max_pages = max_pages or settings.indexer_max_pages
        self.sleep_seconds = sleep_seconds
        headers = {"content-type": "application/json"}
        if self.auth_header:
            headers["authorization"] = self.auth_header
        self.client = httpx.Client(
            timeout=timeout or settings.indexer_timeout_seconds,
            headers=headers,
            transport=transport,
        )

    def query(self, document: str, variables: Mapping[str, Any] | None = None) -> dict[str, Any]:
        if not self.url:
            raise IndexerError("Indexer not configured: missing SUBGRAPH_QUERY_URL")

        try:
            response = self.client.post(
                self.url, json={"query": document, "variables": dict(variables or {})}
            )
        except httpx.HTTPError as exc:
            raise IndexerError(f"Indexer request failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise IndexerError(
                f"Indexer non-JSON response ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            ) from exc

        errors = payload.get("errors") if isinstance(payload, dict) else None
        if response.is_error:
            message = (errors or [{}])[0].get("message") or f"HTTP {response.status_code}"
            raise IndexerError(f"Indexer HTTP error: {message}", status_code=response.status_code)
        if errors:
            raise IndexerError(f"Indexer GraphQL error: {errors[0].get('message') or 'unknown'}")

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise IndexerError("Indexer returned no data")
        return data

    def block_number(self) -> int | None:
        return _block_of(self.query(queries.Q_META))

    def paginate(
        self,
        document: str,
        variables: Mapping[str, Any],
        collections: Sequence[str],
    ) -> PagedResult:
        """Page every collection until it returns a short page or the page cap is hit."""

        result = PagedResult(rows={name: [] for name in collections})
        skips = {name: 0 for name in collections}
        active = set(collections)

        while active:
            if result.pages >= self.max_pages:
                result.truncated = True
                logger.warning(
                    "Indexer pagination capped at {} pages; still open: {}",
                    self.max_pages,
                    ", ".join(sorted(active)),
                )
                break

            page_vars = dict(variables)
            for name in collections:
                page_vars[_paging_var("first", name)] = self.page_size if name in active else 0
                page_vars[_paging_var("skip", name)] = skips[name]

            data = self.query(document, page_vars)
            result.pages += 1
            if result.block_number is None:
                result.block_number = _block_of(data)

            for name in list(active):
                batch = data.get(name) or []
                if not isinstance(batch, list):
                    raise IndexerError(f"Indexer returned a non-list {name} collection")
                result.rows[name].extend(batch)
                skips[name] += len(batch)
                if len(batch) < self.page_size:
                    active.discard(name)

            if active and self.sleep_seconds:
                time.sleep(self.sleep_seconds)

        return result

    def fetch_subject_activity(
        self, subject: str, leagues: Sequence[str], window: Window
    ) -> PagedResult:
        variables = {"user": subject.lower(), "leagues": list(leagues), **_window_vars(window)}
        logger.info("Indexer activity fetch subject={} leagues={} window={}", subject, leagues, window)
        return self.paginate(queries.Q_SUBJECT_ACTIVITY, variables, queries.ACTIVITY_COLLECTIONS)

    def fetch_bulk_activity(
        self, subjects: Sequence[str], leagues: Sequence[str], window: Window
    ) -> PagedResult:
        variables = {
            "users": [subject.lower() for subject in subjects],
            "leagues": list(leagues),
            **_window_vars(window),
        }
        logger.info("Indexer bulk activity fetch subjects={} window={}", len(subjects), window)
        return self.paginate(queries.Q_BULK_ACTIVITY, variables, queries.ACTIVITY_COLLECTIONS)

    def fetch_recent_activity(
        self, subject: str, leagues: Sequence[str], window: Window
    ) -> PagedResult:
        variables = {"user": subject.lower(), "leagues": list(leagues), **_window_vars(window)}
        return self.paginate(queries.Q_RECENT_ACTIVITY, variables, queries.ACTIVITY_COLLECTIONS)

    def discover_subjects(self, leagues: Sequence[str], window: Window) -> list[str]:
        """Distinct subjects with stakes or trades in markets locking inside the window."""

        seen: dict[str, None] = {}
        base = {"leagues": list(leagues), **_window_vars(window)}
        for document, collection in (
            (queries.Q_SUBJECTS_FROM_TRADES, "trades"),
            (queries.Q_SUBJECTS_FROM_BETS, "bets"),
        ):
            page = self.paginate(document, base, (collection,))
            for row in page.get(collection):
                user = row.get("user") or {}
                address = str(user.get("id") or "").strip().lower()
                if address:
                    seen.setdefault(address, None)
            logger.info("Discovered {} subjects after scanning {}", len(seen), collection)
        return list(seen)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "IndexerClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _block_of(data: Mapping[str, Any]) -> int | None:
    meta = data.get("_meta") or {}
    block = meta.get("block") or {}
    number = block.get("number")
    try:
        return int(number) if number is not None else None
    except (TypeError, ValueError):
        return None
