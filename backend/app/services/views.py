"""Versioned views served through the revalidating cache.

Every view exposes ``name``, ``version``, ``cache_key(params)`` and
``refresh(params)``. ``refresh`` reads the ledger (and, for the activity feed,
the indexer) and returns a ``ViewResult``; it has no other side effects on
the cache.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db import session_scope
from app.domain import (
    LedgerBundle,
    Position,
    PositionRow,
    SubjectMetrics,
    TradeEvent,
    Window,
)
from app.repositories import GroupRepository, LedgerRepository
from ingestion.client import IndexerClient
from ingestion.service import normalize_collections, persist_batch

from .aggregator import aggregate_subjects, position_rows, rank_by_roi
from .cache import CachedResult, Refreshed, RevalidatingCache
from .cache_keys import build_cache_key
from .cost_basis import ReplayResult, replay_positions
from .group_metrics import group_leaderboard, group_members, group_metrics

RANGE_DAYS: dict[str, int | None] = {"ALL": None, "D30": 30, "D90": 90}
_DAY = 86_400


def window_for(range_name: str, anchor: int | None) -> Window:
    """``[anchor - days, anchor)``; ALL is unbounded below and ends at the anchor if given."""

    key = range_name.upper()
    if key not in RANGE_DAYS:
        raise ValueError(f"unsupported range {range_name!r}")
    days = RANGE_DAYS[key]
    if days is None:
        return Window(start=None, end=anchor)
    if anchor is None:
        raise ValueError(f"range {key} requires an anchor")
    return Window(start=anchor - days * _DAY, end=anchor)


def default_anchor(now: float | None = None) -> int:
    """Start of the current UTC hour, so anchored cache keys stay stable for an hour."""

    current = int(now if now is not None else datetime.now(timezone.utc).timestamp())
    return current - current % 3600


@dataclass(frozen=True, slots=True)
class ViewParams:
    leagues: tuple[str, ...]
    range: str = "ALL"
    anchor: int | None = None
    subject: str | None = None
    group: str | None = None
    page: int = 1
    page_size: int = 25

    @property
    def window(self) -> Window:
        return window_for(self.range, self.anchor)

    @property
    def offset(self) -> int:
        return (max(1, self.page) - 1) * self.page_size

    def to_dict(self) -> dict[str, Any]:
        return {
            "leagues": sorted(self.leagues),
            "range": self.range.upper(),
            "anchor": self.anchor,
            "subject": self.subject,
            "group": self.group,
            "page": self.page,
            "page_size": self.page_size,
        }


@dataclass(slots=True)
class ViewResult:
    meta: dict[str, Any] = field(default_factory=dict)
    rows: list[dict[str, Any]] | None = None
    fields: dict[str, Any] | None = None

    @property
    def source_version(self) -> Any:
        return self.meta.get("source_version")

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"meta": self.meta}
        if self.rows is not None:
            body["rows"] = self.rows
        if self.fields is not None:
            body.update(self.fields)
        return body


@dataclass(slots=True)
class ViewContext:
    settings: Settings
    session_factory: Callable[[], Session] | None = None
    indexer_factory: Callable[[], IndexerClient] | None = None


def metrics_row(metrics: SubjectMetrics) -> dict[str, Any]:
    return {
        "subject": metrics.subject,
        "traded": metrics.traded,
        "returned": metrics.returned,
        "claims": metrics.claims,
        "pnl": metrics.pnl,
        "roi": metrics.roi,
        "trade_count": metrics.trade_count,
        "markets_touched": metrics.markets_touched,
        "favorite_league": metrics.favorite_league,
        "sells_net": metrics.sells_net,
        "sells_cost": metrics.sells_cost,
        "sells_pnl": metrics.sells_pnl,
        "sells_roi": metrics.sells_roi,
    }


def event_row(event: TradeEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "kind": event.kind.value,
        "source": event.source.value,
        "outcome_index": event.outcome_index,
        "outcome_code": event.outcome_code,
        "timestamp": event.timestamp,
        "market_id": event.market_id,
        "league": event.league,
        "tx_hash": event.tx_hash,
        "gross_in": event.gross_in,
        "gross_out": event.gross_out,
        "fee": event.fee,
        "net_stake": event.net_stake,
        "net_out": event.net_out,
        "cost_basis_closed": event.cost_basis_closed,
        "realized_pnl": event.realized_pnl,
        "shares": event.shares,
        "spot_price_bps": event.spot_price_bps,
        "avg_price_bps": event.avg_price_bps,
    }


def position_row(position: Position) -> dict[str, Any]:
    return {
        "market_id": position.market_id,
        "outcome_index": position.outcome_index,
        "open_quantity": position.open_quantity,
        "open_cost_basis": position.open_cost_basis,
        "avg_entry_price": position.avg_entry_price,
        "realized_pnl": position.realized_pnl,
        "unmatched_sells": position.unmatched_sells,
    }


def history_row(row: PositionRow) -> dict[str, Any]:
    return {
        "market_id": row.market_id,
        "league": row.league,
        "lock_time": row.lock_time,
        "outcome_index": row.outcome_index,
        "outcome_code": row.outcome_code,
        "buy_gross": row.buy_gross,
        "all_in_price_bps": row.all_in_price_bps,
        "sell_amount": row.sell_amount,
        "claim_amount": row.claim_amount,
        "returned": row.returned,
        "roi": row.roi,
        "action": row.action,
        "is_final": row.is_final,
        "last_timestamp": row.last_timestamp,
    }


def _page(rows: Sequence[Any], params: ViewParams) -> list[Any]:
    return list(rows[params.offset : params.offset + params.page_size])


class View:
    name: str = ""
    version: int = 1
    scope: str = "global"

    def __init__(self, context: ViewContext) -> None:
        self.context = context

    def scope_for(self, params: ViewParams) -> str:
        return self.scope

    def cache_key(self, params: ViewParams) -> str:
        return build_cache_key(self.name, self.version, self.scope_for(params), params.to_dict())

    def refresh(self, params: ViewParams) -> ViewResult:
        raise NotImplementedError

    def _base_meta(self, params: ViewParams, source_version: Any) -> dict[str, Any]:
        window = params.window
        return {
            "view": self.name,
            "version": self.version,
            "source_version": source_version,
            "leagues": sorted(params.leagues),
            "range": params.range.upper(),
            "window_start": window.start,
            "window_end": window.end,
            "page": params.page,
            "page_size": params.page_size,
        }


class LeaderboardView(View):
    """Subjects ranked by ROI over markets locking in the window."""

    name = "leaderboard"
    version = 1

    def refresh(self, params: ViewParams) -> ViewResult:
        window = params.window
        limit = self.context.settings.leaderboard_max_subjects
        with session_scope(self.context.session_factory) as session:
            repo = LedgerRepository(session)
            totals = repo.aggregate_window(leagues=params.leagues, window=window)
            candidates = sorted(totals.values(), key=lambda item: (-item.buy_gross, item.subject))
            subjects = [item.subject for item in candidates if item.buys > 0][:limit]
            bundle = repo.load_bundle(subjects, leagues=params.leagues, window=window)

        replayed, _ = _replayed(bundle)
        metrics = aggregate_subjects(subjects, params.leagues, window, replayed)
        ranked = rank_by_roi([entry for entry in metrics.values() if entry.traded > 0])
        rows = [{"rank": params.offset + index + 1, **metrics_row(entry)} for index, entry in enumerate(_page(ranked, params))]
        meta = self._base_meta(params, bundle.source_version)
        meta["total"] = len(ranked)
        return ViewResult(meta=meta, rows=rows)


def _replayed(bundle: LedgerBundle) -> tuple[LedgerBundle, ReplayResult]:
    """Bundle whose SELL rows carry cost closed and realized P/L from the ledger replay."""

    replay = replay_positions(bundle.events)
    replayed = LedgerBundle(events=replay.events, markets=bundle.markets, source_version=bundle.source_version)
    return replayed, replay


def _bundle_loader(repo: LedgerRepository, params: ViewParams) -> Callable[[Sequence[str]], LedgerBundle]:
    def load(subjects: Sequence[str]) -> LedgerBundle:
        replayed, _ = _replayed(repo.load_bundle(subjects, leagues=params.leagues, window=params.window))
        return replayed

    return load


def _anchor_of(params: ViewParams) -> int:
    return params.anchor if params.anchor is not None else default_anchor()


class GroupLeaderboardView(View):
    name = "group_leaderboard"
    version = 1
    scope = "groups"

    def refresh(self, params: ViewParams) -> ViewResult:
        anchor = _anchor_of(params)
        with session_scope(self.context.session_factory) as session:
            groups = GroupRepository(session)
            repo = LedgerRepository(session)
            records = [(record.group_id, record.slug, record.name) for record in groups.list_groups()]
            intervals = groups.list_intervals([group_id for group_id, _, _ in records])
            summaries = []
            for group_id, slug, name in records:
                group_intervals = [interval for interval in intervals if interval.group_id == group_id]
                summaries.append(
                    group_metrics(
                        group_id,
                        slug,
                        name,
                        group_intervals,
                        params.leagues,
                        params.window,
                        _bundle_loader(repo, params),
                        anchor=anchor,
                        batch_size=self.context.settings.group_member_batch_size,
                    )
                )
            source_version = repo.latest_timestamp()

        ranked = group_leaderboard(summaries)
        rows = [
            {
                "rank": params.offset + index + 1,
                "group_id": summary.group_id,
                "slug": summary.slug,
                "name": summary.name,
                "member_count": summary.member_count,
                "active_members": summary.active_members,
                **{key: value for key, value in metrics_row(summary.metrics).items() if key != "subject"},
            }
            for index, summary in enumerate(_page(ranked, params))
        ]
        meta = self._base_meta(params, source_version)
        meta.update({"total": len(ranked), "anchor": anchor})
        return ViewResult(meta=meta, rows=rows)


class GroupMembersView(View):
    name = "group_members"
    version = 1
    scope = "group"

    def scope_for(self, params: ViewParams) -> str:
        return f"group:{(params.group or '').lower()}"

    def refresh(self, params: ViewParams) -> ViewResult:
        if not params.group:
            raise ValueError("group members view requires a group")
        anchor = _anchor_of(params)
        with session_scope(self.context.session_factory) as session:
            groups = GroupRepository(session)
            repo = LedgerRepository(session)
            record = groups.get_group(params.group)
            group_id, slug, name = record.group_id, record.slug, record.name
            intervals = groups.list_intervals([group_id])
            summary = group_metrics(
                group_id,
                slug,
                name,
                intervals,
                params.leagues,
                params.window,
                _bundle_loader(repo, params),
                anchor=anchor,
                batch_size=self.context.settings.group_member_batch_size,
            )
            source_version = repo.latest_timestamp()

        members = group_members(summary, intervals, anchor=anchor)
        rows = [
            {
                "rank": params.offset + index + 1,
                "joined_at": member.joined_at,
                "left_at": member.left_at,
                "active": member.active,
                **metrics_row(member.metrics),
            }
            for index, member in enumerate(_page(members, params))
        ]
        meta = self._base_meta(params, source_version)
        meta.update(
            {
                "total": len(members),
                "anchor": anchor,
                "group": {
                    "group_id": group_id,
                    "slug": slug,
                    "name": name,
                    "member_count": summary.member_count,
                    "active_members": summary.active_members,
                    **{key: value for key, value in metrics_row(summary.metrics).items() if key != "subject"},
                },
            }
        )
        return ViewResult(meta=meta, rows=rows)


class UserRecentTradesView(View):
    """A subject's latest activity straight from the indexer, windowed by event time.

    Fetched rows are written through to the ledger so later store-backed views
    see them.
    """

    name = "user_trades"
    version = 2
    scope = "user"

    def refresh(self, params: ViewParams) -> ViewResult:
        if not params.subject:
            raise ValueError("recent trades view requires a subject")
        if self.context.indexer_factory is None:
            raise RuntimeError("recent trades view needs an indexer client")

        with self.context.indexer_factory() as client:
            page = client.fetch_recent_activity(params.subject, params.leagues, params.window)
        batch = normalize_collections(page.rows, subject=params.subject)
        persist_batch(batch.events, batch.markets.values(), session_factory=self.context.session_factory)

        events = sorted(batch.events, key=lambda event: (-event.timestamp, event.id))
        rows = []
        for event in _page(events, params):
            row = event_row(event)
            market = batch.markets.get(event.market_id)
            row["lock_time"] = market.lock_time if market else None
            row["is_final"] = market.is_final if market else None
            rows.append(row)
        meta = self._base_meta(params, page.block_number)
        meta.update(
            {
                "total": len(events),
                "rejected": batch.rejected,
                "dropped_duplicates": batch.dropped_duplicates,
                "truncated": page.truncated,
            }
        )
        return ViewResult(meta=meta, rows=rows)


class PortfolioView(View):
    """Open positions, realized results and per-position history from the ledger."""

    name = "portfolio"
    version = 1
    scope = "user"

    def refresh(self, params: ViewParams) -> ViewResult:
        if not params.subject:
            raise ValueError("portfolio view requires a subject")
        subject = params.subject.lower()
        window = params.window
        with session_scope(self.context.session_factory) as session:
            bundle = LedgerRepository(session).load_bundle([subject], leagues=params.leagues, window=window)

        replayed, replay = _replayed(bundle)
        if replay.unmatched_sells:
            logger.warning("Portfolio for {} has {} unmatched sells", subject, replay.unmatched_sells)
        stats = aggregate_subjects([subject], params.leagues, window, replayed)[subject]
        history = position_rows(subject, replayed, leagues=params.leagues, window=window)
        open_positions = sorted(
            replay.open_positions(), key=lambda item: (item.market_id, item.outcome_index)
        )

        meta = self._base_meta(params, bundle.source_version)
        meta["history_total"] = len(history)
        return ViewResult(
            meta=meta,
            fields={
                "subject": subject,
                "stats": metrics_row(stats),
                "realized_pnl": replay.realized_pnl,
                "unmatched_sells": replay.unmatched_sells,
                "open_positions": [position_row(position) for position in open_positions],
                "history": [history_row(row) for row in _page(history, params)],
            },
        )


class CachedViews:
    """Views fronted by one revalidating cache."""

    def __init__(self, cache: RevalidatingCache, views: Iterable[View]) -> None:
        self.cache = cache
        self.views = {view.name: view for view in views}

    def fetch(self, name: str, params: ViewParams) -> CachedResult:
        view = self.views[name]

        def refresh() -> Refreshed:
            result = view.refresh(params)
            return Refreshed(payload=result, source_version=result.source_version)

        return self.cache.get(view.cache_key(params), refresh)


def build_views(context: ViewContext) -> list[View]:
    return [
        LeaderboardView(context),
        GroupLeaderboardView(context),
        GroupMembersView(context),
        UserRecentTradesView(context),
        PortfolioView(context),
    ]


def build_cached_views(
    settings: Settings | None = None,
    *,
    session_factory: Callable[[], Session] | None = None,
    indexer_factory: Callable[[], IndexerClient] | None = None,
    cache: RevalidatingCache | None = None,
) -> CachedViews:
    settings = settings or get_settings()
    context = ViewContext(
        settings=settings,
        session_factory=session_factory,
        indexer_factory=indexer_factory or IndexerClient,
    )
    return CachedViews(cache or RevalidatingCache.from_settings(settings), build_views(context))
