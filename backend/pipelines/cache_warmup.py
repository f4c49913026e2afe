"""Keep the hot cache keys warm by refreshing them on a fixed interval."""

from __future__ import annotations

import argparse
import json
import sys
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import init_db
from app.errors import ConfigurationError, DataUnavailableError
from app.services.views import CachedViews, ViewParams, build_cached_views, default_anchor

WARM_VIEWS = ("leaderboard", "group_leaderboard")
WARM_RANGES = ("ALL", "D30", "D90")


@dataclass(slots=True)
class WarmupSummary:
    warmed: int = 0
    stale: int = 0
    failed: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"warmed": self.warmed, "stale": self.stale, "failed": self.failed}


class CacheWarmup:
    def __init__(
        self,
        views: CachedViews,
        settings: Settings,
        *,
        view_names: Sequence[str] = WARM_VIEWS,
        ranges: Sequence[str] = WARM_RANGES,
    ) -> None:
        self.views = views
        self.settings = settings
        self.view_names = tuple(view_names)
        self.ranges = tuple(ranges)

    def params_for(self, range_name: str, anchor: int) -> ViewParams:
        return ViewParams(
            leagues=tuple(self.settings.default_leagues),
            range=range_name,
            anchor=None if range_name == "ALL" else anchor,
            page=1,
            page_size=self.settings.default_page_size,
        )

    def tick(self, *, anchor: int | None = None) -> WarmupSummary:
        anchor = anchor if anchor is not None else default_anchor()
        summary = WarmupSummary()
        for name in self.view_names:
            for range_name in self.ranges:
                try:
                    result = self.views.fetch(name, self.params_for(range_name, anchor))
                except DataUnavailableError as exc:
                    logger.warning("Cache warm-up failed for {} {}: {}", name, range_name, exc)
                    summary.failed.append({"view": name, "range": range_name, "error": str(exc)})
                    continue
                summary.warmed += 1
                if result.meta.stale:
                    summary.stale += 1
        logger.info(
            "Cache warm-up tick: warmed={} stale={} failed={}",
            summary.warmed,
            summary.stale,
            len(summary.failed),
        )
        return summary


class WarmupThread:
    def __init__(self, warmup: CacheWarmup, interval_seconds: float) -> None:
        self.warmup = warmup
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="cache-warmup", daemon=True)

    def start(self) -> "WarmupThread":
        self._thread.start()
        return self

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.warmup.tick()
            except Exception:
                logger.exception("Unexpected error during cache warm-up tick")
            self._stop.wait(self.interval_seconds)


def start_background_warmup(views: CachedViews, settings: Settings) -> WarmupThread:
    logger.info("Starting cache warm-up every {}s", settings.cache_worker_interval_seconds)
    return WarmupThread(CacheWarmup(views, settings), settings.cache_worker_interval_seconds).start()


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Refresh the hot cache keys periodically")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single warm-up tick and exit",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.cache_worker_interval_seconds,
        help="Seconds between ticks",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = get_settings()
    try:
        settings.validate_runtime()
    except ConfigurationError as exc:
        logger.error("Cache warm-up cannot start: {}", exc)
        sys.exit(2)
    init_db()

    views = build_cached_views(settings)
    warmup = CacheWarmup(views, settings)
    if args.once:
        print(json.dumps(warmup.tick().to_dict(), indent=2, sort_keys=True))
        views.cache.shutdown()
        return

    stop = threading.Event()
    try:
        while not stop.is_set():
            warmup.tick()
            stop.wait(args.interval)
    except KeyboardInterrupt:
        logger.info("Cache warm-up interrupted")
    finally:
        views.cache.shutdown(wait=False)


if __name__ == "__main__":
    main()
