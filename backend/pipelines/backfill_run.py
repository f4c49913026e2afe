"""Backfill the ledger from the indexer.

Discovers every subject with stakes or trades in markets locking inside the
window, then pages each subject's full activity (trades, stakes, claims),
normalizes, de-duplicates and persists it one subject per transaction.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db import init_db
from app.domain import Window
from app.errors import ConfigurationError, IndexerError, LedgerPersistenceError
from app.services.views import RANGE_DAYS, default_anchor, window_for
from ingestion.client import IndexerClient
from ingestion.service import normalize_collections, persist_batch


@dataclass(slots=True)
class SubjectResult:
    subject: str
    fetched: int = 0
    rejected: int = 0
    duplicates: int = 0
    inserted: int = 0
    updated: int = 0
    replaced: int = 0
    skipped: int = 0
    pages: int = 0
    truncated: bool = False


@dataclass(slots=True)
class BackfillSummary:
    run_id: str
    started_at: datetime
    range: str
    leagues: list[str]
    window_start: int | None = None
    window_end: int | None = None
    finished_at: datetime | None = None
    dry_run: bool = False
    subjects_discovered: int = 0
    subjects_processed: int = 0
    subjects_failed: int = 0
    rows_fetched: int = 0
    rows_rejected: int = 0
    duplicates_dropped: int = 0
    inserted: int = 0
    updated: int = 0
    replaced: int = 0
    skipped: int = 0
    truncated_subjects: list[str] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    def record(self, result: SubjectResult) -> None:
        self.subjects_processed += 1
        self.rows_fetched += result.fetched
        self.rows_rejected += result.rejected
        self.duplicates_dropped += result.duplicates
        self.inserted += result.inserted
        self.updated += result.updated
        self.replaced += result.replaced
        self.skipped += result.skipped
        if result.truncated:
            self.truncated_subjects.append(result.subject)

    def record_failure(self, subject: str, exc: BaseException) -> None:
        self.subjects_failed += 1
        self.failures.append({"subject": subject, "error": f"{type(exc).__name__}: {exc}"})

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "range": self.range,
            "leagues": self.leagues,
            "window_start": self.window_start,
            "window_end": self.window_end,
            "dry_run": self.dry_run,
            "subjects_discovered": self.subjects_discovered,
            "subjects_processed": self.subjects_processed,
            "subjects_failed": self.subjects_failed,
            "rows_fetched": self.rows_fetched,
            "rows_rejected": self.rows_rejected,
            "duplicates_dropped": self.duplicates_dropped,
            "inserted": self.inserted,
            "updated": self.updated,
            "replaced": self.replaced,
            "skipped": self.skipped,
            "truncated_subjects": self.truncated_subjects,
            "failures": self.failures,
        }


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Backfill the trade ledger from the indexer")
    parser.add_argument(
        "--range",
        choices=sorted(RANGE_DAYS),
        default="ALL",
        help="Market lock-time window to backfill",
    )
    parser.add_argument(
        "--anchor",
        type=int,
        default=None,
        help="Window end in epoch seconds (defaults to the current UTC hour for D30/D90)",
    )
    parser.add_argument(
        "--leagues",
        type=str,
        default=",".join(settings.default_leagues),
        help="Comma-separated leagues to include",
    )
    parser.add_argument(
        "--subject",
        action="append",
        default=None,
        help="Backfill only this subject address (repeatable; skips discovery)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.backfill_concurrency,
        help="Subjects paged concurrently",
    )
    parser.add_argument(
        "--max-subjects",
        type=int,
        default=settings.backfill_max_subjects,
        help="Stop after this many subjects (0 = no limit)",
    )
    parser.add_argument(
        "--start-index",
        type=int,
        default=0,
        help="Skip the first N discovered subjects",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and normalize without persisting",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Write JSON summary to the specified path",
    )
    return parser.parse_args(argv)


def _resolve_window(args: argparse.Namespace) -> Window:
    anchor = args.anchor
    if anchor is None and args.range != "ALL":
        anchor = default_anchor()
    return window_for(args.range, anchor)


def backfill_subject(
    subject: str,
    *,
    leagues: Sequence[str],
    window: Window,
    client_factory: Callable[[], IndexerClient],
    session_factory: Callable[[], Session] | None,
    dry_run: bool = False,
) -> SubjectResult:
    with client_factory() as client:
        page = client.fetch_subject_activity(subject, leagues, window)

    result = SubjectResult(subject=subject, pages=page.pages, truncated=page.truncated)
    result.fetched = sum(len(rows) for rows in page.rows.values())
    batch = normalize_collections(page.rows, subject=subject)
    result.rejected = batch.rejected
    result.duplicates = batch.dropped_duplicates
    if dry_run or not batch.events:
        return result

    stats = persist_batch(batch.events, batch.markets.values(), session_factory=session_factory)
    result.inserted = stats.inserted
    result.updated = stats.updated
    result.replaced = stats.replaced
    result.skipped = stats.skipped
    return result


def run_backfill(
    args: argparse.Namespace,
    settings: Settings,
    *,
    client_factory: Callable[[], IndexerClient] | None = None,
    session_factory: Callable[[], Session] | None = None,
    init_db_fn: Callable[[], None] = init_db,
    now: datetime | None = None,
) -> BackfillSummary:
    if session_factory is None and not args.dry_run:
        init_db_fn()

    client_factory = client_factory or (
        lambda: IndexerClient(sleep_seconds=settings.backfill_sleep_seconds)
    )
    leagues = [league.strip().upper() for league in args.leagues.split(",") if league.strip()]
    window = _resolve_window(args)
    summary = BackfillSummary(
        run_id=str(uuid4()),
        started_at=now or datetime.now(timezone.utc),
        range=args.range,
        leagues=leagues,
        window_start=window.start,
        window_end=window.end,
        dry_run=bool(args.dry_run),
    )

    if args.subject:
        subjects = [subject.strip().lower() for subject in args.subject if subject.strip()]
    else:
        with client_factory() as client:
            subjects = client.discover_subjects(leagues, window)
    summary.subjects_discovered = len(subjects)

    subjects = subjects[max(0, args.start_index) :]
    if args.max_subjects:
        subjects = subjects[: args.max_subjects]

    logger.info(
        "Starting backfill: subjects={} range={} leagues={} concurrency={} dry_run={}",
        len(subjects),
        args.range,
        leagues,
        args.concurrency,
        args.dry_run,
    )

    with ThreadPoolExecutor(max_workers=max(1, args.concurrency), thread_name_prefix="backfill") as pool:
        futures = {
            pool.submit(
                backfill_subject,
                subject,
                leagues=leagues,
                window=window,
                client_factory=client_factory,
                session_factory=session_factory,
                dry_run=args.dry_run,
            ): subject
            for subject in subjects
        }
        for future in as_completed(futures):
            subject = futures[future]
            try:
                result = future.result()
            except (IndexerError, LedgerPersistenceError) as exc:
                logger.error("Backfill failed for {}: {}", subject, exc)
                summary.record_failure(subject, exc)
                continue
            summary.record(result)
            logger.info(
                "Backfilled {}: fetched={} inserted={} updated={} ({}/{})",
                subject,
                result.fetched,
                result.inserted,
                result.updated,
                summary.subjects_processed + summary.subjects_failed,
                len(subjects),
            )

    summary.finished_at = datetime.now(timezone.utc)
    logger.info(
        "Backfill finished: processed={} failed={} inserted={} updated={} replaced={}",
        summary.subjects_processed,
        summary.subjects_failed,
        summary.inserted,
        summary.updated,
        summary.replaced,
    )
    if args.summary_path:
        _write_summary(args.summary_path, summary)
    return summary


def _write_summary(path: Path, summary: BackfillSummary) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(summary.to_dict(), indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = get_settings()
    try:
        settings.validate_runtime()
    except ConfigurationError as exc:
        logger.error("Backfill cannot start: {}", exc)
        sys.exit(2)
    summary = run_backfill(args, settings)
    print(json.dumps(summary.to_dict(), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
