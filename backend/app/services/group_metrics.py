"""Group metrics with time-bounded membership.

A member's activity counts for a group only for markets whose lock time falls
inside one of the member's ``[joined_at, left_at)`` intervals.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from loguru import logger

from app.core.config import settings
from app.domain import (
    IncludePredicate,
    LedgerBundle,
    MarketMeta,
    MembershipInterval,
    SubjectMetrics,
    Window,
)

from .aggregator import aggregate_subjects, rank_by_roi, sum_metrics

BundleLoader = Callable[[Sequence[str]], LedgerBundle]


def intervals_by_subject(
    intervals: Iterable[MembershipInterval],
) -> dict[str, list[MembershipInterval]]:
    grouped: dict[str, list[MembershipInterval]] = defaultdict(list)
    for interval in intervals:
        grouped[interval.subject.lower()].append(interval)
    for subject, items in grouped.items():
        items.sort(key=lambda item: item.joined_at)
        for previous, current in zip(items, items[1:]):
            if previous.overlaps(current):
                logger.warning(
                    "Overlapping membership intervals for {} in group {}: [{}, {}) and [{}, {})",
                    subject,
                    current.group_id,
                    previous.joined_at,
                    previous.left_at,
                    current.joined_at,
                    current.left_at,
                )
    return dict(grouped)


def build_inclusion_predicate(intervals: Iterable[MembershipInterval]) -> IncludePredicate:
    """Predicate true when the market's lock time lies in any of the subject's intervals."""

    by_subject = intervals_by_subject(intervals)

    def include(subject: str, market: MarketMeta) -> bool:
        if market.lock_time is None:
            return False
        return any(interval.covers(market.lock_time) for interval in by_subject.get(subject.lower(), ()))

    return include


def count_active_members(intervals: Iterable[MembershipInterval], anchor: int) -> int:
    return len({interval.subject.lower() for interval in intervals if interval.covers(anchor)})


def latest_interval(intervals: Sequence[MembershipInterval]) -> MembershipInterval | None:
    if not intervals:
        return None
    return max(intervals, key=lambda item: item.joined_at)


def _batched(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for index in range(0, len(items), size):
        yield items[index : index + size]


def group_member_metrics(
    intervals: Sequence[MembershipInterval],
    leagues: Iterable[str] | None,
    window: Window,
    load_bundle: BundleLoader,
    *,
    batch_size: int | None = None,
) -> dict[str, SubjectMetrics]:
    """Per-member metrics restricted to each member's intervals, computed in batches."""

    batch_size = batch_size or settings.group_member_batch_size
    include = build_inclusion_predicate(intervals)
    members = sorted({interval.subject.lower() for interval in intervals})
    leagues = list(leagues) if leagues is not None else None

    results: dict[str, SubjectMetrics] = {}
    for batch in _batched(members, batch_size):
        bundle = load_bundle(batch)
        results.update(aggregate_subjects(batch, leagues, window, bundle, include))
    return results


@dataclass(slots=True)
class GroupSummary:
    group_id: str
    slug: str
    name: str
    member_count: int
    active_members: int
    metrics: SubjectMetrics
    members: dict[str, SubjectMetrics] = field(default_factory=dict)


def group_metrics(
    group_id: str,
    slug: str,
    name: str,
    intervals: Sequence[MembershipInterval],
    leagues: Iterable[str] | None,
    window: Window,
    load_bundle: BundleLoader,
    *,
    anchor: int,
    batch_size: int | None = None,
) -> GroupSummary:
    members = group_member_metrics(intervals, leagues, window, load_bundle, batch_size=batch_size)
    return GroupSummary(
        group_id=group_id,
        slug=slug,
        name=name,
        member_count=len({interval.subject.lower() for interval in intervals}),
        active_members=count_active_members(intervals, anchor),
        metrics=sum_metrics(group_id, members.values()),
        members=members,
    )


def group_leaderboard(summaries: Iterable[GroupSummary]) -> list[GroupSummary]:
    """Groups ordered by ROI descending with ROI-less groups last."""

    summaries = list(summaries)
    ranked = rank_by_roi([summary.metrics for summary in summaries])
    by_id = {summary.group_id: summary for summary in summaries}
    return [by_id[metrics.subject] for metrics in ranked]


@dataclass(slots=True)
class MemberRow:
    subject: str
    metrics: SubjectMetrics
    joined_at: int
    left_at: int | None
    active: bool


def group_members(
    summary: GroupSummary,
    intervals: Sequence[MembershipInterval],
    *,
    anchor: int,
) -> list[MemberRow]:
    """Member rows ranked by ROI; each shows the member's latest interval."""

    by_subject = intervals_by_subject(intervals)
    ranked = rank_by_roi(list(summary.members.values()))
    rows: list[MemberRow] = []
    for metrics in ranked:
        member_intervals = by_subject.get(metrics.subject, [])
        latest = latest_interval(member_intervals)
        if latest is None:
            continue
        rows.append(
            MemberRow(
                subject=metrics.subject,
                metrics=metrics,
                joined_at=latest.joined_at,
                left_at=latest.left_at,
                active=any(interval.covers(anchor) for interval in member_intervals),
            )
        )
    return rows
