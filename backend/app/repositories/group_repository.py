"""Group and membership-interval persistence."""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.domain import MembershipInterval
from app.errors import GroupNotFoundError
from app.models import GroupMemberRecord, GroupRecord


def _to_interval(record: GroupMemberRecord) -> MembershipInterval:
    return MembershipInterval(
        group_id=record.group_id,
        subject=record.subject,
        joined_at=int(record.joined_at),
        left_at=int(record.left_at) if record.left_at is not None else None,
    )


class GroupRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_group(self, *, group_id: str, slug: str, name: str, bio: str | None = None) -> GroupRecord:
        record = GroupRecord(group_id=group_id, slug=slug.lower(), name=name, bio=bio)
        self._session.add(record)
        return record

    def get_group(self, slug_or_id: str) -> GroupRecord:
        record = self._session.get(GroupRecord, slug_or_id)
        if record is None:
            record = self._session.execute(
                select(GroupRecord).where(GroupRecord.slug == slug_or_id.lower())
            ).scalar_one_or_none()
        if record is None:
            raise GroupNotFoundError(f"group {slug_or_id!r} not found")
        return record

    def list_groups(self) -> list[GroupRecord]:
        return list(self._session.execute(select(GroupRecord).order_by(GroupRecord.slug)).scalars())

    def add_interval(
        self, group_id: str, subject: str, *, joined_at: int, left_at: int | None = None
    ) -> MembershipInterval:
        """Store a membership interval; intervals of one (group, subject) pair never overlap."""

        if left_at is not None and left_at < joined_at:
            raise ValueError("left_at must not precede joined_at")
        interval = MembershipInterval(
            group_id=group_id, subject=subject.lower(), joined_at=joined_at, left_at=left_at
        )
        for existing in self._pair_intervals(group_id, interval.subject):
            if interval.overlaps(existing):
                raise ValueError(
                    f"interval [{joined_at}, {left_at}) overlaps "
                    f"[{existing.joined_at}, {existing.left_at}) for {interval.subject} in {group_id}"
                )
        self._session.add(
            GroupMemberRecord(
                group_id=group_id, subject=interval.subject, joined_at=joined_at, left_at=left_at
            )
        )
        return interval

    def _pair_intervals(self, group_id: str, subject: str) -> list[MembershipInterval]:
        records = self._session.execute(
            select(GroupMemberRecord).where(
                GroupMemberRecord.group_id == group_id,
                GroupMemberRecord.subject == subject,
            )
        ).scalars()
        return [_to_interval(record) for record in records]

    def close_interval(self, group_id: str, subject: str, *, left_at: int) -> bool:
        """Set ``left_at`` on the subject's open interval; False when none is open."""

        record = self._session.execute(
            select(GroupMemberRecord)
            .where(
                GroupMemberRecord.group_id == group_id,
                GroupMemberRecord.subject == subject.lower(),
                GroupMemberRecord.left_at.is_(None),
            )
            .order_by(GroupMemberRecord.joined_at.desc())
        ).scalars().first()
        if record is None:
            return False
        if left_at < record.joined_at:
            raise ValueError("left_at must not precede joined_at")
        record.left_at = left_at
        return True

    def list_intervals(
        self, group_ids: Sequence[str] | None = None
    ) -> list[MembershipInterval]:
        query = select(GroupMemberRecord).order_by(
            GroupMemberRecord.group_id, GroupMemberRecord.subject, GroupMemberRecord.joined_at
        )
        if group_ids:
            query = query.where(GroupMemberRecord.group_id.in_(list(group_ids)))
        return [_to_interval(record) for record in self._session.execute(query).scalars()]
