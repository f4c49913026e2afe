from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MarketRecord(Base):
    """One prediction market (a game); resolution fields only ever fill in."""

    __tablename__ = "markets"

    market_id: Mapped[str] = mapped_column(String, primary_key=True)
    league: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    lock_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    outcome_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    winning_outcome_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    winner_code: Mapped[str | None] = mapped_column(String, nullable=True)
    team_a_code: Mapped[str | None] = mapped_column(String, nullable=True)
    team_b_code: Mapped[str | None] = mapped_column(String, nullable=True)
    team_a_name: Mapped[str | None] = mapped_column(String, nullable=True)
    team_b_name: Mapped[str | None] = mapped_column(String, nullable=True)
    question: Mapped[str | None] = mapped_column(Text, nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class TradeEventRecord(Base):
    """Canonical ledger row. Money columns hold exact decimal strings."""

    __tablename__ = "trade_events"
    __table_args__ = (
        Index("ix_trade_events_subject_market", "subject", "market_id"),
        Index("ix_trade_events_subject_timestamp", "subject", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    dedup_key: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    subject: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String(8), nullable=False)
    outcome_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    outcome_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    spot_price_bps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    avg_price_bps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    shares: Mapped[str | None] = mapped_column(String, nullable=True)
    gross_in: Mapped[str] = mapped_column(String, nullable=False, default="0")
    gross_out: Mapped[str] = mapped_column(String, nullable=False, default="0")
    fee: Mapped[str] = mapped_column(String, nullable=False, default="0")
    net_stake: Mapped[str] = mapped_column(String, nullable=False, default="0")
    net_out: Mapped[str] = mapped_column(String, nullable=False, default="0")
    cost_basis_closed: Mapped[str] = mapped_column(String, nullable=False, default="0")
    realized_pnl: Mapped[str] = mapped_column(String, nullable=False, default="0")
    market_id: Mapped[str] = mapped_column(String, ForeignKey("markets.market_id"), nullable=False)
    league: Mapped[str | None] = mapped_column(String, nullable=True)
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    market: Mapped[MarketRecord] = relationship("MarketRecord")


class GroupRecord(Base):
    __tablename__ = "groups"

    group_id: Mapped[str] = mapped_column(String, primary_key=True)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    members: Mapped[list["GroupMemberRecord"]] = relationship(
        "GroupMemberRecord", back_populates="group", cascade="all, delete-orphan"
    )


class GroupMemberRecord(Base):
    """One membership interval; left_at NULL means the member is still active."""

    __tablename__ = "group_members"
    __table_args__ = (Index("ix_group_members_group_subject", "group_id", "subject"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(String, ForeignKey("groups.group_id"), nullable=False)
    subject: Mapped[str] = mapped_column(String, nullable=False)
    joined_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    left_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    group: Mapped[GroupRecord] = relationship("GroupRecord", back_populates="members")
