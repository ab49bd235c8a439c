"""SQLAlchemy ORM models for the settlement ledger."""

from __future__ import annotations

import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class Base(DeclarativeBase):
    pass


class User(Base):
    """A player account and its gold bar balance."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Anonymous")
    gold_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Period(Base):
    """One tournament period (a daily challenge) with its pot and closure snapshot."""

    __tablename__ = "periods"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)
    entry_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    pot: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    starts_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    prize_distribution: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    rake_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Written once, at closure.
    closed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    final_pot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rake_collected: Mapped[float | None] = mapped_column(Float, nullable=True)
    snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Attempt(Base):
    """A completed attempt submitted to a period's leaderboard."""

    __tablename__ = "attempts"
    __table_args__ = (Index("ix_attempts_period_time", "period_id", "time_ms"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    period_id: Mapped[str] = mapped_column(String(64), ForeignKey("periods.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Anonymous")
    time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LedgerTransaction(Base):
    """Append-only gold movement. ``idempotency_key`` is unique when set."""

    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("idempotency_key", name="uq_transactions_idempotency_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    period_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class PlayerStatsRow(Base):
    """All-time gold statistics per player."""

    __tablename__ = "player_stats"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Anonymous")
    games_played: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wins: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_gold_gained: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_gold_lost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
