"""SQLAlchemy-backed :class:`Ledger`.

Each thread gets its own session for the duration of an outermost
``atomic()`` block; nested blocks map to SAVEPOINTs. Calls made outside any
unit of work open and commit a short one of their own.

Idempotency is enforced by the database: ``transactions.idempotency_key`` is
unique, and the closure compare-and-swap is a conditional
``UPDATE periods SET status = 'closed' WHERE id = ? AND status = 'active'``.
"""

from __future__ import annotations

import datetime
import threading
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from candyclash.errors import DuplicateTransactionError, PeriodNotFoundError, RecipientNotFoundError
from candyclash.settlement.leaderboard import rank_attempts
from candyclash.settlement.types import (
    ClosureSnapshot,
    LeaderboardEntry,
    PeriodRecord,
    PeriodStatus,
    PlayerStats,
    Transaction,
    TransactionType,
    utcnow,
)
from candyclash.state.ledger import Ledger
from candyclash.state.models import Attempt, LedgerTransaction, Period, PlayerStatsRow, User

logger = structlog.get_logger("candyclash.state.repository")


def _as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


def _to_period(row: Period) -> PeriodRecord:
    return PeriodRecord(
        period_id=row.id,
        name=row.name,
        status=PeriodStatus(row.status),
        entry_fee=row.entry_fee,
        pot=row.pot,
        starts_at=_as_utc(row.starts_at),
        ends_at=_as_utc(row.ends_at),
        prize_distribution=row.prize_distribution,
        rake_bps=row.rake_bps,
        snapshot=ClosureSnapshot.from_dict(row.snapshot) if row.snapshot else None,
    )


def _to_transaction(row: LedgerTransaction) -> Transaction:
    return Transaction(
        user_id=row.user_id,
        period_id=row.period_id,
        type=TransactionType(row.type),
        amount=row.amount,
        meta=dict(row.meta or {}),
        created_at=_as_utc(row.created_at) or utcnow(),
        idempotency_key=row.idempotency_key,
    )


class SqlLedger(Ledger):
    """Ledger persisted through a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker[Session], leaderboard_limit: int | None = 50) -> None:
        self._session_factory = session_factory
        self._leaderboard_limit = leaderboard_limit
        self._local = threading.local()

    # ── Units of work ─────────────────────────────────────────────────

    def _current(self) -> Session | None:
        return getattr(self._local, "session", None)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        session = self._current()
        if session is not None:
            with session.begin_nested():
                yield
            return

        session = self._session_factory()
        self._local.session = session
        try:
            with session.begin():
                yield
        finally:
            self._local.session = None
            session.close()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._current()
        if session is not None:
            yield session
            return
        with self.atomic():
            yield self._local.session

    def _require_period(self, session: Session, period_id: str, for_update: bool = False) -> Period:
        stmt = select(Period).where(Period.id == period_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = session.execute(stmt).scalar_one_or_none()
        if row is None:
            raise PeriodNotFoundError(period_id)
        return row

    # ── Periods ───────────────────────────────────────────────────────

    def create_period(
        self,
        period_id: str,
        *,
        name: str,
        entry_fee: int,
        starts_at: datetime.datetime | None = None,
        ends_at: datetime.datetime | None = None,
        prize_distribution: dict | None = None,
        rake_bps: int = 0,
        status: PeriodStatus = PeriodStatus.ACTIVE,
    ) -> PeriodRecord:
        if status == PeriodStatus.CLOSED:
            raise ValueError("Periods cannot be created closed")
        with self._session() as session:
            if session.get(Period, period_id) is not None:
                raise ValueError(f"Period already exists: {period_id}")
            row = Period(
                id=period_id,
                name=name,
                status=status.value,
                entry_fee=entry_fee,
                pot=0,
                starts_at=_as_utc(starts_at),
                ends_at=_as_utc(ends_at),
                prize_distribution=prize_distribution,
                rake_bps=rake_bps,
            )
            session.add(row)
            session.flush()
            return _to_period(row)

    def get_period(self, period_id: str) -> PeriodRecord | None:
        with self._session() as session:
            row = session.get(Period, period_id)
            return _to_period(row) if row is not None else None

    def lock_period(self, period_id: str) -> PeriodRecord | None:
        # On SQLite, FOR UPDATE is a no-op; the database-level write lock and
        # the conditional closing UPDATE still serialise concurrent closures.
        with self._session() as session:
            row = session.execute(select(Period).where(Period.id == period_id).with_for_update()).scalar_one_or_none()
            return _to_period(row) if row is not None else None

    def list_expired_periods(self, now: datetime.datetime) -> list[PeriodRecord]:
        cutoff = _as_utc(now)
        with self._session() as session:
            rows = session.execute(
                select(Period)
                .where(
                    Period.status == PeriodStatus.ACTIVE.value,
                    Period.ends_at.is_not(None),
                    Period.ends_at <= cutoff,
                )
                .order_by(Period.ends_at, Period.id)
            ).scalars()
            return [_to_period(row) for row in rows]

    def get_pot(self, period_id: str) -> int:
        with self._session() as session:
            return self._require_period(session, period_id).pot

    def get_leaderboard(self, period_id: str, limit: int | None = None) -> list[LeaderboardEntry]:
        with self._session() as session:
            rows = session.execute(
                select(Attempt).where(Attempt.period_id == period_id).order_by(Attempt.time_ms)
            ).scalars()
            attempts = [
                LeaderboardEntry(
                    attempt_id=row.id,
                    user_id=row.user_id,
                    display_name=row.display_name,
                    time_ms=row.time_ms,
                    completed_at=_as_utc(row.completed_at),
                )
                for row in rows
            ]
        return rank_attempts(attempts, limit=limit if limit is not None else self._leaderboard_limit)

    def record_result(self, period_id: str, entry: LeaderboardEntry) -> None:
        with self._session() as session:
            self._require_period(session, period_id)
            session.add(
                Attempt(
                    id=entry.attempt_id,
                    period_id=period_id,
                    user_id=entry.user_id,
                    display_name=entry.display_name or "Anonymous",
                    time_ms=entry.time_ms,
                    completed_at=_as_utc(entry.completed_at),
                )
            )
            session.flush()

    def mark_period_closed(self, period_id: str, snapshot: ClosureSnapshot) -> bool:
        with self._session() as session:
            result = session.execute(
                update(Period)
                .where(Period.id == period_id, Period.status == PeriodStatus.ACTIVE.value)
                .values(
                    status=PeriodStatus.CLOSED.value,
                    closed_at=_as_utc(snapshot.closed_at),
                    final_pot=snapshot.final_pot,
                    rake_collected=float(snapshot.rake_collected),
                    snapshot=snapshot.to_dict(),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            closed = result.rowcount == 1
            if closed:
                session.expire_all()
            else:
                logger.info("period_close_cas_lost", period_id=period_id)
            return closed

    def _mark_active(self, period_id: str) -> None:
        with self._session() as session:
            row = self._require_period(session, period_id, for_update=True)
            row.status = PeriodStatus.ACTIVE.value
            session.flush()

    def _add_to_pot(self, period_id: str, amount: int) -> None:
        with self._session() as session:
            row = self._require_period(session, period_id, for_update=True)
            row.pot += amount
            session.flush()

    # ── Users and balances ────────────────────────────────────────────

    def create_user(self, user_id: str, display_name: str, balance: int = 0) -> None:
        with self._session() as session:
            if session.get(User, user_id) is not None:
                raise ValueError(f"User already exists: {user_id}")
            session.add(User(id=user_id, display_name=display_name, gold_balance=balance))
            session.flush()

    def get_user_balance(self, user_id: str) -> int:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise RecipientNotFoundError(user_id)
            return user.gold_balance

    def _adjust_balance(self, user_id: str, delta: int) -> int:
        with self._session() as session:
            user = session.get(User, user_id, with_for_update=True)
            if user is None:
                raise RecipientNotFoundError(user_id)
            user.gold_balance += delta
            session.flush()
            return user.gold_balance

    def append_transaction(self, tx: Transaction) -> None:
        with self._session() as session:
            try:
                with session.begin_nested():
                    session.add(
                        LedgerTransaction(
                            user_id=tx.user_id,
                            period_id=tx.period_id,
                            type=tx.type.value,
                            amount=tx.amount,
                            meta=tx.meta,
                            idempotency_key=tx.idempotency_key,
                            created_at=_as_utc(tx.created_at),
                        )
                    )
                    session.flush()
            except IntegrityError as exc:
                raise DuplicateTransactionError(tx.idempotency_key or "") from exc

    def get_transactions(
        self,
        user_id: str | None = None,
        period_id: str | None = None,
    ) -> list[Transaction]:
        with self._session() as session:
            stmt = select(LedgerTransaction).order_by(LedgerTransaction.id)
            if user_id is not None:
                stmt = stmt.where(LedgerTransaction.user_id == user_id)
            if period_id is not None:
                stmt = stmt.where(LedgerTransaction.period_id == period_id)
            return [_to_transaction(row) for row in session.execute(stmt).scalars()]

    def update_player_stats(
        self,
        user_id: str,
        *,
        display_name: str | None = None,
        games: int = 0,
        wins: int = 0,
        gained: int = 0,
        lost: int = 0,
    ) -> None:
        with self._session() as session:
            row = session.get(PlayerStatsRow, user_id, with_for_update=True)
            if row is None:
                user = session.get(User, user_id)
                row = PlayerStatsRow(
                    user_id=user_id,
                    display_name=user.display_name if user is not None else "Anonymous",
                    games_played=0,
                    wins=0,
                    total_gold_gained=0,
                    total_gold_lost=0,
                )
                session.add(row)
            if display_name:
                row.display_name = display_name
            row.games_played += games
            row.wins += wins
            row.total_gold_gained += gained
            row.total_gold_lost += lost
            session.flush()

    def get_player_stats(self, user_id: str) -> PlayerStats | None:
        with self._session() as session:
            row = session.get(PlayerStatsRow, user_id)
            if row is None:
                return None
            return PlayerStats(
                user_id=row.user_id,
                display_name=row.display_name,
                games_played=row.games_played,
                wins=row.wins,
                total_gold_gained=row.total_gold_gained,
                total_gold_lost=row.total_gold_lost,
            )
