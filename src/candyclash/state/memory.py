"""In-memory :class:`Ledger` used by tests and dry runs.

Every operation holds one re-entrant lock, so a unit of work opened with
:meth:`InMemoryLedger.atomic` runs in isolation from other threads. Each
``atomic()`` level keeps a copy of the state and restores it if the block
raises.
"""

from __future__ import annotations

import copy
import datetime
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace

from candyclash.errors import DuplicateTransactionError, PeriodNotFoundError, RecipientNotFoundError
from candyclash.settlement.leaderboard import rank_attempts
from candyclash.settlement.types import (
    ClosureSnapshot,
    LeaderboardEntry,
    PeriodRecord,
    PeriodStatus,
    PlayerStats,
    Transaction,
)
from candyclash.state.ledger import Ledger


@dataclass
class _User:
    user_id: str
    display_name: str
    balance: int = 0


@dataclass
class _State:
    users: dict[str, _User] = field(default_factory=dict)
    periods: dict[str, PeriodRecord] = field(default_factory=dict)
    attempts: dict[str, list[LeaderboardEntry]] = field(default_factory=dict)
    transactions: list[Transaction] = field(default_factory=list)
    keys: set[str] = field(default_factory=set)
    stats: dict[str, PlayerStats] = field(default_factory=dict)


class InMemoryLedger(Ledger):
    """Process-local ledger with savepoint semantics."""

    def __init__(self, leaderboard_limit: int | None = 50) -> None:
        self._lock = threading.RLock()
        self._state = _State()
        self._savepoints: list[_State] = []
        self._leaderboard_limit = leaderboard_limit

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            self._savepoints.append(copy.deepcopy(self._state))
            try:
                yield
            except BaseException:
                self._state = self._savepoints.pop()
                raise
            else:
                self._savepoints.pop()

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
        with self._lock:
            if period_id in self._state.periods:
                raise ValueError(f"Period already exists: {period_id}")
            period = PeriodRecord(
                period_id=period_id,
                name=name,
                status=status,
                entry_fee=entry_fee,
                pot=0,
                starts_at=starts_at,
                ends_at=ends_at,
                prize_distribution=copy.deepcopy(prize_distribution),
                rake_bps=rake_bps,
            )
            self._state.periods[period_id] = period
            return period

    def get_period(self, period_id: str) -> PeriodRecord | None:
        with self._lock:
            return self._state.periods.get(period_id)

    def lock_period(self, period_id: str) -> PeriodRecord | None:
        # The RLock already serialises the whole unit of work.
        return self.get_period(period_id)

    def list_expired_periods(self, now: datetime.datetime) -> list[PeriodRecord]:
        with self._lock:
            return sorted(
                (
                    p
                    for p in self._state.periods.values()
                    if p.status == PeriodStatus.ACTIVE and p.ends_at is not None and p.ends_at <= now
                ),
                key=lambda p: (p.ends_at, p.period_id),
            )

    def _require_period(self, period_id: str) -> PeriodRecord:
        period = self._state.periods.get(period_id)
        if period is None:
            raise PeriodNotFoundError(period_id)
        return period

    def get_pot(self, period_id: str) -> int:
        with self._lock:
            return self._require_period(period_id).pot

    def get_leaderboard(self, period_id: str, limit: int | None = None) -> list[LeaderboardEntry]:
        with self._lock:
            attempts = list(self._state.attempts.get(period_id, []))
        return rank_attempts(attempts, limit=limit if limit is not None else self._leaderboard_limit)

    def record_result(self, period_id: str, entry: LeaderboardEntry) -> None:
        with self._lock:
            self._require_period(period_id)
            self._state.attempts.setdefault(period_id, []).append(entry)

    def mark_period_closed(self, period_id: str, snapshot: ClosureSnapshot) -> bool:
        with self._lock:
            period = self._require_period(period_id)
            if period.status != PeriodStatus.ACTIVE:
                return False
            self._state.periods[period_id] = replace(period, status=PeriodStatus.CLOSED, snapshot=snapshot)
            return True

    def _mark_active(self, period_id: str) -> None:
        with self._lock:
            period = self._require_period(period_id)
            self._state.periods[period_id] = replace(period, status=PeriodStatus.ACTIVE)

    def _add_to_pot(self, period_id: str, amount: int) -> None:
        with self._lock:
            period = self._require_period(period_id)
            self._state.periods[period_id] = replace(period, pot=period.pot + amount)

    # ── Users and balances ────────────────────────────────────────────

    def create_user(self, user_id: str, display_name: str, balance: int = 0) -> None:
        with self._lock:
            if user_id in self._state.users:
                raise ValueError(f"User already exists: {user_id}")
            self._state.users[user_id] = _User(user_id=user_id, display_name=display_name, balance=balance)

    def get_user_balance(self, user_id: str) -> int:
        with self._lock:
            user = self._state.users.get(user_id)
            if user is None:
                raise RecipientNotFoundError(user_id)
            return user.balance

    def _adjust_balance(self, user_id: str, delta: int) -> int:
        with self._lock:
            user = self._state.users.get(user_id)
            if user is None:
                raise RecipientNotFoundError(user_id)
            user.balance += delta
            return user.balance

    def append_transaction(self, tx: Transaction) -> None:
        with self._lock:
            if tx.idempotency_key is not None:
                if tx.idempotency_key in self._state.keys:
                    raise DuplicateTransactionError(tx.idempotency_key)
                self._state.keys.add(tx.idempotency_key)
            self._state.transactions.append(tx)

    def get_transactions(
        self,
        user_id: str | None = None,
        period_id: str | None = None,
    ) -> list[Transaction]:
        with self._lock:
            return [
                tx
                for tx in self._state.transactions
                if (user_id is None or tx.user_id == user_id) and (period_id is None or tx.period_id == period_id)
            ]

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
        with self._lock:
            current = self._state.stats.get(user_id)
            if current is None:
                user = self._state.users.get(user_id)
                current = PlayerStats(user_id=user_id, display_name=user.display_name if user else "Anonymous")
            self._state.stats[user_id] = replace(
                current,
                display_name=display_name or current.display_name,
                games_played=current.games_played + games,
                wins=current.wins + wins,
                total_gold_gained=current.total_gold_gained + gained,
                total_gold_lost=current.total_gold_lost + lost,
            )

    def get_player_stats(self, user_id: str) -> PlayerStats | None:
        with self._lock:
            return self._state.stats.get(user_id)
