"""Abstract ledger: the only way the settlement engine touches persistent state.

Two implementations ship with the package:

- :class:`~candyclash.state.memory.InMemoryLedger`: process-local, used by
  tests and dry runs.
- :class:`~candyclash.state.repository.SqlLedger`: SQLAlchemy-backed.

Both provide :meth:`Ledger.atomic`, a re-entrant unit of work. The outermost
block commits or rolls back as a whole; nested blocks behave as savepoints,
so one failed payout can be undone without abandoning the settlement.
"""

from __future__ import annotations

import abc
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING

from candyclash.distribution.legacy import load_distribution_config
from candyclash.errors import (
    InsufficientBalanceError,
    PeriodNotFoundError,
    PeriodStateError,
)
from candyclash.settlement.types import (
    LeaderboardEntry,
    PeriodRecord,
    PeriodStatus,
    Transaction,
    TransactionType,
)

if TYPE_CHECKING:
    import datetime

    from candyclash.distribution.models import DistributionConfig
    from candyclash.settlement.types import ClosureSnapshot, PlayerStats


class Ledger(abc.ABC):
    """Balances, periods, attempts and the append-only transaction log."""

    # ── Units of work ─────────────────────────────────────────────────

    @abc.abstractmethod
    def atomic(self) -> AbstractContextManager[None]:
        """Open (or nest into) a unit of work."""

    # ── Periods ───────────────────────────────────────────────────────

    @abc.abstractmethod
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
        """Create a period in ``draft`` or ``active`` state."""

    @abc.abstractmethod
    def get_period(self, period_id: str) -> PeriodRecord | None: ...

    @abc.abstractmethod
    def lock_period(self, period_id: str) -> PeriodRecord | None:
        """Read a period and hold it for the rest of the current unit of work."""

    @abc.abstractmethod
    def list_expired_periods(self, now: datetime.datetime) -> list[PeriodRecord]:
        """Active periods whose ``ends_at`` is at or before *now*."""

    @abc.abstractmethod
    def get_pot(self, period_id: str) -> int: ...

    @abc.abstractmethod
    def get_leaderboard(self, period_id: str, limit: int | None = None) -> list[LeaderboardEntry]:
        """Best attempt per player, fastest first.

        *limit* defaults to the ledger's display limit; pass
        :data:`~candyclash.settlement.leaderboard.FULL_FIELD` for every player.
        """

    @abc.abstractmethod
    def record_result(self, period_id: str, entry: LeaderboardEntry) -> None:
        """Store a completed attempt."""

    @abc.abstractmethod
    def mark_period_closed(self, period_id: str, snapshot: ClosureSnapshot) -> bool:
        """Compare-and-swap ``active -> closed``.

        Returns False, and changes nothing, when the period is not active.
        """

    @abc.abstractmethod
    def _mark_active(self, period_id: str) -> None: ...

    @abc.abstractmethod
    def _add_to_pot(self, period_id: str, amount: int) -> None: ...

    # ── Users and balances ────────────────────────────────────────────

    @abc.abstractmethod
    def create_user(self, user_id: str, display_name: str, balance: int = 0) -> None: ...

    @abc.abstractmethod
    def get_user_balance(self, user_id: str) -> int:
        """Raises :class:`RecipientNotFoundError` for an unknown user."""

    @abc.abstractmethod
    def _adjust_balance(self, user_id: str, delta: int) -> int:
        """Apply a signed balance change and return the new balance."""

    @abc.abstractmethod
    def append_transaction(self, tx: Transaction) -> None:
        """Append to the log; raises :class:`DuplicateTransactionError` on a reused key."""

    @abc.abstractmethod
    def get_transactions(
        self,
        user_id: str | None = None,
        period_id: str | None = None,
    ) -> list[Transaction]: ...

    @abc.abstractmethod
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
        """Increment cumulative stats, creating the row on first use.

        *display_name* refreshes the stored name; when omitted the user's
        registered name is used for a new row.
        """

    @abc.abstractmethod
    def get_player_stats(self, user_id: str) -> PlayerStats | None: ...

    # ── Shared behaviour ──────────────────────────────────────────────

    def is_period_closed(self, period_id: str) -> bool:
        period = self.get_period(period_id)
        if period is None:
            raise PeriodNotFoundError(period_id)
        return period.is_closed

    def get_distribution_config(self, period_id: str) -> DistributionConfig:
        """Load the period's config, upconverting the legacy percentage map."""
        period = self.get_period(period_id)
        if period is None:
            raise PeriodNotFoundError(period_id)
        return load_distribution_config(period.prize_distribution, rake_bps=period.rake_bps)

    def credit_user(self, user_id: str, amount: int) -> int:
        if amount < 0:
            raise ValueError(f"Credit amount must be >= 0, got {amount}")
        return self._adjust_balance(user_id, amount)

    def debit_user(self, user_id: str, amount: int) -> int:
        if amount < 0:
            raise ValueError(f"Debit amount must be >= 0, got {amount}")
        balance = self.get_user_balance(user_id)
        if balance < amount:
            raise InsufficientBalanceError(user_id, balance, amount)
        return self._adjust_balance(user_id, -amount)

    def record_winnings(self, user_id: str, amount: int, *, display_name: str | None = None, won: bool = False) -> None:
        """Fold a settlement credit into the player's cumulative stats."""
        self.update_player_stats(user_id, display_name=display_name, wins=1 if won else 0, gained=amount)

    def activate_period(self, period_id: str) -> PeriodRecord:
        """Move a draft period to active after validating its distribution config.

        Raises :class:`ConfigValidationError` and leaves the period in draft
        when the stored config is invalid.
        """
        with self.atomic():
            period = self.lock_period(period_id)
            if period is None:
                raise PeriodNotFoundError(period_id)
            if period.status != PeriodStatus.DRAFT:
                raise PeriodStateError(f"Period {period_id} is {period.status}, expected draft")
            load_distribution_config(period.prize_distribution, rake_bps=period.rake_bps)
            self._mark_active(period_id)
        activated = self.get_period(period_id)
        assert activated is not None
        return activated

    def record_entry(self, period_id: str, user_id: str, attempt_id: str) -> Transaction:
        """Charge the entry fee for one attempt and add it to the pot."""
        with self.atomic():
            period = self.lock_period(period_id)
            if period is None:
                raise PeriodNotFoundError(period_id)
            if period.status != PeriodStatus.ACTIVE:
                raise PeriodStateError(f"Period {period_id} is {period.status}, not accepting entries")

            self.debit_user(user_id, period.entry_fee)
            tx = Transaction(
                user_id=user_id,
                period_id=period_id,
                type=TransactionType.ENTRY_FEE,
                amount=-period.entry_fee,
                meta={"attempt_id": attempt_id},
                idempotency_key=f"{TransactionType.ENTRY_FEE.value}:{period_id}:{attempt_id}",
            )
            self.append_transaction(tx)
            self._add_to_pot(period_id, period.entry_fee)
            self.update_player_stats(user_id, games=1, lost=period.entry_fee)
        return tx

    def seed_pot(self, period_id: str, amount: int, *, sponsor_id: str) -> Transaction:
        """Move gold from a sponsor account into a period's pot."""
        with self.atomic():
            period = self.lock_period(period_id)
            if period is None:
                raise PeriodNotFoundError(period_id)
            if period.status != PeriodStatus.ACTIVE:
                raise PeriodStateError(f"Period {period_id} is {period.status}, cannot be seeded")

            self.debit_user(sponsor_id, amount)
            tx = Transaction(
                user_id=sponsor_id,
                period_id=period_id,
                type=TransactionType.SEED,
                amount=-amount,
                meta={"pot_before": period.pot},
            )
            self.append_transaction(tx)
            self._add_to_pot(period_id, amount)
        return tx
