"""Settle a period against a :class:`~candyclash.state.ledger.Ledger`.

A settlement runs as a single unit of work:

1. lock the period (closed periods are a no-op returning the stored snapshot)
2. read the ranked leaderboard and the pot
3. load the distribution config and resolve the payout plan
4. apply each payout in its own savepoint, so a missing recipient or a
   replayed transaction only skips that payout
5. compare-and-swap the period from ``active`` to ``closed``

If the final compare-and-swap loses to a concurrent settlement, everything
this call wrote is rolled back and the winner's snapshot is reported instead.
"""

from __future__ import annotations

import datetime
from collections.abc import Callable
from decimal import Decimal
from typing import TYPE_CHECKING

import structlog

from candyclash.errors import (
    DuplicateTransactionError,
    PeriodNotFoundError,
    PeriodStateError,
    RecipientNotFoundError,
)
from candyclash.settlement.leaderboard import FULL_FIELD
from candyclash.settlement.resolver import resolve_payouts
from candyclash.settlement.types import (
    ClosureSnapshot,
    Payout,
    PeriodRecord,
    PeriodStatus,
    SettleOutcome,
    SettlementResult,
    Transaction,
    TransactionType,
    idempotency_key,
    utcnow,
)

if TYPE_CHECKING:
    from candyclash.state.ledger import Ledger

logger = structlog.get_logger("candyclash.settlement.orchestrator")

# Finishing in the top three counts as a win in player stats.
WIN_POSITIONS = 3


class _ClosureLost(Exception):
    """Raised inside the unit of work to roll it back after a lost CAS."""


def _noop_outcome(period: PeriodRecord) -> SettleOutcome:
    snapshot = period.snapshot
    return SettleOutcome(
        period_id=period.period_id,
        closed=True,
        already_closed=True,
        refund=snapshot.refund if snapshot else False,
        rake=snapshot.rake_collected if snapshot else Decimal(0),
        payouts=snapshot.winners if snapshot else (),
        warnings=snapshot.skipped if snapshot else (),
        snapshot=snapshot,
    )


class SettlementOrchestrator:
    """Drives period closure: resolve, apply exactly once, close.

    Usage::

        orchestrator = SettlementOrchestrator(ledger)
        outcome = orchestrator.settle("2025-01-15")
        outcomes = orchestrator.close_expired()
    """

    def __init__(self, ledger: Ledger, clock: Callable[[], datetime.datetime] | None = None) -> None:
        self._ledger = ledger
        self._clock = clock or utcnow

    def settle(self, period_id: str, *, auto_closed: bool = False) -> SettleOutcome:
        """Close *period_id* and credit its payouts.

        Raises:
            PeriodNotFoundError: Unknown period id.
            PeriodStateError: The period is still a draft.
            ConfigValidationError: The stored distribution config is invalid;
                the period is left active.
        """
        log = logger.bind(period_id=period_id)
        try:
            with self._ledger.atomic():
                period = self._ledger.lock_period(period_id)
                if period is None:
                    raise PeriodNotFoundError(period_id)
                if period.status == PeriodStatus.CLOSED:
                    log.info("settle_already_closed")
                    return _noop_outcome(period)
                if period.status != PeriodStatus.ACTIVE:
                    raise PeriodStateError(f"Period {period_id} is {period.status}, cannot be settled")

                result = self._resolve(period)
                applied, warnings = self._apply(period, result)

                snapshot = ClosureSnapshot(
                    final_pot=period.pot,
                    rake_collected=result.rake,
                    net_pot=result.net_pot,
                    refund=result.refund,
                    winners=tuple(applied),
                    closed_at=self._clock(),
                    skipped=tuple(warnings),
                    auto_closed=auto_closed,
                )
                if not self._ledger.mark_period_closed(period_id, snapshot):
                    raise _ClosureLost(period_id)
        except _ClosureLost:
            log.warning("settle_lost_race")
            closed = self._ledger.get_period(period_id)
            if closed is None:
                raise PeriodNotFoundError(period_id) from None
            return _noop_outcome(closed)

        log.info(
            "period_settled",
            pot=period.pot,
            rake=str(result.rake),
            refund=result.refund,
            payouts=len(applied),
            paid=sum(p.amount for p in applied),
            warnings=len(warnings),
            auto_closed=auto_closed,
        )
        return SettleOutcome(
            period_id=period_id,
            closed=True,
            refund=result.refund,
            rake=result.rake,
            payouts=tuple(applied),
            warnings=tuple(warnings),
            snapshot=snapshot,
        )

    def close_expired(self, now: datetime.datetime | None = None) -> list[SettleOutcome]:
        """Settle every active period whose end time has passed.

        A failure on one period is logged and does not stop the sweep.
        """
        now = now or self._clock()
        outcomes: list[SettleOutcome] = []
        expired = self._ledger.list_expired_periods(now)
        logger.info("sweep_started", expired=len(expired), now=now.isoformat())
        for period in expired:
            try:
                outcomes.append(self.settle(period.period_id, auto_closed=True))
            except Exception:
                logger.exception("sweep_settle_failed", period_id=period.period_id)
        logger.info("sweep_finished", settled=len(outcomes), failed=len(expired) - len(outcomes))
        return outcomes

    # ── Internals ─────────────────────────────────────────────────────

    def _resolve(self, period: PeriodRecord) -> SettlementResult:
        leaderboard = self._ledger.get_leaderboard(period.period_id, limit=FULL_FIELD)
        pot = self._ledger.get_pot(period.period_id)
        if not leaderboard or pot <= 0:
            logger.info("settle_nothing_to_pay", period_id=period.period_id, entries=len(leaderboard), pot=pot)
            return SettlementResult(payouts=(), rake=Decimal(0), net_pot=Decimal(pot), refund=False)

        config = self._ledger.get_distribution_config(period.period_id)
        return resolve_payouts(leaderboard, config, pot, period.entry_fee)

    def _apply(self, period: PeriodRecord, result: SettlementResult) -> tuple[list[Payout], list[str]]:
        tx_type = TransactionType.REFUND if result.refund else TransactionType.PAYOUT
        applied: list[Payout] = []
        warnings: list[str] = []

        for payout in result.payouts:
            if payout.amount <= 0:
                continue
            try:
                with self._ledger.atomic():
                    self._credit(period, result, payout, tx_type)
            except (RecipientNotFoundError, DuplicateTransactionError) as exc:
                logger.warning(
                    "payout_skipped",
                    period_id=period.period_id,
                    user_id=payout.user_id,
                    position=payout.position,
                    amount=payout.amount,
                    reason=str(exc),
                )
                warnings.append(f"Position {payout.position} ({payout.user_id}): {exc}")
                continue
            applied.append(payout)

        return applied, warnings

    def _credit(self, period: PeriodRecord, result: SettlementResult, payout: Payout, tx_type: TransactionType) -> None:
        self._ledger.append_transaction(
            Transaction(
                user_id=payout.user_id,
                period_id=period.period_id,
                type=tx_type,
                amount=payout.amount,
                meta={
                    "position": payout.position,
                    "period_id": period.period_id,
                    "pot": period.pot,
                    "rake": str(result.rake),
                    "refund": result.refund,
                },
                idempotency_key=idempotency_key(tx_type, period.period_id, payout.user_id, payout.position),
            )
        )
        self._ledger.credit_user(payout.user_id, payout.amount)
        self._ledger.record_winnings(
            payout.user_id,
            payout.amount,
            display_name=payout.display_name,
            won=not result.refund and payout.position <= WIN_POSITIONS,
        )


def settle_period(ledger: Ledger, period_id: str) -> SettleOutcome:
    """Settle one period with a default orchestrator."""
    return SettlementOrchestrator(ledger).settle(period_id)
