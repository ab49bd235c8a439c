"""Unit tests for the SqlLedger and settlement against SQLite."""

from __future__ import annotations

import datetime
import threading
from decimal import Decimal

import pytest

from candyclash.errors import (
    DuplicateTransactionError,
    InsufficientBalanceError,
    PeriodNotFoundError,
    RecipientNotFoundError,
)
from candyclash.settlement.orchestrator import SettlementOrchestrator
from candyclash.settlement.types import ClosureSnapshot, LeaderboardEntry, PeriodStatus, Transaction, TransactionType
from candyclash.state.database import create_db_engine, get_session_factory, init_db
from candyclash.state.models import User
from candyclash.state.repository import SqlLedger

NOW = datetime.datetime(2025, 1, 16, tzinfo=datetime.UTC)


def _ledger(url: str = "sqlite:///:memory:") -> SqlLedger:
    """Create a ledger backed by a SQLite database (in-memory by default)."""
    engine = create_db_engine(url)
    init_db(engine)
    return SqlLedger(get_session_factory(engine))


def _populated(players: int = 5, url: str = "sqlite:///:memory:") -> SqlLedger:
    ledger = _ledger(url)
    ledger.create_period("p1", name="Daily", entry_fee=10, ends_at=NOW)
    for i in range(1, players + 1):
        ledger.create_user(f"u{i}", f"Player {i}", balance=10)
        ledger.record_entry("p1", f"u{i}", f"a{i}")
        ledger.record_result("p1", LeaderboardEntry(f"a{i}", f"u{i}", f"Player {i}", time_ms=i * 1000))
    return ledger


class TestUsers:
    def test_create_and_balance(self) -> None:
        ledger = _ledger()
        ledger.create_user("u1", "Alice", balance=50)
        assert ledger.get_user_balance("u1") == 50
        assert ledger.credit_user("u1", 5) == 55
        assert ledger.debit_user("u1", 15) == 40

    def test_unknown_user(self) -> None:
        ledger = _ledger()
        with pytest.raises(RecipientNotFoundError):
            ledger.credit_user("ghost", 1)

    def test_insufficient_balance(self) -> None:
        ledger = _ledger()
        ledger.create_user("u1", "Alice", balance=5)
        with pytest.raises(InsufficientBalanceError):
            ledger.debit_user("u1", 10)


class TestPeriods:
    def test_round_trip_is_utc(self) -> None:
        ledger = _ledger()
        ledger.create_period("p1", name="Daily", entry_fee=10, ends_at=NOW, prize_distribution={"1st": 100})
        period = ledger.get_period("p1")
        assert period is not None
        assert period.ends_at == NOW
        assert period.ends_at.tzinfo is not None
        assert period.prize_distribution == {"1st": 100}
        assert period.status == PeriodStatus.ACTIVE

    def test_missing_period(self) -> None:
        ledger = _ledger()
        assert ledger.get_period("nope") is None
        with pytest.raises(PeriodNotFoundError):
            ledger.get_pot("nope")

    def test_list_expired(self) -> None:
        ledger = _ledger()
        ledger.create_period("old", name="Old", entry_fee=10, ends_at=NOW - datetime.timedelta(hours=1))
        ledger.create_period("new", name="New", entry_fee=10, ends_at=NOW + datetime.timedelta(hours=1))
        ledger.create_period("open", name="Open", entry_fee=10)
        assert [p.period_id for p in ledger.list_expired_periods(NOW)] == ["old"]

    def test_activate(self) -> None:
        ledger = _ledger()
        ledger.create_period("p1", name="Draft", entry_fee=10, status=PeriodStatus.DRAFT)
        assert ledger.activate_period("p1").status == PeriodStatus.ACTIVE

    def test_mark_closed_is_compare_and_swap(self) -> None:
        ledger = _ledger()
        ledger.create_period("p1", name="Daily", entry_fee=10)
        snapshot = ClosureSnapshot(
            final_pot=0,
            rake_collected=Decimal("2.5"),
            net_pot=Decimal(0),
            refund=False,
            winners=(),
            closed_at=NOW,
        )
        assert ledger.mark_period_closed("p1", snapshot) is True
        assert ledger.mark_period_closed("p1", snapshot) is False
        period = ledger.get_period("p1")
        assert period.is_closed
        assert period.snapshot == snapshot


class TestEntriesAndTransactions:
    def test_record_entry(self) -> None:
        ledger = _populated(players=1)
        assert ledger.get_pot("p1") == 10
        assert ledger.get_user_balance("u1") == 0
        [tx] = ledger.get_transactions(user_id="u1")
        assert tx.type == TransactionType.ENTRY_FEE
        assert tx.amount == -10
        assert tx.meta == {"attempt_id": "a1"}

    def test_duplicate_entry_rolled_back(self) -> None:
        ledger = _ledger()
        ledger.create_period("p1", name="Daily", entry_fee=10)
        ledger.create_user("u1", "Alice", balance=30)
        ledger.record_entry("p1", "u1", "a1")
        with pytest.raises(DuplicateTransactionError):
            ledger.record_entry("p1", "u1", "a1")
        assert ledger.get_user_balance("u1") == 20
        assert ledger.get_pot("p1") == 10

    def test_duplicate_key(self) -> None:
        ledger = _ledger()
        tx = Transaction("u1", "p1", TransactionType.PAYOUT, 5, idempotency_key="payout:p1:u1:1")
        ledger.append_transaction(tx)
        with pytest.raises(DuplicateTransactionError):
            ledger.append_transaction(tx)
        assert len(ledger.get_transactions()) == 1

    def test_leaderboard_best_attempt(self) -> None:
        ledger = _populated(players=2)
        ledger.record_result("p1", LeaderboardEntry("a3", "u2", "Player 2", time_ms=500))
        board = ledger.get_leaderboard("p1")
        assert [(e.user_id, e.attempt_id) for e in board] == [("u2", "a3"), ("u1", "a1")]

    def test_player_stats(self) -> None:
        ledger = _populated(players=1)
        stats = ledger.get_player_stats("u1")
        assert stats is not None
        assert (stats.display_name, stats.games_played, stats.total_gold_lost) == ("Player 1", 1, 10)


class TestSettlement:
    def test_settle_and_replay(self) -> None:
        ledger = _populated(players=5)
        orchestrator = SettlementOrchestrator(ledger, clock=lambda: NOW)

        outcome = orchestrator.settle("p1")
        assert [p.amount for p in outcome.payouts] == [20, 12, 7]
        assert ledger.get_user_balance("u1") == 20
        assert ledger.is_period_closed("p1")

        again = orchestrator.settle("p1")
        assert again.already_closed is True
        assert again.payouts == outcome.payouts
        assert ledger.get_user_balance("u1") == 20
        payouts = [t for t in ledger.get_transactions(period_id="p1") if t.type == TransactionType.PAYOUT]
        assert len(payouts) == 3

    def test_missing_recipient(self) -> None:
        ledger = _populated(players=5)
        with ledger._session_factory() as session:
            session.delete(session.get(User, "u2"))
            session.commit()

        outcome = SettlementOrchestrator(ledger, clock=lambda: NOW).settle("p1")
        assert [p.user_id for p in outcome.payouts] == ["u1", "u3"]
        assert len(outcome.warnings) == 1
        assert ledger.get_transactions(user_id="u2", period_id="p1")[-1].type == TransactionType.ENTRY_FEE
        assert ledger.get_period("p1").snapshot.skipped == outcome.warnings

    def test_refund(self) -> None:
        ledger = _populated(players=2)
        outcome = SettlementOrchestrator(ledger, clock=lambda: NOW).settle("p1")
        assert outcome.refund is True
        assert ledger.get_user_balance("u1") == 10
        assert ledger.get_user_balance("u2") == 10

    def test_sweep(self) -> None:
        ledger = _populated(players=3)
        outcomes = SettlementOrchestrator(ledger, clock=lambda: NOW).close_expired()
        assert [o.period_id for o in outcomes] == ["p1"]
        assert ledger.get_period("p1").snapshot.auto_closed is True


class TestConcurrentSettle:
    def test_file_backed_settle_race(self, tmp_path) -> None:
        ledger = _populated(players=5, url=f"sqlite:///{tmp_path / 'ledger.db'}")
        outcomes = []
        errors = []
        barrier = threading.Barrier(4)

        def worker() -> None:
            orchestrator = SettlementOrchestrator(ledger, clock=lambda: NOW)
            barrier.wait()
            try:
                outcomes.append(orchestrator.settle("p1"))
            except Exception as exc:  # pragma: no cover
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(outcomes) == 4
        assert sum(1 for o in outcomes if not o.already_closed) == 1
        assert all(o.closed for o in outcomes)
        assert ledger.get_user_balance("u1") == 20
        payouts = [t for t in ledger.get_transactions(period_id="p1") if t.type == TransactionType.PAYOUT]
        assert len(payouts) == 3
