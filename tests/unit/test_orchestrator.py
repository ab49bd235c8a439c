"""Unit tests for the SettlementOrchestrator."""

from __future__ import annotations

import datetime
import threading
from decimal import Decimal

import pytest

from candyclash.errors import ConfigValidationError, PeriodNotFoundError, PeriodStateError
from candyclash.settlement.orchestrator import SettlementOrchestrator, settle_period
from candyclash.settlement.types import LeaderboardEntry, PeriodStatus, TransactionType
from candyclash.state.memory import InMemoryLedger

NOW = datetime.datetime(2025, 1, 16, 0, 0, tzinfo=datetime.UTC)
STANDARD = {
    "type": "percentage",
    "rules": [
        {"position": 1, "amount": 40, "type": "percentage"},
        {"position": 2, "amount": 25, "type": "percentage"},
        {"position": 3, "amount": 15, "type": "percentage"},
    ],
    "rake": 5,
    "minimumPlayers": 3,
}


def _ledger(players: int = 10, distribution: dict | None = STANDARD, rake_bps: int = 0) -> InMemoryLedger:
    """Ledger with one active period that *players* users entered once each."""
    ledger = InMemoryLedger()
    ledger.create_period(
        "p1",
        name="Daily",
        entry_fee=10,
        ends_at=NOW,
        prize_distribution=distribution,
        rake_bps=rake_bps,
    )
    for i in range(1, players + 1):
        ledger.create_user(f"u{i}", f"Player {i}", balance=10)
        ledger.record_entry("p1", f"u{i}", f"a{i}")
        ledger.record_result("p1", LeaderboardEntry(f"a{i}", f"u{i}", f"Player {i}", time_ms=i * 1000))
    return ledger


def _orchestrator(ledger: InMemoryLedger) -> SettlementOrchestrator:
    return SettlementOrchestrator(ledger, clock=lambda: NOW)


class TestSettle:
    def test_standard_payouts(self) -> None:
        ledger = _ledger()
        outcome = _orchestrator(ledger).settle("p1")

        assert outcome.closed is True
        assert outcome.already_closed is False
        assert outcome.refund is False
        assert outcome.rake == Decimal(5)
        assert [(p.user_id, p.amount) for p in outcome.payouts] == [("u1", 38), ("u2", 23), ("u3", 14)]
        assert ledger.get_user_balance("u1") == 38
        assert ledger.get_user_balance("u4") == 0
        assert ledger.is_period_closed("p1")

    def test_transactions_recorded(self) -> None:
        ledger = _ledger()
        _orchestrator(ledger).settle("p1")
        payouts = [t for t in ledger.get_transactions(period_id="p1") if t.type == TransactionType.PAYOUT]
        assert [t.idempotency_key for t in payouts] == ["payout:p1:u1:1", "payout:p1:u2:2", "payout:p1:u3:3"]
        meta = payouts[0].meta
        assert (meta["position"], meta["period_id"], meta["pot"], meta["refund"]) == (1, "p1", 100, False)
        assert Decimal(meta["rake"]) == 5

    def test_snapshot_written(self) -> None:
        ledger = _ledger()
        _orchestrator(ledger).settle("p1")
        period = ledger.get_period("p1")
        assert period is not None
        snapshot = period.snapshot
        assert snapshot is not None
        assert snapshot.final_pot == 100
        assert snapshot.net_pot == Decimal(95)
        assert snapshot.closed_at == NOW
        assert [w.user_id for w in snapshot.winners] == ["u1", "u2", "u3"]

    def test_player_stats_updated(self) -> None:
        ledger = _ledger()
        _orchestrator(ledger).settle("p1")
        stats = ledger.get_player_stats("u1")
        assert stats is not None
        assert stats.wins == 1
        assert stats.games_played == 1
        assert stats.net_gold_change == 28

    def test_refund(self) -> None:
        ledger = _ledger(players=2)
        outcome = _orchestrator(ledger).settle("p1")
        assert outcome.refund is True
        assert outcome.rake == Decimal(0)
        assert [p.amount for p in outcome.payouts] == [10, 10]
        assert ledger.get_user_balance("u1") == 10
        assert ledger.get_user_balance("u2") == 10
        refunds = ledger.get_transactions(period_id="p1")
        assert {t.type for t in refunds if t.amount > 0} == {TransactionType.REFUND}
        assert ledger.get_player_stats("u1").wins == 0

    def test_refund_covers_players_beyond_display_limit(self) -> None:
        ledger = _ledger(players=55, distribution={**STANDARD, "minimumPot": 10_000})
        assert len(ledger.get_leaderboard("p1")) == 50

        outcome = _orchestrator(ledger).settle("p1")

        assert outcome.refund is True
        assert len(outcome.payouts) == 55
        assert ledger.get_user_balance("u55") == 10
        assert all(ledger.get_user_balance(f"u{i}") == 10 for i in range(1, 56))

    def test_split_range_reaches_bottom_of_field(self) -> None:
        distribution = {
            "type": "percentage",
            "rules": [
                {"position": 1, "amount": 40, "type": "percentage"},
                {"range": [2, 999], "amount": 50, "type": "percentage", "split": True},
            ],
            "rake": 0,
        }
        ledger = _ledger(players=55, distribution=distribution)
        outcome = _orchestrator(ledger).settle("p1")

        assert len(outcome.payouts) == 55
        assert outcome.payouts[-1].position == 55
        assert ledger.get_user_balance("u55") == 5

    def test_empty_leaderboard(self) -> None:
        ledger = _ledger(players=0)
        outcome = _orchestrator(ledger).settle("p1")
        assert outcome.closed is True
        assert outcome.payouts == ()
        assert ledger.is_period_closed("p1")

    def test_zero_pot_with_results(self) -> None:
        ledger = InMemoryLedger()
        ledger.create_period("p1", name="Free", entry_fee=0)
        ledger.create_user("u1", "Solo")
        ledger.record_result("p1", LeaderboardEntry("a1", "u1", "Solo", 1000))
        outcome = _orchestrator(ledger).settle("p1")
        assert outcome.payouts == ()
        assert ledger.is_period_closed("p1")

    def test_legacy_distribution(self) -> None:
        ledger = _ledger(distribution={"1st": 50, "2nd": 30, "3rd": 20}, rake_bps=0)
        outcome = _orchestrator(ledger).settle("p1")
        assert [p.amount for p in outcome.payouts] == [50, 30, 20]
        assert outcome.rake == Decimal(0)

    def test_missing_distribution_uses_default(self) -> None:
        ledger = _ledger(distribution=None)
        outcome = _orchestrator(ledger).settle("p1")
        assert [p.amount for p in outcome.payouts] == [40, 25, 15]

    def test_invalid_config_leaves_period_active(self) -> None:
        bad = {"type": "percentage", "rules": [{"position": 1, "amount": 99, "type": "percentage"}], "rake": 5}
        ledger = _ledger(distribution=bad)
        with pytest.raises(ConfigValidationError):
            _orchestrator(ledger).settle("p1")
        assert not ledger.is_period_closed("p1")
        assert ledger.get_user_balance("u1") == 0

    def test_unknown_period(self) -> None:
        with pytest.raises(PeriodNotFoundError):
            _orchestrator(InMemoryLedger()).settle("nope")

    def test_draft_period(self) -> None:
        ledger = InMemoryLedger()
        ledger.create_period("p1", name="Draft", entry_fee=10, status=PeriodStatus.DRAFT)
        with pytest.raises(PeriodStateError):
            _orchestrator(ledger).settle("p1")

    def test_settle_period_function(self) -> None:
        ledger = _ledger()
        assert settle_period(ledger, "p1").closed is True


class TestPayoutWarnings:
    def test_missing_recipient_skipped(self) -> None:
        ledger = _ledger()
        # A result for an account that was never registered ranks second.
        ledger.record_result("p1", LeaderboardEntry("a-ghost", "ghost", "Ghost", time_ms=1500))
        outcome = _orchestrator(ledger).settle("p1")

        assert [(p.user_id, p.position) for p in outcome.payouts] == [("u1", 1), ("u2", 3)]
        assert len(outcome.warnings) == 1
        assert "ghost" in outcome.warnings[0]
        assert ledger.is_period_closed("p1")
        assert ledger.get_transactions(user_id="ghost") == []
        assert ledger.get_period("p1").snapshot.skipped == outcome.warnings

    def test_replayed_transaction_skipped(self) -> None:
        from candyclash.settlement.types import Transaction

        ledger = _ledger()
        ledger.append_transaction(
            Transaction("u1", "p1", TransactionType.PAYOUT, 38, idempotency_key="payout:p1:u1:1")
        )
        outcome = _orchestrator(ledger).settle("p1")
        assert [p.user_id for p in outcome.payouts] == ["u2", "u3"]
        assert ledger.get_user_balance("u1") == 0
        assert "already recorded" in outcome.warnings[0]


class TestIdempotence:
    def test_second_settle_is_noop(self) -> None:
        ledger = _ledger()
        orchestrator = _orchestrator(ledger)
        first = orchestrator.settle("p1")
        transactions = len(ledger.get_transactions())
        second = orchestrator.settle("p1")

        assert second.already_closed is True
        assert second.payouts == first.payouts
        assert second.snapshot == first.snapshot
        assert len(ledger.get_transactions()) == transactions
        assert ledger.get_user_balance("u1") == 38

    def test_concurrent_settle(self) -> None:
        ledger = _ledger()
        orchestrator = _orchestrator(ledger)
        outcomes = []
        errors = []
        barrier = threading.Barrier(8)

        def worker() -> None:
            barrier.wait()
            try:
                outcomes.append(orchestrator.settle("p1"))
            except Exception as exc:  # pragma: no cover
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sum(1 for o in outcomes if not o.already_closed) == 1
        assert ledger.get_user_balance("u1") == 38
        payouts = [t for t in ledger.get_transactions() if t.type == TransactionType.PAYOUT]
        assert len(payouts) == 3


class TestCloseExpired:
    def test_settles_expired_only(self) -> None:
        ledger = _ledger()
        ledger.create_period("later", name="Tomorrow", entry_fee=10, ends_at=NOW + datetime.timedelta(days=1))
        outcomes = _orchestrator(ledger).close_expired()

        assert [o.period_id for o in outcomes] == ["p1"]
        assert outcomes[0].snapshot is not None
        assert outcomes[0].snapshot.auto_closed is True
        assert not ledger.is_period_closed("later")

    def test_continues_past_failures(self) -> None:
        ledger = _ledger()
        bad = {"type": "percentage", "rules": [{"position": 1, "amount": 99, "type": "percentage"}], "rake": 5}
        ledger.create_period("bad", name="Broken", entry_fee=10, ends_at=NOW, prize_distribution=bad)
        ledger.create_user("x", "X", balance=10)
        ledger.record_entry("bad", "x", "ax")
        ledger.record_result("bad", LeaderboardEntry("ax", "x", "X", 1000))

        outcomes = _orchestrator(ledger).close_expired()
        assert [o.period_id for o in outcomes] == ["p1"]
        assert not ledger.is_period_closed("bad")

    def test_nothing_expired(self) -> None:
        ledger = _ledger()
        outcomes = _orchestrator(ledger).close_expired(now=NOW - datetime.timedelta(hours=1))
        assert outcomes == []
