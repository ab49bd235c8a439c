"""Prize-pot settlement: rake, rule resolution and the settlement orchestrator."""

from candyclash.settlement.leaderboard import FULL_FIELD, rank_attempts
from candyclash.settlement.orchestrator import SettlementOrchestrator, settle_period
from candyclash.settlement.rake import RakeCalculator, calculate_rake
from candyclash.settlement.resolver import resolve_payouts, rule_amount
from candyclash.settlement.types import (
    ClosureSnapshot,
    LeaderboardEntry,
    Payout,
    PeriodRecord,
    PeriodStatus,
    PlayerStats,
    SettleOutcome,
    SettlementResult,
    Transaction,
    TransactionType,
)

__all__ = [
    "FULL_FIELD",
    "ClosureSnapshot",
    "LeaderboardEntry",
    "Payout",
    "PeriodRecord",
    "PeriodStatus",
    "PlayerStats",
    "RakeCalculator",
    "SettleOutcome",
    "SettlementOrchestrator",
    "SettlementResult",
    "Transaction",
    "TransactionType",
    "calculate_rake",
    "rank_attempts",
    "resolve_payouts",
    "rule_amount",
    "settle_period",
]
