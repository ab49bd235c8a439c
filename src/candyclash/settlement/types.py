"""Value types shared by the resolver, the orchestrator and the ledgers."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum
from typing import Any


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class PeriodStatus(StrEnum):
    """Lifecycle of a tournament period. ``closed`` is terminal."""

    DRAFT = "draft"
    ACTIVE = "active"
    CLOSED = "closed"


class TransactionType(StrEnum):
    ENTRY_FEE = "entry_fee"
    PAYOUT = "payout"
    REFUND = "refund"
    SEED = "seed"
    ADMIN_ADJUST = "admin_adjust"


@dataclass(frozen=True)
class LeaderboardEntry:
    """One participant's best result for a period. Rank comes from list order."""

    attempt_id: str
    user_id: str
    display_name: str
    time_ms: int
    completed_at: datetime.datetime | None = None


@dataclass(frozen=True)
class Payout:
    """A computed transfer to one ranked participant (or a refund)."""

    user_id: str
    display_name: str
    position: int
    amount: int
    percentage: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "position": self.position,
            "amount": self.amount,
            "percentage": None if self.percentage is None else str(self.percentage),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Payout:
        percentage = data.get("percentage")
        return cls(
            user_id=data["user_id"],
            display_name=data.get("display_name") or "Anonymous",
            position=int(data["position"]),
            amount=int(data["amount"]),
            percentage=None if percentage is None else Decimal(str(percentage)),
        )


@dataclass(frozen=True)
class SettlementResult:
    """Output of :func:`~candyclash.settlement.resolver.resolve_payouts`.

    When ``refund`` is true the payouts are entry-fee refunds, ``rake`` is 0
    and ``net_pot`` equals the gross pot.
    """

    payouts: tuple[Payout, ...]
    rake: Decimal
    net_pot: Decimal
    refund: bool

    @property
    def total_paid(self) -> int:
        return sum(p.amount for p in self.payouts)


def idempotency_key(tx_type: TransactionType, period_id: str, user_id: str, position: int) -> str:
    """Uniqueness key for a settlement transaction: one per user, period and rank."""
    return f"{tx_type.value}:{period_id}:{user_id}:{position}"


@dataclass(frozen=True)
class Transaction:
    """Append-only ledger record. ``amount`` is signed (entry fees are negative)."""

    user_id: str
    period_id: str
    type: TransactionType
    amount: int
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: datetime.datetime = field(default_factory=utcnow)
    idempotency_key: str | None = None


@dataclass(frozen=True)
class ClosureSnapshot:
    """Audit record written onto a period when it closes."""

    final_pot: int
    rake_collected: Decimal
    net_pot: Decimal
    refund: bool
    winners: tuple[Payout, ...]
    closed_at: datetime.datetime
    skipped: tuple[str, ...] = ()
    auto_closed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_pot": self.final_pot,
            "rake_collected": str(self.rake_collected),
            "net_pot": str(self.net_pot),
            "refund": self.refund,
            "winners": [w.to_dict() for w in self.winners],
            "closed_at": self.closed_at.isoformat(),
            "skipped": list(self.skipped),
            "auto_closed": self.auto_closed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClosureSnapshot:
        return cls(
            final_pot=int(data["final_pot"]),
            rake_collected=Decimal(str(data["rake_collected"])),
            net_pot=Decimal(str(data["net_pot"])),
            refund=bool(data["refund"]),
            winners=tuple(Payout.from_dict(w) for w in data.get("winners", [])),
            closed_at=datetime.datetime.fromisoformat(data["closed_at"]),
            skipped=tuple(data.get("skipped", [])),
            auto_closed=bool(data.get("auto_closed", False)),
        )


@dataclass(frozen=True)
class PeriodRecord:
    """A tournament period as seen by the orchestrator."""

    period_id: str
    name: str
    status: PeriodStatus
    entry_fee: int
    pot: int
    starts_at: datetime.datetime | None = None
    ends_at: datetime.datetime | None = None
    prize_distribution: dict[str, Any] | None = None
    rake_bps: int = 0
    snapshot: ClosureSnapshot | None = None

    @property
    def is_closed(self) -> bool:
        return self.status == PeriodStatus.CLOSED


@dataclass(frozen=True)
class PlayerStats:
    """Cumulative, all-time gold statistics for one player."""

    user_id: str
    display_name: str = "Anonymous"
    games_played: int = 0
    wins: int = 0
    total_gold_gained: int = 0
    total_gold_lost: int = 0

    @property
    def net_gold_change(self) -> int:
        return self.total_gold_gained - self.total_gold_lost


@dataclass(frozen=True)
class SettleOutcome:
    """What :meth:`SettlementOrchestrator.settle` reports back to its caller."""

    period_id: str
    closed: bool
    already_closed: bool = False
    refund: bool = False
    rake: Decimal = Decimal(0)
    payouts: tuple[Payout, ...] = ()
    warnings: tuple[str, ...] = ()
    snapshot: ClosureSnapshot | None = None
