"""Rule resolution: ranked leaderboard + distribution config -> payout plan.

``resolve_payouts`` is pure. Given the same leaderboard, config, pot and
entry fee it always returns the same :class:`SettlementResult`.

Resolution order
----------------
1. **minimum_players**: too few entries and ``refund_on_insufficient``:
   refund every entry its fee, no rake.
2. **rake**: computed on the gross pot; net pot = gross - rake. A fixed rake
   larger than the pot is an insufficient pot.
3. **minimum_pot**: net pot below the threshold: refund as in step 1.
4. **rules**: in declaration order. Each rule claims the ranks it targets
   that no earlier rule claimed; already-claimed ranks are skipped.
5. **maximum_payout**: each payout clamped to the cap. The surplus is not
   redistributed; it stays with the house.
6. Payouts sorted by position.

Amount per rank: ``floor((base + bonus) / split_count)`` where base is a
percentage of the net pot or a fixed amount capped by the sponsor fund.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import replace
from decimal import Decimal

import structlog

from candyclash.distribution.models import (
    AmountType,
    DistributionConfig,
    DistributionRule,
    PositionTarget,
    RangeTarget,
    TopPercentTarget,
)
from candyclash.settlement.rake import RakeCalculator
from candyclash.settlement.types import LeaderboardEntry, Payout, SettlementResult

logger = structlog.get_logger("candyclash.settlement.resolver")

_HUNDRED = Decimal(100)


def _dec(value: float | int | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _refund(leaderboard: Sequence[LeaderboardEntry], gross_pot: Decimal, entry_fee: int) -> SettlementResult:
    payouts = tuple(
        Payout(
            user_id=entry.user_id,
            display_name=entry.display_name,
            position=index,
            amount=entry_fee,
        )
        for index, entry in enumerate(leaderboard, start=1)
    )
    return SettlementResult(payouts=payouts, rake=Decimal(0), net_pot=gross_pot, refund=True)


def _split_count(rule: DistributionRule, claimed: int) -> int:
    match rule.target:
        case PositionTarget():
            return 1
        case RangeTarget():
            return claimed if rule.split else 1
        case TopPercentTarget():
            return claimed
    raise AssertionError(f"Unhandled rule target: {rule.target!r}")


def rule_amount(rule: DistributionRule, net_pot: Decimal, sponsor_fund: Decimal, split_count: int) -> int:
    """Gold bars paid to each rank claimed by *rule*."""
    if rule.type == AmountType.PERCENTAGE:
        base = net_pot * _dec(rule.amount) / _HUNDRED
    else:
        base = min(_dec(rule.amount), sponsor_fund)

    if rule.bonus is not None:
        bonus = _dec(rule.bonus)
        if rule.bonus_type == AmountType.PERCENTAGE:
            base += net_pot * bonus / _HUNDRED
        else:
            base += bonus

    return max(0, math.floor(base / split_count))


def _apply_rule(
    rule: DistributionRule,
    leaderboard: Sequence[LeaderboardEntry],
    net_pot: Decimal,
    sponsor_fund: Decimal,
    processed: set[int],
) -> list[Payout]:
    ranks = [rank for rank in rule.target.ranks(len(leaderboard)) if rank not in processed]
    if not ranks:
        return []
    # Claimed even when the resulting amount is zero.
    processed.update(ranks)

    split_count = _split_count(rule, len(ranks))
    amount = rule_amount(rule, net_pot, sponsor_fund, split_count)
    percentage = _dec(rule.amount) / split_count if rule.type == AmountType.PERCENTAGE else None

    return [
        Payout(
            user_id=leaderboard[rank - 1].user_id,
            display_name=leaderboard[rank - 1].display_name,
            position=rank,
            amount=amount,
            percentage=percentage,
        )
        for rank in ranks
    ]


def resolve_payouts(
    leaderboard: Sequence[LeaderboardEntry],
    config: DistributionConfig,
    gross_pot: float | int | Decimal,
    entry_fee: int,
    rake_calculator: RakeCalculator | None = None,
) -> SettlementResult:
    """Compute rake and per-rank payouts for a finished period.

    Args:
        leaderboard: De-duplicated entries sorted best (lowest time) first.
        config: A validated distribution config.
        gross_pot: Total entry fees collected, before rake.
        entry_fee: Fee refunded to each entry when the period is refunded.
        rake_calculator: Override for the default :class:`RakeCalculator`.

    Returns:
        SettlementResult with integer payouts sorted by position.
    """
    calculator = rake_calculator or RakeCalculator()
    pot = _dec(gross_pot)
    field_size = len(leaderboard)

    if field_size == 0 or pot <= 0:
        return SettlementResult(payouts=(), rake=Decimal(0), net_pot=max(pot, Decimal(0)), refund=False)

    if config.minimum_players is not None and field_size < config.minimum_players:
        if config.refund_on_insufficient:
            logger.debug("refund_insufficient_players", players=field_size, minimum=config.minimum_players)
            return _refund(leaderboard, pot, entry_fee)

    rake = calculator.rake(pot, config)
    if rake > pot:
        if config.refund_on_insufficient:
            logger.debug("refund_rake_exceeds_pot", pot=str(pot), rake=str(rake))
            return _refund(leaderboard, pot, entry_fee)
        rake = pot
    net_pot = pot - rake

    if config.minimum_pot is not None and net_pot < _dec(config.minimum_pot):
        if config.refund_on_insufficient:
            logger.debug("refund_insufficient_pot", net_pot=str(net_pot), minimum=config.minimum_pot)
            return _refund(leaderboard, pot, entry_fee)

    sponsor_fund = _dec(config.sponsor_fund_amount)
    processed: set[int] = set()
    payouts: list[Payout] = []
    for rule in config.rules:
        payouts.extend(_apply_rule(rule, leaderboard, net_pot, sponsor_fund, processed))

    if config.maximum_payout is not None:
        cap = math.floor(config.maximum_payout)
        payouts = [replace(p, amount=cap) if p.amount > cap else p for p in payouts]

    payouts.sort(key=lambda p: p.position)
    return SettlementResult(payouts=tuple(payouts), rake=rake, net_pot=net_pot, refund=False)
