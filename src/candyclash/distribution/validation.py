"""Static validation of distribution configurations.

Structural problems (a rule with no target, a negative amount) are caught by
the pydantic models at construction. The checks here look across rules and
always report every violation found:

1. **percentage_total**: for ``percentage`` configs, position rules plus
   non-split ranges plus the effective percentage rake must fit in 100%.
   Split ranges and top-percent rules are excluded because their per-player
   share depends on the runtime field size.
2. **duplicate_position**: two rules paying the same rank.
3. **overlapping_ranges**: two range rules sharing a rank.
4. **position_in_range**: a position rule inside a range rule.
5. **sponsor_fund**: for ``fixed`` configs, guaranteed prizes must be
   covered by the sponsor fund.
6. **rake_tiers**: progressive tiers ordered by ``min``, disjoint,
   only the last one open-ended.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from candyclash.distribution.models import (
    AmountType,
    DistributionConfig,
    DistributionType,
    PositionTarget,
    RakeType,
    RangeTarget,
)
from candyclash.errors import ConfigValidationError


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of :func:`validate_config`."""

    valid: bool
    errors: list[str] = field(default_factory=list)


def _fmt(value: float) -> str:
    return f"{value:g}"


def effective_percentage_rake(config: DistributionConfig) -> float:
    """Worst-case rake as a percentage of the pot, for the static budget check."""
    if config.rake_type == RakeType.PERCENTAGE:
        return config.rake
    if config.rake_type == RakeType.PROGRESSIVE:
        if config.rake_tiers:
            return max(tier.rate for tier in config.rake_tiers)
        return config.rake
    return 0.0


def _check_percentage_total(config: DistributionConfig) -> list[str]:
    if config.type != DistributionType.PERCENTAGE:
        return []
    total = 0.0
    for rule in config.rules:
        if rule.type != AmountType.PERCENTAGE:
            continue
        if isinstance(rule.target, PositionTarget):
            total += rule.amount
        elif isinstance(rule.target, RangeTarget) and not rule.split:
            total += rule.amount * rule.target.width
    rake = effective_percentage_rake(config)
    if total + rake > 100:
        return [f"Total percentage exceeds 100% ({_fmt(total)}% payouts + {_fmt(rake)}% rake)"]
    return []


def _check_sponsor_fund(config: DistributionConfig) -> list[str]:
    if config.type != DistributionType.FIXED:
        return []
    total = 0.0
    for rule in config.rules:
        if rule.type != AmountType.FIXED:
            continue
        if isinstance(rule.target, PositionTarget):
            total += rule.amount
        elif isinstance(rule.target, RangeTarget) and not rule.split:
            total += rule.amount * rule.target.width
    fund = config.sponsor_fund_amount
    if total > fund:
        return [f"Total fixed payouts ({_fmt(total)}) exceed sponsor fund ({_fmt(fund)})"]
    return []


def _check_targets(config: DistributionConfig) -> list[str]:
    errors: list[str] = []
    positions: list[int] = []
    ranges: list[RangeTarget] = []

    for rule in config.rules:
        target = rule.target
        if isinstance(target, PositionTarget):
            if target.position in positions:
                errors.append(f"Duplicate position: {target.position}")
            else:
                positions.append(target.position)
        elif isinstance(target, RangeTarget):
            ranges.append(target)

    for i, first in enumerate(ranges):
        for second in ranges[i + 1 :]:
            if first.overlaps(second):
                errors.append(
                    f"Overlapping ranges: [{first.start}-{first.end}] and [{second.start}-{second.end}]"
                )

    for position in positions:
        for rng in ranges:
            if rng.start <= position <= rng.end:
                errors.append(f"Position {position} conflicts with range [{rng.start}-{rng.end}]")
    return errors


def _check_rake_tiers(config: DistributionConfig) -> list[str]:
    errors: list[str] = []
    tiers = config.rake_tiers
    for i, tier in enumerate(tiers):
        if tier.max is not None and tier.max < tier.min:
            errors.append(f"Rake tier {i + 1} max {_fmt(tier.max)} is below min {_fmt(tier.min)}")
        if i == 0:
            continue
        previous = tiers[i - 1]
        if tier.min < previous.min:
            errors.append(f"Rake tiers must be ordered by min (tier {i + 1} starts at {_fmt(tier.min)})")
        if previous.max is None:
            errors.append(f"Rake tier {i} is open-ended but is followed by tier {i + 1}")
        elif tier.min < previous.max:
            errors.append(
                f"Rake tiers {i} and {i + 1} overlap ({_fmt(previous.max)} > {_fmt(tier.min)})"
            )
    return errors


def validate_config(config: DistributionConfig) -> ValidationResult:
    """Run all cross-rule checks and collect every violation."""
    errors = [
        *_check_percentage_total(config),
        *_check_sponsor_fund(config),
        *_check_targets(config),
        *_check_rake_tiers(config),
    ]
    return ValidationResult(valid=not errors, errors=errors)


def ensure_valid(config: DistributionConfig) -> DistributionConfig:
    """Return *config* unchanged, or raise :class:`ConfigValidationError`."""
    result = validate_config(config)
    if not result.valid:
        raise ConfigValidationError(result.errors)
    return config


def parse_distribution_config(raw: Mapping[str, Any]) -> DistributionConfig:
    """Build and validate a config from a plain mapping (YAML, JSON, DB column)."""
    try:
        config = DistributionConfig.model_validate(dict(raw))
    except ValidationError as exc:
        errors = [f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in exc.errors()]
        raise ConfigValidationError(errors) from exc
    return ensure_valid(config)
