"""House rake calculation.

Rake types:

- ``fixed``:       rake = config.rake gold bars
- ``percentage``:  rake = pot * config.rake / 100
- ``progressive``: rake = pot * tier.rate / 100 for the first tier with
  min <= pot <= max (max=None is open-ended); falls back to the flat
  ``config.rake`` percentage when no tier matches or none are configured.

The result is NOT rounded. Payout amounts are floored once, at the end of
resolution, so rounding error does not compound.
"""

from __future__ import annotations

from decimal import Decimal

from candyclash.distribution.models import DistributionConfig, RakeTier, RakeType

_HUNDRED = Decimal(100)


def _dec(value: float | int | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class RakeCalculator:
    """Compute the house cut of a gross pot."""

    def select_tier(self, gross_pot: float | int | Decimal, config: DistributionConfig) -> RakeTier | None:
        """Return the progressive tier that applies to *gross_pot*, if any."""
        pot = _dec(gross_pot)
        for tier in config.rake_tiers:
            if tier.contains(pot):
                return tier
        return None

    def rake(self, gross_pot: float | int | Decimal, config: DistributionConfig) -> Decimal:
        """Compute the rake for *gross_pot* under *config*.

        Uses Decimal for exact arithmetic to avoid floating-point rounding issues.
        """
        pot = _dec(gross_pot)
        flat = _dec(config.rake)

        match config.rake_type:
            case RakeType.FIXED:
                return flat
            case RakeType.PERCENTAGE:
                return pot * flat / _HUNDRED
            case RakeType.PROGRESSIVE:
                tier = self.select_tier(pot, config)
                rate = _dec(tier.rate) if tier is not None else flat
                return pot * rate / _HUNDRED
        return Decimal(0)


def calculate_rake(gross_pot: float | int | Decimal, config: DistributionConfig) -> Decimal:
    """Module-level shortcut for :meth:`RakeCalculator.rake`."""
    return RakeCalculator().rake(gross_pot, config)
