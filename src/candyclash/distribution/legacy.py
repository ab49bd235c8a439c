"""Loading stored prize distributions, including the legacy format.

Periods created before rule-based distributions stored a bare percentage map
(``{"1st": 40, "2nd": 25, "3rd": 15}``) next to a ``rake_bps`` column. This
module is the only place that format is understood.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from candyclash.distribution.models import DistributionConfig
from candyclash.distribution.validation import ensure_valid, parse_distribution_config

LEGACY_KEYS = ("1st", "2nd", "3rd")

# Used when a period has no stored distribution at all.
DEFAULT_DISTRIBUTION = DistributionConfig.model_validate(
    {
        "type": "percentage",
        "rules": [
            {"position": 1, "amount": 40, "type": "percentage"},
            {"position": 2, "amount": 25, "type": "percentage"},
            {"position": 3, "amount": 15, "type": "percentage"},
        ],
        "rake": 0,
        "rake_type": "percentage",
        "minimum_players": 3,
        "refund_on_insufficient": True,
    }
)


def is_legacy_format(raw: Mapping[str, Any]) -> bool:
    return "type" not in raw and any(key in raw for key in LEGACY_KEYS)


def upconvert_legacy(raw: Mapping[str, Any], rake_bps: int = 0) -> DistributionConfig:
    """Convert a ``{"1st", "2nd", "3rd"}`` percentage map into a rule-based config."""
    rules = [
        {"position": position, "amount": raw[key], "type": "percentage"}
        for position, key in enumerate(LEGACY_KEYS, start=1)
        if raw.get(key)
    ]
    if not rules:
        return ensure_valid(DEFAULT_DISTRIBUTION.model_copy(update={"rake": rake_bps / 100}))
    return parse_distribution_config(
        {
            "type": "percentage",
            "rules": rules,
            "rake": rake_bps / 100,
            "rake_type": "percentage",
            "minimum_players": 3,
            "refund_on_insufficient": True,
        }
    )


def load_distribution_config(raw: Mapping[str, Any] | None, rake_bps: int = 0) -> DistributionConfig:
    """Turn whatever a period stored into a validated :class:`DistributionConfig`.

    ``None`` or an empty mapping falls back to :data:`DEFAULT_DISTRIBUTION`.
    Raises :class:`~candyclash.errors.ConfigValidationError` for anything that
    parses but does not validate.
    """
    if not raw:
        return ensure_valid(DEFAULT_DISTRIBUTION)
    if is_legacy_format(raw):
        return upconvert_legacy(raw, rake_bps=rake_bps)
    return parse_distribution_config(raw)
