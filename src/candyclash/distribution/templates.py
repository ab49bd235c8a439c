"""Named starting points for distribution configurations.

Templates are frozen. Authoring tools derive variants with
``template.config.model_copy(update={...})``; the shared instances here never
change.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType

from candyclash.distribution.models import DistributionConfig


@dataclass(frozen=True)
class DistributionTemplate:
    key: str
    name: str
    description: str
    config: DistributionConfig
    is_default: bool = False


def _template(key: str, name: str, description: str, config: dict, is_default: bool = False) -> DistributionTemplate:
    return DistributionTemplate(
        key=key,
        name=name,
        description=description,
        config=DistributionConfig.model_validate(config),
        is_default=is_default,
    )


DEFAULT_TEMPLATES: tuple[DistributionTemplate, ...] = (
    _template(
        "standard",
        "Standard Distribution",
        "Top 3 players win: 40%, 25%, 15%",
        {
            "type": "percentage",
            "rules": [
                {"position": 1, "amount": 40, "type": "percentage"},
                {"position": 2, "amount": 25, "type": "percentage"},
                {"position": 3, "amount": 15, "type": "percentage"},
            ],
            "rake": 5,
            "rake_type": "percentage",
            "minimum_players": 3,
            "refund_on_insufficient": True,
        },
        is_default=True,
    ),
    _template(
        "winner_takes_all",
        "Winner Takes All",
        "First place wins 95% of the pot",
        {
            "type": "percentage",
            "rules": [{"position": 1, "amount": 95, "type": "percentage"}],
            "rake": 5,
            "rake_type": "percentage",
            "minimum_players": 2,
            "refund_on_insufficient": True,
        },
    ),
    _template(
        "top_heavy",
        "Top Heavy",
        "Rewards excellence: 50%, 30%, 10%",
        {
            "type": "percentage",
            "rules": [
                {"position": 1, "amount": 50, "type": "percentage"},
                {"position": 2, "amount": 30, "type": "percentage"},
                {"position": 3, "amount": 10, "type": "percentage"},
            ],
            "rake": 10,
            "rake_type": "percentage",
            "minimum_players": 5,
            "refund_on_insufficient": True,
        },
    ),
    _template(
        "participation",
        "Participation Rewards",
        "Top 3 win big, everyone else shares remaining pot",
        {
            "type": "percentage",
            "rules": [
                {"position": 1, "amount": 30, "type": "percentage"},
                {"position": 2, "amount": 20, "type": "percentage"},
                {"position": 3, "amount": 15, "type": "percentage"},
                {"range": [4, 999], "amount": 30, "type": "percentage", "split": True},
            ],
            "rake": 5,
            "rake_type": "percentage",
            "minimum_players": 10,
            "refund_on_insufficient": True,
        },
    ),
)

TEMPLATES = MappingProxyType({t.key: t for t in DEFAULT_TEMPLATES})


def get_template(key: str) -> DistributionTemplate:
    """Look up a template by key (``standard``, ``winner_takes_all``, ...)."""
    try:
        return TEMPLATES[key]
    except KeyError:
        raise ValueError(f"Unknown distribution template: {key}. Must be one of {sorted(TEMPLATES)}") from None


def default_template() -> DistributionTemplate:
    return next(t for t in DEFAULT_TEMPLATES if t.is_default)
