"""Prize distribution configuration: models, validation, templates."""

from candyclash.distribution.legacy import DEFAULT_DISTRIBUTION, load_distribution_config, upconvert_legacy
from candyclash.distribution.models import (
    AmountType,
    DistributionConfig,
    DistributionRule,
    DistributionType,
    PositionTarget,
    RakeTier,
    RakeType,
    RangeTarget,
    TopPercentTarget,
)
from candyclash.distribution.templates import DEFAULT_TEMPLATES, DistributionTemplate, get_template
from candyclash.distribution.validation import (
    ValidationResult,
    ensure_valid,
    parse_distribution_config,
    validate_config,
)

__all__ = [
    "DEFAULT_DISTRIBUTION",
    "DEFAULT_TEMPLATES",
    "AmountType",
    "DistributionConfig",
    "DistributionRule",
    "DistributionTemplate",
    "DistributionType",
    "PositionTarget",
    "RakeTier",
    "RakeType",
    "RangeTarget",
    "TopPercentTarget",
    "ValidationResult",
    "ensure_valid",
    "get_template",
    "load_distribution_config",
    "parse_distribution_config",
    "upconvert_legacy",
    "validate_config",
]
