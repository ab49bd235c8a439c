"""Pydantic models for prize distribution configuration.

A :class:`DistributionConfig` is the full settlement policy for one period:
the payout rules, the rake policy and the safety thresholds that decide
between paying winners and refunding everyone.

Each :class:`DistributionRule` targets exactly one slice of the ranking:

- ``PositionTarget``: a single rank (``{"position": 1}``)
- ``RangeTarget``: an inclusive rank range (``{"range": [4, 6]}``)
- ``TopPercentTarget``: the top N% of the field (``{"top_percent": 10}``)

Rules may be written in that flat shape or with an explicit ``target``
mapping; either way the target is resolved once, at construction.
"""

from __future__ import annotations

import math
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from candyclash.errors import InvalidRuleError

_TARGET_KEYS = ("position", "range", "top_percent")


class AmountType(StrEnum):
    """How a rule amount (or bonus) is interpreted."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


class DistributionType(StrEnum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    HYBRID = "hybrid"


class RakeType(StrEnum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    PROGRESSIVE = "progressive"


_CONFIG = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


# ── Rule targets ─────────────────────────────────────────────────────────


class PositionTarget(BaseModel):
    """A single leaderboard rank."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["position"] = "position"
    position: int = Field(gt=0)

    def ranks(self, field_size: int) -> range:
        if self.position > field_size:
            return range(0)
        return range(self.position, self.position + 1)


class RangeTarget(BaseModel):
    """An inclusive rank range, truncated to the size of the field."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["range"] = "range"
    start: int = Field(gt=0)
    end: int = Field(gt=0)

    @model_validator(mode="after")
    def _check_order(self) -> RangeTarget:
        if self.end < self.start:
            raise ValueError(f"Range end {self.end} is before start {self.start}")
        return self

    @property
    def width(self) -> int:
        return self.end - self.start + 1

    def overlaps(self, other: RangeTarget) -> bool:
        return self.start <= other.end and self.end >= other.start

    def ranks(self, field_size: int) -> range:
        return range(self.start, min(self.end, field_size) + 1)


class TopPercentTarget(BaseModel):
    """The top ``percent`` of the field; always at least one rank."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["top_percent"] = "top_percent"
    percent: float = Field(ge=0, le=100)

    def count(self, field_size: int) -> int:
        return max(1, math.floor(field_size * self.percent / 100))

    def ranks(self, field_size: int) -> range:
        return range(1, min(self.count(field_size), field_size) + 1)


RuleTarget = Annotated[
    PositionTarget | RangeTarget | TopPercentTarget,
    Field(discriminator="kind"),
]


def _flat_target(key: str, value: Any) -> dict[str, Any]:
    """Convert one flat target key into a tagged target mapping."""
    if key == "position":
        return {"kind": "position", "position": value}
    if key == "range":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise InvalidRuleError(f"Range must be [start, end], got {value!r}")
        return {"kind": "range", "start": value[0], "end": value[1]}
    return {"kind": "top_percent", "percent": value}


# ── Rules ────────────────────────────────────────────────────────────────


class DistributionRule(BaseModel):
    """One clause of a distribution configuration."""

    model_config = _CONFIG

    target: RuleTarget
    amount: float = Field(gt=0)
    type: AmountType
    split: bool = False
    bonus: float | None = None
    bonus_type: AmountType | None = None

    @model_validator(mode="before")
    @classmethod
    def _select_target(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "topPercent" in data:
            data["top_percent"] = data.pop("topPercent")

        flat = [key for key in _TARGET_KEYS if data.get(key) is not None]
        declared = len(flat) + (1 if data.get("target") is not None else 0)
        if declared != 1:
            raise InvalidRuleError("Must specify exactly one of: position, range, or top_percent")

        for key in _TARGET_KEYS:
            value = data.pop(key, None)
            if value is not None:
                data["target"] = _flat_target(key, value)
        return data

    @property
    def is_percentage(self) -> bool:
        return self.type == AmountType.PERCENTAGE

    def describe(self) -> str:
        """Short human-readable label for logs and CLI output."""
        match self.target:
            case PositionTarget(position=position):
                where = f"#{position}"
            case RangeTarget(start=start, end=end):
                where = f"#{start}-{end}" + (" split" if self.split else " each")
            case TopPercentTarget(percent=percent):
                where = f"top {percent:g}% split"
        unit = "%" if self.is_percentage else " bars"
        return f"{where}: {self.amount:g}{unit}"


class RakeTier(BaseModel):
    """One band of a progressive rake; ``max=None`` is the open-ended top tier."""

    model_config = _CONFIG

    min: float = Field(ge=0)
    max: float | None = Field(default=None, gt=0)
    rate: float = Field(ge=0, le=100)

    def contains(self, pot: Decimal) -> bool:
        if pot < Decimal(str(self.min)):
            return False
        return self.max is None or pot <= Decimal(str(self.max))


# ── Full configuration ───────────────────────────────────────────────────


class DistributionConfig(BaseModel):
    """Complete settlement policy for a period."""

    model_config = _CONFIG

    type: DistributionType
    rules: tuple[DistributionRule, ...] = Field(min_length=1)

    rake: float = Field(default=5, ge=0, le=100)
    rake_type: RakeType = RakeType.PERCENTAGE
    rake_tiers: tuple[RakeTier, ...] = ()

    minimum_pot: float | None = Field(default=None, ge=0)
    minimum_players: int | None = Field(default=None, gt=0)
    maximum_payout: float | None = Field(default=None, gt=0)

    sponsor_fund: float | None = Field(default=None, ge=0)

    refund_on_insufficient: bool = True

    @field_validator("rake_tiers", mode="before")
    @classmethod
    def _none_tiers(cls, v: Any) -> Any:
        return () if v is None else v

    @property
    def sponsor_fund_amount(self) -> float:
        return self.sponsor_fund or 0
