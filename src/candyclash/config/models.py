"""Pydantic configuration models for the settlement service."""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from candyclash.distribution.models import DistributionConfig


class Environment(StrEnum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


class DatabaseConfig(BaseModel):
    """Database configuration."""

    url: str = "sqlite:///candyclash.db"
    echo: bool = False


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    json_output: bool = True
    log_dir: str = "logs"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid}")
        return upper


class SettlementConfig(BaseModel):
    """Period and settlement defaults."""

    default_entry_fee: int = Field(default=10, ge=0)
    leaderboard_limit: int = Field(default=50, gt=0)
    default_template: str = "standard"
    rake_bps: int = Field(default=0, ge=0, le=10_000)


class AppConfig(BaseModel):
    """Top-level application configuration."""

    environment: Environment = Environment.DEVELOPMENT
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    distributions: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        return cls.model_validate(data)

    def distribution(self, name: str | None = None) -> DistributionConfig:
        """Resolve a named distribution.

        Names under ``distributions`` win over built-in templates. With no
        name, ``settlement.default_template`` is used.
        """
        from candyclash.distribution.templates import get_template
        from candyclash.distribution.validation import parse_distribution_config

        key = name or self.settlement.default_template
        if key in self.distributions:
            return parse_distribution_config(self.distributions[key])
        return get_template(key).config
