"""Configuration management for the settlement service."""

from candyclash.config.loader import load_config
from candyclash.config.models import AppConfig, Environment

__all__ = ["AppConfig", "Environment", "load_config"]
