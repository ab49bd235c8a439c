"""Logging for the settlement service."""

from candyclash.monitoring.logging import get_logger, setup_logging

__all__ = ["get_logger", "setup_logging"]
