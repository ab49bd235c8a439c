"""Candy Clash prize-pot settlement engine."""

__version__ = "0.1.0"
