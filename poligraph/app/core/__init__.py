"""Core utilities for the Poligraph API."""

from poligraph.app.core.config import Settings, settings
from poligraph.app.core.logging import get_logger, setup_logging

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "setup_logging",
]
