"""Unified configuration module.

Single source of truth for all configuration and settings.
"""

from .settings import (
    Settings,
    get_settings,
    DEFAULT_DIMENSIONS,
)

__all__ = [
    "Settings",
    "get_settings",
    "DEFAULT_DIMENSIONS",
]
