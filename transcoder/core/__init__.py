"""Core module for configuration and utilities."""

from transcoder.core.config import Settings, settings
from transcoder.core.database import Base

__all__ = [
    "Settings",
    "settings",
    "Base",
]
