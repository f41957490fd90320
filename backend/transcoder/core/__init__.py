"""Core module for configuration and utilities."""

from transcoder.core.config import settings

__all__ = [
    "settings",
]
