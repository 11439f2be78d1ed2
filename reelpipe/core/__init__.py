"""Core module for configuration and utilities."""

from reelpipe.core.config import settings
from reelpipe.core.database import Base, get_db

__all__ = [
    "settings",
    "Base",
    "get_db",
]
