"""Core app configuration, database and security."""

from threatpulse.core.config import get_settings, settings
from threatpulse.core.database import get_db

__all__ = ["get_settings", "settings", "get_db"]
