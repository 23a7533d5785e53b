"""Persistence layer: ORM tables and session management."""
from .models import Base, utc_now
from .session import Database, create_engine_from_settings, enable_sqlite_foreign_keys

__all__ = ["Base", "Database", "create_engine_from_settings", "enable_sqlite_foreign_keys", "utc_now"]
