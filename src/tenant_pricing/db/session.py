"""
Database session management.

One SQLAlchemy engine (and its connection pool) per process, wrapped in a
``Database`` handle. All store access goes through ``session_scope()``.
"""
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from ..config.settings import Settings, get_settings
from ..errors import StoreUnavailableError
from .models import Base

logger = structlog.get_logger(__name__)


def create_engine_from_settings(settings: Optional[Settings] = None) -> Engine:
    """Build the engine with pool limits and a per-statement deadline."""
    settings = settings or get_settings()
    url = settings.database_url
    kwargs: dict = {"echo": settings.echo_sql, "pool_pre_ping": True}

    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = settings.pool_size
        kwargs["pool_timeout"] = settings.pool_timeout
        if url.startswith("postgresql") and settings.statement_timeout_ms > 0:
            kwargs["connect_args"] = {
                "options": f"-c statement_timeout={settings.statement_timeout_ms}"
            }

    engine = create_engine(url, **kwargs)
    if url.startswith("sqlite"):
        enable_sqlite_foreign_keys(engine)
    return engine


def enable_sqlite_foreign_keys(engine: Engine) -> None:
    """SQLite ignores FOREIGN KEY clauses unless enabled per connection."""

    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class Database:
    """Engine plus session factory shared by every service."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> 'Database':
        return cls(create_engine_from_settings(settings))

    def init_db(self) -> None:
        """Create all tables and indexes that do not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.info("database_initialized", url=self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def session_scope(self, session: Optional[Session] = None) -> Iterator[Session]:
        """
        Transactional scope around a series of operations.

        Commits on success, rolls back on error and always closes. When an
        existing ``session`` is passed the caller owns the transaction and
        this scope just hands it back, so nested service calls share one
        unit of work.
        """
        if session is not None:
            yield session
            return

        session = self.session_factory()
        try:
            yield session
            session.commit()
        except (OperationalError, DisconnectionError, PoolTimeoutError) as e:
            session.rollback()
            logger.error("store_unavailable", error=str(e))
            raise StoreUnavailableError(
                "Pricing store is unavailable", code="store_unavailable", details={"error": str(e)}
            ) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
