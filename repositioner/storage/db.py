"""
Database engine and session management.

PostgreSQL in production; SQLite is accepted for local runs and tests.
Includes connection-pool observability via SQLAlchemy pool events.
"""
import time
from contextlib import contextmanager
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import Pool, StaticPool

from repositioner.monitoring.logger import get_logger

logger = get_logger(__name__)
_pool_logger = get_logger("db.pool")

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Initialize database connection.

        Args:
            database_url: postgresql:// or sqlite:// connection string
        """
        if database_url.startswith("postgresql"):
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
                pool_timeout=30,
            )
            _register_pool_events(self.engine.pool)
        elif database_url.startswith("sqlite"):
            # In-memory SQLite must share one connection across threads
            kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(database_url, echo=False, **kwargs)
        else:
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Set DATABASE_URL to a postgresql:// connection string."
            )

        self.database_url = database_url
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @property
    def is_postgres(self) -> bool:
        return self.database_url.startswith("postgresql")

    def create_all(self):
        """Create all tables."""
        # ORM models must be imported so Base.metadata knows every table
        import repositioner.storage.repository  # noqa: F401

        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            error_str = str(e).lower()
            if "already exists" in error_str or "duplicate" in error_str:
                logger.debug("TABLES_ALREADY_EXIST", error=str(e))
                return
            logger.error("TABLE_CREATION_FAILED", error=str(e))
            raise

    def drop_all(self):
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Commits on clean exit, rolls back on any error.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def pool_status(self) -> Dict[str, Any]:
        """Snapshot of connection-pool health metrics (PostgreSQL only)."""
        if not self.is_postgres:
            return {}
        pool = self.engine.pool
        return {
            "pool_size": pool.size(),
            "checked_out": pool.checkedout(),
            "overflow": pool.overflow(),
            "checked_in": pool.checkedin(),
        }

    def dispose(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Connection-pool observability
# ---------------------------------------------------------------------------

def _register_pool_events(pool: Pool) -> None:
    """
    Attach SQLAlchemy pool event listeners for observability.

    Logs:
      - ``POOL_CHECKOUT``:   A connection was checked out.
      - ``POOL_CHECKIN``:    A connection was returned.
      - ``POOL_INVALIDATE``: A connection was invalidated (e.g. stale).
    """

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()
        _pool_logger.debug(
            "POOL_CHECKOUT",
            pool_size=pool.size(),
            checked_out=pool.checkedout(),
            overflow=pool.overflow(),
        )

    @event.listens_for(pool, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        checkout_time = connection_record.info.pop("checkout_time", None)
        held_ms = (
            round((time.monotonic() - checkout_time) * 1000, 1)
            if checkout_time is not None
            else None
        )
        _pool_logger.debug(
            "POOL_CHECKIN",
            held_ms=held_ms,
            pool_size=pool.size(),
            checked_out=pool.checkedout(),
        )

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning(
            "POOL_INVALIDATE",
            error=str(exception) if exception else None,
        )
