"""
SQLAlchemy engine and session scope for the credential tables.

PostgreSQL in production. SQLite is accepted for development and tests; it runs
on a single shared connection so ``sqlite:///:memory:`` keeps its tables
between sessions. Sessions on that connection are serialized, since the store
opens them from ``asyncio.to_thread`` workers.
"""
import threading
import time
from contextlib import contextmanager, nullcontext
from typing import Any, Dict, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from alphaforge.monitoring.logger import get_logger

logger = get_logger(__name__)

Base = declarative_base()

# Held connections longer than this are logged on checkin
SLOW_CHECKIN_MS = 5000.0


def _engine_options(database_url: str) -> Dict[str, Any]:
    if database_url.startswith("postgresql"):
        return {
            "pool_pre_ping": True,
            "pool_size": 10,
            "max_overflow": 20,
            "pool_recycle": 3600,
            "pool_timeout": 30,
        }
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    scheme = database_url.split(":", 1)[0]
    raise ValueError(
        f"Unsupported database scheme '{scheme}'; "
        "use postgresql:// (or sqlite:// for development) in DATABASE_URL"
    )


def _watch_pool(engine: Engine) -> None:
    @event.listens_for(engine.pool, "checkout")
    def _checkout(dbapi_connection, record, proxy):
        record.info["checked_out_at"] = time.monotonic()

    @event.listens_for(engine.pool, "checkin")
    def _checkin(dbapi_connection, record):
        started = record.info.pop("checked_out_at", None)
        if started is None:
            return
        held_ms = (time.monotonic() - started) * 1000
        if held_ms >= SLOW_CHECKIN_MS:
            logger.warning("Database connection held too long", held_ms=round(held_ms, 1))

    @event.listens_for(engine.pool, "invalidate")
    def _invalidate(dbapi_connection, record, exception):
        logger.warning("Database connection invalidated", error=str(exception) if exception else None)


class Database:
    """Owns the engine and hands out transactional sessions."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = create_engine(database_url, echo=False, **_engine_options(database_url))
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False)
        # One shared SQLite connection must not carry two transactions at once
        self._serial = threading.Lock() if database_url.startswith("sqlite") else None
        _watch_pool(self.engine)

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """Session that commits on clean exit and rolls back on any exception."""
        with self._serial or nullcontext():
            session = self.SessionLocal()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def create_all(self) -> None:
        # Importing the models registers their tables on Base.metadata
        import alphaforge.storage.credential_store  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


def init_db(database_url: str) -> Database:
    db = Database(database_url)
    db.create_all()
    return db
