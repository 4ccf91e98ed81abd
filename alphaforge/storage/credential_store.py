"""
Persistence for broker credentials and session tokens.

Provides the async CredentialStore protocol used by the session layer, a
SQLAlchemy-backed implementation (secrets encrypted at rest) and an in-memory
implementation for development and tests.
"""
import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from sqlalchemy import Column, DateTime, Integer, String, Text

from alphaforge.domain.models import BrokerSession, ensure_utc, utc_now
from alphaforge.monitoring.logger import get_logger
from alphaforge.storage.crypto import CredentialCipher, decrypt_optional, encrypt_optional
from alphaforge.storage.db import Base, Database

logger = get_logger(__name__)


class CredentialStore(Protocol):
    """Authoritative store of BrokerSession rows, keyed by user id."""

    async def get(self, user_id: str) -> Optional[BrokerSession]: ...

    async def put(self, session: BrokerSession) -> None: ...

    async def invalidate(self, user_id: str) -> None:
        """Clear the session token and expiry; credentials are kept."""
        ...

    async def delete(self, user_id: str) -> None: ...

    async def find_expired(self, now: datetime) -> List[str]:
        """User ids holding a token whose expiry is before ``now``."""
        ...


# ORM Models
class BrokerSessionModel(Base):
    """ORM model for a user's broker connection."""
    __tablename__ = "broker_sessions"

    user_id = Column(String(128), primary_key=True)
    api_key = Column(String(256), nullable=False)
    api_secret_enc = Column(Text, nullable=False)
    session_token_enc = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    auth_started_at = Column(DateTime(timezone=True), nullable=True)
    auth_failures = Column(Integer, nullable=False, default=0)
    connected_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class SqlCredentialStore:
    """
    SQLAlchemy CredentialStore.

    ORM calls are blocking; each operation is offloaded to a worker thread so
    the event loop never waits on the database.
    """

    def __init__(self, db: Database, cipher: CredentialCipher):
        self.db = db
        self.cipher = cipher

    async def get(self, user_id: str) -> Optional[BrokerSession]:
        return await asyncio.to_thread(self._get_sync, user_id)

    async def put(self, session: BrokerSession) -> None:
        await asyncio.to_thread(self._put_sync, session)

    async def invalidate(self, user_id: str) -> None:
        await asyncio.to_thread(self._invalidate_sync, user_id)

    async def delete(self, user_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, user_id)

    async def find_expired(self, now: datetime) -> List[str]:
        return await asyncio.to_thread(self._find_expired_sync, now)

    # -- blocking implementations -------------------------------------------

    def _to_domain(self, row: BrokerSessionModel) -> BrokerSession:
        return BrokerSession(
            user_id=row.user_id,
            api_key=row.api_key,
            api_secret=self.cipher.decrypt(row.api_secret_enc),
            session_token=decrypt_optional(self.cipher, row.session_token_enc),
            expires_at=row.expires_at,
            locked_until=row.locked_until,
            auth_started_at=row.auth_started_at,
            auth_failures=row.auth_failures or 0,
            connected_at=row.connected_at,
        )

    def _get_sync(self, user_id: str) -> Optional[BrokerSession]:
        with self.db.get_session() as session:
            row = session.get(BrokerSessionModel, user_id)
            if row is None:
                return None
            return self._to_domain(row)

    def _put_sync(self, value: BrokerSession) -> None:
        with self.db.get_session() as session:
            row = session.get(BrokerSessionModel, value.user_id)
            if row is None:
                row = BrokerSessionModel(user_id=value.user_id)
                session.add(row)
            row.api_key = value.api_key
            row.api_secret_enc = self.cipher.encrypt(value.api_secret)
            row.session_token_enc = encrypt_optional(self.cipher, value.session_token)
            row.expires_at = value.expires_at
            row.locked_until = value.locked_until
            row.auth_started_at = value.auth_started_at
            row.auth_failures = value.auth_failures
            row.connected_at = value.connected_at
            row.updated_at = utc_now()

    def _invalidate_sync(self, user_id: str) -> None:
        with self.db.get_session() as session:
            row = session.get(BrokerSessionModel, user_id)
            if row is None:
                return
            row.session_token_enc = None
            row.expires_at = None
            row.updated_at = utc_now()

    def _delete_sync(self, user_id: str) -> None:
        with self.db.get_session() as session:
            row = session.get(BrokerSessionModel, user_id)
            if row is not None:
                session.delete(row)

    def _find_expired_sync(self, now: datetime) -> List[str]:
        with self.db.get_session() as session:
            rows = (
                session.query(BrokerSessionModel)
                .filter(BrokerSessionModel.session_token_enc.isnot(None))
                .filter(BrokerSessionModel.expires_at.isnot(None))
                .all()
            )
            # Compare in Python: SQLite hands back naive datetimes
            return [row.user_id for row in rows if ensure_utc(row.expires_at) < now]


class InMemoryCredentialStore:
    """Dict-backed CredentialStore for development and tests."""

    def __init__(self, sessions: Optional[Dict[str, BrokerSession]] = None):
        self._rows: Dict[str, BrokerSession] = dict(sessions or {})
        self.reads = 0

    async def get(self, user_id: str) -> Optional[BrokerSession]:
        self.reads += 1
        return self._rows.get(user_id)

    async def put(self, session: BrokerSession) -> None:
        self._rows[session.user_id] = session

    async def invalidate(self, user_id: str) -> None:
        row = self._rows.get(user_id)
        if row is not None:
            self._rows[user_id] = row.evolve(session_token=None, expires_at=None)

    async def delete(self, user_id: str) -> None:
        self._rows.pop(user_id, None)

    async def find_expired(self, now: datetime) -> List[str]:
        return [
            user_id
            for user_id, row in self._rows.items()
            if row.session_token is not None and row.expires_at is not None and row.expires_at < now
        ]
