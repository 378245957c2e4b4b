"""
Database models and operations for the key registry.

Uses SQLAlchemy with SQLite. Only public key fingerprints are stored;
envelopes passing through the relay are never written anywhere.
"""

from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy import Column, DateTime, Integer, String, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from crypto.registry import KeyRegistration, fingerprint

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RegisteredKey(Base):
    """Current key for an identity"""
    __tablename__ = "registered_keys"

    id = Column(Integer, primary_key=True, index=True)
    identity = Column(String(100), unique=True, index=True, nullable=False)
    public_key = Column(String(130), nullable=False)  # P-256 uncompressed point (hex)
    fingerprint = Column(String(64), nullable=False)
    registered_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class KeyEvent(Base):
    """Append-only log of registrations"""
    __tablename__ = "key_events"

    id = Column(Integer, primary_key=True, index=True)
    identity = Column(String(100), index=True, nullable=False)
    fingerprint = Column(String(64), nullable=False)
    time = Column(DateTime(timezone=True), default=utcnow, nullable=False)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./cipherchat.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def is_registered(self, identity: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(
                select(RegisteredKey.id).where(RegisteredKey.identity == identity)
            )
            return result.scalar_one_or_none() is not None

    async def register_key(self, identity: str, public_key: bytes) -> KeyRegistration:
        """
        Store or replace the key for an identity and log the event.

        Args:
            identity: Registering identity
            public_key: Raw public key bytes

        Returns:
            The registration event
        """
        now = utcnow()
        key_fingerprint = fingerprint(public_key)

        async with self.async_session() as session:
            result = await session.execute(
                select(RegisteredKey).where(RegisteredKey.identity == identity)
            )
            record = result.scalar_one_or_none()

            if record:
                record.public_key = public_key.hex()
                record.fingerprint = key_fingerprint
                record.registered_at = now
            else:
                session.add(RegisteredKey(
                    identity=identity,
                    public_key=public_key.hex(),
                    fingerprint=key_fingerprint,
                    registered_at=now
                ))

            session.add(KeyEvent(identity=identity, fingerprint=key_fingerprint, time=now))
            await session.commit()

        return KeyRegistration(identity=identity, fingerprint=key_fingerprint, time=now)

    async def get_key(self, identity: str) -> Optional[KeyRegistration]:
        """
        Get the current registration for an identity.

        Returns:
            KeyRegistration or None if the identity never registered
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(RegisteredKey).where(RegisteredKey.identity == identity)
            )
            record = result.scalar_one_or_none()
            if not record:
                return None
            return KeyRegistration(
                identity=record.identity,
                fingerprint=record.fingerprint,
                time=_as_utc(record.registered_at)
            )

    async def list_events(self, identity: str) -> List[KeyRegistration]:
        """All registrations for an identity, oldest first"""
        async with self.async_session() as session:
            result = await session.execute(
                select(KeyEvent).where(KeyEvent.identity == identity).order_by(KeyEvent.id)
            )
            return [
                KeyRegistration(identity=e.identity, fingerprint=e.fingerprint, time=_as_utc(e.time))
                for e in result.scalars().all()
            ]
