from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    JSON,
    Index,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
import logging

from config import settings, ensure_data_dir
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== WATCHLIST ====================


class TrackedAddress(Base):
    """One owner watching one address"""

    __tablename__ = "tracked_addresses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False)
    address = Column(String, nullable=False)  # EIP-55 checksummed
    label = Column(String, nullable=True)
    added_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "address", name="uq_tracked_owner_address"),
        Index("idx_tracked_address", "address"),
        Index("idx_tracked_owner", "owner_id"),
    )


# ==================== ENGINE STATE ====================


class AddressState(Base):
    """Persisted snapshot and P&L state for one tracked address"""

    __tablename__ = "address_states"

    address = Column(String, primary_key=True)
    state = Column(JSON, nullable=False)  # {"snapshot": {...}, "pnl": {...}}
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for concurrent access (WAL mode, busy timeout)."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


async def init_database():
    """Create the data directory and any missing tables."""
    ensure_data_dir()
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized")
