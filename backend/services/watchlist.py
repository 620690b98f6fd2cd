"""SQLAlchemy-backed watchlist: which owner watches which address."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from interfaces.tracker_ports import Watcher
from models.database import AsyncSessionLocal, TrackedAddress
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("watchlist")


class SqlWatchlistStore:
    """``WatchlistStore`` over the ``tracked_addresses`` table.

    Addresses are stored checksummed; callers validate before writing.
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def distinct_addresses(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TrackedAddress.address).distinct().order_by(TrackedAddress.address)
            )
            return list(result.scalars().all())

    async def watchers_for(self, address: str) -> list[Watcher]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TrackedAddress)
                .where(TrackedAddress.address == address)
                .order_by(TrackedAddress.added_at, TrackedAddress.id)
            )
            return [Watcher(owner_id=row.owner_id, label=row.label) for row in result.scalars().all()]

    async def list_for_owner(self, owner_id: str) -> list[TrackedAddress]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TrackedAddress)
                .where(TrackedAddress.owner_id == str(owner_id))
                .order_by(TrackedAddress.added_at, TrackedAddress.id)
            )
            return list(result.scalars().all())

    async def count_for_owner(self, owner_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(TrackedAddress.id)).where(TrackedAddress.owner_id == str(owner_id))
            )
            return int(result.scalar() or 0)

    async def add(self, owner_id: str, address: str, label: Optional[str] = None) -> bool:
        """Add a watcher; False when the owner already watches ``address``"""
        async with self._session_factory() as session:
            session.add(
                TrackedAddress(
                    owner_id=str(owner_id),
                    address=address,
                    label=label,
                    added_at=utcnow(),
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        logger.info("Watcher added", owner_id=owner_id, address=address, label=label)
        return True

    async def remove(self, owner_id: str, address: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(TrackedAddress).where(
                    TrackedAddress.owner_id == str(owner_id),
                    TrackedAddress.address == address,
                )
            )
            await session.commit()
            removed = (result.rowcount or 0) > 0
        if removed:
            logger.info("Watcher removed", owner_id=owner_id, address=address)
        return removed

    async def resolve(self, owner_id: str, address_or_label: str) -> Optional[TrackedAddress]:
        """Find one of the owner's entries by address (any case) or label"""
        needle = str(address_or_label or "").strip()
        if not needle:
            return None
        for row in await self.list_for_owner(owner_id):
            if row.address.lower() == needle.lower():
                return row
            if row.label and row.label.lower() == needle.lower():
                return row
        return None

    async def is_watched(self, address: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(TrackedAddress.id)).where(TrackedAddress.address == address)
            )
            return int(result.scalar() or 0) > 0
