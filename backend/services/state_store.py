"""SQLAlchemy-backed persistence of per-address engine state."""

from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from models.database import AddressState, AsyncSessionLocal
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("state_store")


class PersistenceError(Exception):
    """Writing or reading engine state failed."""

    pass


class SqlStateStore:
    """``StateStore`` over the ``address_states`` table"""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def load(self) -> dict[str, dict]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(AddressState))
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load address states: {e}") from e
        return {row.address: dict(row.state or {}) for row in rows}

    async def save(self, states: dict[str, dict]) -> None:
        if not states:
            return
        now = utcnow()
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AddressState).where(AddressState.address.in_(list(states)))
                )
                existing = {row.address: row for row in result.scalars().all()}
                for address, state in states.items():
                    row = existing.get(address)
                    if row is None:
                        session.add(AddressState(address=address, state=state, updated_at=now))
                    else:
                        row.state = state
                        row.updated_at = now
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save {len(states)} address states: {e}") from e

    async def delete(self, address: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(delete(AddressState).where(AddressState.address == address))
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete state for {address}: {e}") from e
