"""Last known snapshot per tracked address, plus one lock per address."""

from __future__ import annotations

import asyncio
from typing import Optional

from models.positions import PositionSnapshot


class SnapshotRepository:
    def __init__(self):
        self._snapshots: dict[str, PositionSnapshot] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, address: str) -> asyncio.Lock:
        """Serializes every mutation of one address's state"""
        lock = self._locks.get(address)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[address] = lock
        return lock

    def get(self, address: str) -> Optional[PositionSnapshot]:
        return self._snapshots.get(address)

    def put(self, address: str, snapshot: PositionSnapshot):
        self._snapshots[address] = snapshot

    def has(self, address: str) -> bool:
        return address in self._snapshots

    def remove(self, address: str) -> Optional[PositionSnapshot]:
        # The lock stays so a waiter holding a reference still serializes.
        return self._snapshots.pop(address, None)

    def discard_lock(self, address: str):
        lock = self._locks.get(address)
        if lock is not None and not lock.locked():
            del self._locks[address]

    def addresses(self) -> list[str]:
        return list(self._snapshots)

    def __len__(self) -> int:
        return len(self._snapshots)

    def __contains__(self, address: str) -> bool:
        return address in self._snapshots
