"""
Tracker Commands

Caller-facing operations behind a chat or API front end. Every call passes
the rate gate first; address inputs are validated here and never reach the
core unchecked.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from config import settings
from models.positions import AccountOverview, PositionSnapshot
from services.pnl_aggregator import PnLSummary
from services.position_poller import PositionPoller
from services.watchlist import SqlWatchlistStore
from utils.logger import get_logger
from utils.rate_limiter import RateGate
from utils.validation import (
    InvalidAddressError,
    safe_checksum_address,
    validate_eth_address,
    validate_label,
)

logger = get_logger("tracker_commands")


class RateLimitedError(Exception):
    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        super().__init__("Too many requests. Please wait a minute before trying again.")


class WatchlistLimitError(Exception):
    def __init__(self, owner_id: str, limit: int):
        self.owner_id = owner_id
        self.limit = limit
        super().__init__(f"Address limit reached ({limit}). Remove one before adding another.")


class NotWatchedError(LookupError):
    pass


@dataclass
class WatchEntry:
    address: str
    label: Optional[str]
    added_at: Optional[datetime]


@dataclass
class WatchList:
    entries: list[WatchEntry]
    limit: Optional[int]  # None for privileged owners


@dataclass
class CheckResult:
    address: str
    label: Optional[str]
    snapshot: PositionSnapshot
    overview: AccountOverview
    summary: Optional[PnLSummary]


class TrackerCommands:
    def __init__(
        self,
        poller: PositionPoller,
        watchlist: SqlWatchlistStore,
        rate_gate: RateGate,
        max_addresses_per_owner: Optional[int] = None,
    ):
        self.poller = poller
        self.watchlist = watchlist
        self.rate_gate = rate_gate
        self.max_addresses_per_owner = (
            max_addresses_per_owner
            if max_addresses_per_owner is not None
            else settings.MAX_ADDRESSES_PER_OWNER
        )

    def _admit(self, owner_id: str):
        if not self.rate_gate.admit(owner_id):
            raise RateLimitedError(owner_id)

    def address_limit(self, owner_id: str) -> Optional[int]:
        if self.rate_gate.is_privileged(owner_id):
            return None
        return self.max_addresses_per_owner

    async def add(self, owner_id: str, address: str, label: Optional[str] = None) -> PositionSnapshot:
        """Start watching ``address`` for ``owner_id``.

        Raises:
            RateLimitedError, InvalidAddressError, WatchlistLimitError,
            ValueError (already watched), UnavailableError (initial fetch).
        """
        self._admit(owner_id)
        checksummed = validate_eth_address(address)
        clean_label = validate_label(label)

        limit = self.address_limit(owner_id)
        if limit is not None and await self.watchlist.count_for_owner(owner_id) >= limit:
            raise WatchlistLimitError(owner_id, limit)

        if not await self.watchlist.add(owner_id, checksummed, clean_label):
            raise ValueError(f"Already tracking {checksummed}")

        try:
            snapshot = await self.poller.track(checksummed)
        except Exception:
            # no watcher without seeded state
            await self.watchlist.remove(owner_id, checksummed)
            raise
        logger.info("Owner added address", owner_id=owner_id, address=checksummed, label=clean_label)
        return snapshot

    async def remove(self, owner_id: str, address_or_label: str) -> str:
        """Stop watching; returns the checksummed address that was removed"""
        self._admit(owner_id)
        entry = await self.watchlist.resolve(owner_id, address_or_label)
        if entry is None:
            raise NotWatchedError(f"Not tracking {address_or_label}")

        await self.watchlist.remove(owner_id, entry.address)
        await self.poller.untrack(entry.address)
        logger.info("Owner removed address", owner_id=owner_id, address=entry.address)
        return entry.address

    async def list(self, owner_id: str) -> WatchList:
        self._admit(owner_id)
        rows = await self.watchlist.list_for_owner(owner_id)
        return WatchList(
            entries=[WatchEntry(address=r.address, label=r.label, added_at=r.added_at) for r in rows],
            limit=self.address_limit(owner_id),
        )

    async def check(self, owner_id: str, address_or_label: str) -> CheckResult:
        """Live snapshot and analytics for a watched (or any valid) address"""
        self._admit(owner_id)
        entry = await self.watchlist.resolve(owner_id, address_or_label)
        if entry is not None:
            address, label = entry.address, entry.label
        else:
            address = safe_checksum_address(address_or_label)
            if address is None:
                raise InvalidAddressError(f"Not a tracked label or valid address: {address_or_label}")
            label = None

        snapshot = await self.poller.source.fetch_snapshot(address)
        return CheckResult(
            address=address,
            label=label,
            snapshot=snapshot,
            overview=AccountOverview.from_snapshot(snapshot),
            summary=self.poller.summary(address),
        )
