"""
Position Poller

Drives one reconciliation cycle per interval:

    IDLE -> FETCHING_ALL -> DIFFING -> DISPATCHING -> IDLE

Each tracked address is fetched once per tick however many owners watch it.
Per-address failures are isolated; only failing to read the watchlist aborts
a tick. A failed fetch leaves the prior snapshot and P&L state untouched.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from config import settings
from interfaces.tracker_ports import (
    NotificationRequest,
    NotificationSink,
    StateStore,
    WatchlistStore,
)
from models.events import ChangeEvent, TradeMarker
from models.positions import PositionSnapshot
from services import diff_engine
from services.fetch_client import UnavailableError
from services.maintenance import MaintenanceService
from services.notifier import describe_change
from services.pnl_aggregator import PnLAggregator, PnLSummary
from services.positions_source import PositionsSource
from services.snapshot_repository import SnapshotRepository
from services.state_store import PersistenceError
from services.trade_ledger import TradeEventLedger
from utils.logger import poller_logger as logger
from utils.utcnow import utcnow


class TickPhase(str, enum.Enum):
    IDLE = "idle"
    FETCHING_ALL = "fetching_all"
    DIFFING = "diffing"
    DISPATCHING = "dispatching"


@dataclass
class TickReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    addresses: int = 0
    fetched: int = 0
    failed: list[str] = field(default_factory=list)
    first_observations: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    events: int = 0
    notifications: int = 0
    sink_failures: int = 0
    persisted: bool = False
    maintenance: Optional[dict] = None


@dataclass
class _PendingUpdate:
    address: str
    events: list[ChangeEvent]
    markers: dict[str, list[TradeMarker]]


class PositionPoller:
    def __init__(
        self,
        source: PositionsSource,
        watchlist: WatchlistStore,
        sink: NotificationSink,
        snapshots: Optional[SnapshotRepository] = None,
        aggregator: Optional[PnLAggregator] = None,
        ledger: Optional[TradeEventLedger] = None,
        state_store: Optional[StateStore] = None,
        maintenance: Optional[MaintenanceService] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.source = source
        self.watchlist = watchlist
        self.sink = sink
        self.snapshots = snapshots or SnapshotRepository()
        self.aggregator = aggregator or PnLAggregator()
        self.ledger = ledger or TradeEventLedger()
        self.state_store = state_store
        self.maintenance = maintenance
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else settings.CHECK_INTERVAL_SECONDS
        )

        self._phase = TickPhase.IDLE
        self._tick_lock = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[TickReport] = None
        self._tick_count = 0

    @property
    def phase(self) -> TickPhase:
        return self._phase

    # ==================== TICK ====================

    async def tick(self) -> TickReport:
        """Run one full cycle; concurrent callers wait for the running one"""
        async with self._tick_lock:
            report = TickReport(started_at=utcnow())
            try:
                addresses = await self.watchlist.distinct_addresses()
                report.addresses = len(addresses)
                report.removed = await self._drop_unwatched(set(addresses))

                self._phase = TickPhase.FETCHING_ALL
                results = await asyncio.gather(
                    *(self.source.fetch_snapshot(address) for address in addresses),
                    return_exceptions=True,
                )

                self._phase = TickPhase.DIFFING
                pending: list[_PendingUpdate] = []
                for address, result in zip(addresses, results):
                    if isinstance(result, BaseException):
                        self._log_fetch_failure(address, result)
                        report.failed.append(address)
                        continue
                    report.fetched += 1
                    update = await self._reconcile(address, result, report)
                    if update is not None:
                        pending.append(update)

                self._phase = TickPhase.DISPATCHING
                for update in pending:
                    await self._dispatch(update, report)

                report.persisted = await self.persist()

                if self.maintenance is not None:
                    report.maintenance = self.maintenance.run_if_due()
            finally:
                self._phase = TickPhase.IDLE
                report.finished_at = utcnow()

            self._tick_count += 1
            self.last_report = report
            logger.info(
                "Tick complete",
                addresses=report.addresses,
                fetched=report.fetched,
                failed=len(report.failed),
                first_observations=len(report.first_observations),
                events=report.events,
                notifications=report.notifications,
                persisted=report.persisted,
            )
            return report

    def _log_fetch_failure(self, address: str, error: BaseException):
        if isinstance(error, UnavailableError):
            logger.warning("Snapshot unavailable, keeping prior state", address=address, error=str(error))
        else:
            logger.error(
                "Snapshot fetch failed, keeping prior state",
                address=address,
                error=str(error),
                error_type=type(error).__name__,
            )

    async def _reconcile(
        self, address: str, snapshot: PositionSnapshot, report: TickReport
    ) -> Optional[_PendingUpdate]:
        """Diff against the prior snapshot and fold the result into the stores"""
        async with self.snapshots.lock_for(address):
            old = self.snapshots.get(address)
            if old is None:
                # First look at this address: seed, never diff.
                self.snapshots.put(address, snapshot)
                self.aggregator.start_tracking(address, snapshot, at=snapshot.fetched_at)
                report.first_observations.append(address)
                return None

            events = diff_engine.compute(old, snapshot)
            # Stores and snapshot advance together, before any await.
            self.aggregator.apply_diff(address, old, snapshot, events, at=snapshot.fetched_at)
            for event in events:
                self.ledger.record(address, event, at=snapshot.fetched_at)
            self.snapshots.put(address, snapshot)
            if not events:
                return None

            markers: dict[str, list[TradeMarker]] = {}
            for event in events:
                markers[event.symbol] = self.ledger.recent_events(address, event.symbol)
            report.events += len(events)
            return _PendingUpdate(address=address, events=events, markers=markers)

    async def _dispatch(self, update: _PendingUpdate, report: TickReport):
        """Deliver notifications only; all state was advanced in ``_reconcile``"""
        address = update.address
        log = logger.with_context(address=address)
        if not self.snapshots.has(address):
            # Untracked while this tick was running.
            return

        try:
            watchers = tuple(await self.watchlist.watchers_for(address))
        except Exception as e:
            log.error("Failed to load watchers", error=str(e))
            return
        if not watchers:
            return

        for event in update.events:
            request = NotificationRequest(
                address=address,
                watchers=watchers,
                event=event,
                description=describe_change(event),
                reference_price=event.reference_position.entry_price,
                markers=list(update.markers.get(event.symbol, [])),
            )
            try:
                await self.sink.dispatch(request)
                report.notifications += 1
            except Exception as e:
                report.sink_failures += 1
                log.error("Notification dispatch failed", symbol=event.symbol, error=str(e))

    # ==================== TRACKING LIFECYCLE ====================

    async def track(self, address: str) -> PositionSnapshot:
        """Seed state for ``address`` from a fresh fetch if it has none.

        Raises:
            UnavailableError: the initial fetch failed; nothing is seeded.
        """
        async with self.snapshots.lock_for(address):
            existing = self.snapshots.get(address)
            if existing is not None:
                return existing
            snapshot = await self.source.fetch_snapshot(address)
            self.snapshots.put(address, snapshot)
            self.aggregator.start_tracking(address, snapshot, at=snapshot.fetched_at)

        await self.persist([address])
        logger.info("Address tracked", address=address, positions=len(snapshot.positions))
        return snapshot

    async def untrack(self, address: str) -> bool:
        """Destroy state for ``address`` unless someone still watches it"""
        if await self.watchlist.watchers_for(address):
            return False
        async with self.snapshots.lock_for(address):
            destroyed = await self._destroy(address)
        self.snapshots.discard_lock(address)
        return destroyed

    async def _destroy(self, address: str) -> bool:
        had_state = self.snapshots.remove(address) is not None
        had_state = self.aggregator.forget(address) or had_state
        self.ledger.forget(address)
        if self.state_store is not None:
            try:
                await self.state_store.delete(address)
            except PersistenceError as e:
                logger.error("Failed to delete persisted state", address=address, error=str(e))
        if had_state:
            logger.info("Address state destroyed", address=address)
        return had_state

    async def _drop_unwatched(self, watched: set[str]) -> list[str]:
        stale = [
            address
            for address in set(self.snapshots.addresses()) | set(self.aggregator.addresses())
            if address not in watched
        ]
        removed = []
        for address in stale:
            async with self.snapshots.lock_for(address):
                # Watched again since the address list was read.
                if await self.watchlist.watchers_for(address):
                    continue
                await self._destroy(address)
            self.snapshots.discard_lock(address)
            removed.append(address)
        return removed

    # ==================== PERSISTENCE ====================

    def export_state(self, address: str) -> Optional[dict]:
        snapshot = self.snapshots.get(address)
        if snapshot is None:
            return None
        return {
            "snapshot": snapshot.to_state(),
            "pnl": self.aggregator.export_state(address),
        }

    async def persist(self, addresses: Optional[list[str]] = None) -> bool:
        """Write state for ``addresses`` (default: all) in one batch"""
        if self.state_store is None:
            return False
        states = {}
        for address in addresses if addresses is not None else self.snapshots.addresses():
            state = self.export_state(address)
            if state is not None:
                states[address] = state
        try:
            await self.state_store.save(states)
        except PersistenceError as e:
            logger.error("Failed to persist tracker state", addresses=len(states), error=str(e))
            return False
        return True

    async def restore(self) -> int:
        """Load persisted state; returns the number of addresses restored"""
        if self.state_store is None:
            return 0
        try:
            states = await self.state_store.load()
        except PersistenceError as e:
            logger.error("Failed to load persisted state, starting empty", error=str(e))
            return 0

        restored = 0
        for address, state in states.items():
            try:
                snapshot = PositionSnapshot.from_state(state["snapshot"])
                pnl = state.get("pnl")
                if pnl:
                    self.aggregator.restore_state(address, pnl)
                else:
                    self.aggregator.start_tracking(address, snapshot, at=snapshot.fetched_at)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable persisted state", address=address, error=str(e))
                continue
            self.snapshots.put(address, snapshot)
            restored += 1

        logger.info("Restored tracker state", addresses=restored)
        return restored

    # ==================== QUERIES ====================

    def summary(self, address: str) -> Optional[PnLSummary]:
        return self.aggregator.summary(address)

    def recent_events(self, address: str, symbol: str) -> list[TradeMarker]:
        return self.ledger.recent_events(address, symbol)

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "phase": self._phase.value,
            "interval_seconds": self.interval_seconds,
            "ticks": self._tick_count,
            "tracked_addresses": len(self.snapshots),
            "last_tick": (
                {
                    "started_at": self.last_report.started_at.isoformat(),
                    "fetched": self.last_report.fetched,
                    "failed": len(self.last_report.failed),
                    "events": self.last_report.events,
                }
                if self.last_report
                else None
            ),
        }

    # ==================== RUN LOOP ====================

    async def _run_loop(self):
        logger.info("Position poller started", interval_seconds=self.interval_seconds)
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Tick failed", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._running = True
            self._task = asyncio.create_task(self._run_loop())
        return self._task

    async def stop(self):
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Position poller stopped")

    async def shutdown(self):
        """Stop the loop and persist everything once more"""
        await self.stop()
        async with self._tick_lock:
            await self.persist()
