"""Position tracker worker: polls tracked addresses and reports changes.

Owns the fetch client, the stores and the poll loop. State is restored at
start and persisted at the end of every tick and on SIGINT/SIGTERM.

This process only reads the watchlist. Rows in ``tracked_addresses`` are
written by a front end (through ``services.tracker_commands.TrackerCommands``
or ``SqlWatchlistStore.add``) sharing the same database; every tick picks up
the current set, and addresses seen for the first time are seeded there.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from config import settings
from models.database import init_database
from services.fetch_client import ResilientFetchClient
from services.maintenance import MaintenanceService
from services.notifier import LoggingNotificationSink
from services.pnl_aggregator import PnLAggregator
from services.position_poller import PositionPoller
from services.positions_source import PositionsSource
from services.state_store import SqlStateStore
from services.trade_ledger import TradeEventLedger
from services.watchlist import SqlWatchlistStore
from utils.logger import get_logger, setup_logging

logger = get_logger("position_tracker_worker")


def build_poller(fetch_client: ResilientFetchClient) -> PositionPoller:
    ledger = TradeEventLedger()
    aggregator = PnLAggregator()
    return PositionPoller(
        source=PositionsSource(fetch_client),
        watchlist=SqlWatchlistStore(),
        sink=LoggingNotificationSink(),
        aggregator=aggregator,
        ledger=ledger,
        state_store=SqlStateStore(),
        maintenance=MaintenanceService(
            ledger=ledger,
            aggregator=aggregator,
            fetch_client=fetch_client,
            interval_seconds=settings.MAINTENANCE_INTERVAL_SECONDS,
        ),
    )


async def main() -> None:
    setup_logging(settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
    await init_database()

    fetch_client = ResilientFetchClient.from_settings()
    poller = build_poller(fetch_client)
    await poller.restore()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    poller.start()
    logger.info(
        "Position tracker worker started",
        interval_seconds=poller.interval_seconds,
        api_url=settings.POSITIONS_API_URL,
    )
    try:
        await stop_event.wait()
    finally:
        logger.info("Position tracker worker shutting down")
        await poller.shutdown()
        await fetch_client.close()


if __name__ == "__main__":
    asyncio.run(main())
