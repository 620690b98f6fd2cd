"""
Maintenance Service

Slow-cadence cleanup of in-memory tracker state: expired ledger markers,
P&L history past the retention window, stale fetch-cache entries and idle
rate windows.
"""

import time
from typing import Callable, Optional

from services.fetch_client import ResilientFetchClient
from services.pnl_aggregator import PnLAggregator
from services.trade_ledger import TradeEventLedger
from utils.logger import get_logger
from utils.rate_limiter import RateGate

logger = get_logger("maintenance")


class MaintenanceService:
    """Periodic pruning for the tracker's stores"""

    def __init__(
        self,
        ledger: TradeEventLedger,
        aggregator: PnLAggregator,
        fetch_client: Optional[ResilientFetchClient] = None,
        rate_gate: Optional[RateGate] = None,
        interval_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.aggregator = aggregator
        self.fetch_client = fetch_client
        self.rate_gate = rate_gate
        self.interval_seconds = float(interval_seconds)
        self._clock = clock
        self._last_run: Optional[float] = None
        self.last_results: dict = {}

    def full_cleanup(self) -> dict:
        """Run every pruning step once and return what each removed"""
        results = {
            "ledger_markers": self.ledger.prune(),
            "pnl_history": self.aggregator.prune(),
        }
        if self.fetch_client is not None:
            results["cache_entries"] = self.fetch_client.prune_cache()
        if self.rate_gate is not None:
            results["rate_windows"] = self.rate_gate.prune()

        self._last_run = self._clock()
        self.last_results = results
        logger.info("Maintenance pass completed", results=results)
        return results

    def is_due(self) -> bool:
        if self._last_run is None:
            # The first pass waits one full interval after start.
            self._last_run = self._clock()
            return False
        return self._clock() - self._last_run >= self.interval_seconds

    def run_if_due(self) -> Optional[dict]:
        if not self.is_due():
            return None
        return self.full_cleanup()
