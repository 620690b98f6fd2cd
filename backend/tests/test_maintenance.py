import sys
from pathlib import Path
from datetime import timedelta

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import ADDRESS_A, T0, make_position
from models.events import PositionOpened
from services.maintenance import MaintenanceService
from services.pnl_aggregator import PnLAggregator
from services.trade_ledger import TradeEventLedger
from utils.rate_limiter import RateGate


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def test_full_cleanup_prunes_every_store():
    wall = _Clock(T0)
    ledger = TradeEventLedger(retention_hours=24, max_markers_per_symbol=100, clock=wall)
    ledger.record(ADDRESS_A, PositionOpened(symbol="BTC", after=make_position("BTC")), at=T0)
    aggregator = PnLAggregator(history_limit=100, retention_days=30, clock=wall)
    gate_clock = _Clock(0.0)
    gate = RateGate(limit=5, window_seconds=60, clock=gate_clock)
    gate.admit("alice")

    service = MaintenanceService(ledger, aggregator, rate_gate=gate, clock=lambda: 0.0)
    wall.now = T0 + timedelta(hours=25)
    gate_clock.now = 120.0

    results = service.full_cleanup()

    assert results["ledger_markers"] == 1
    assert results["pnl_history"] == 0
    assert results["rate_windows"] == 1
    assert "cache_entries" not in results
    assert service.last_results == results


def test_first_check_arms_timer_then_runs_after_interval():
    clock = _Clock(100.0)
    service = MaintenanceService(
        TradeEventLedger(clock=lambda: T0),
        PnLAggregator(clock=lambda: T0),
        interval_seconds=3600,
        clock=clock,
    )

    assert service.run_if_due() is None
    clock.now += 1800
    assert service.run_if_due() is None
    clock.now += 1800
    assert service.run_if_due() is not None
    assert service.run_if_due() is None
