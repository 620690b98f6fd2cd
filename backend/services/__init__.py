from importlib import import_module

__all__ = [
    "ResilientFetchClient",
    "PositionsSource",
    "SnapshotRepository",
    "TradeEventLedger",
    "PnLAggregator",
    "PositionPoller",
    "TrackerCommands",
    "MaintenanceService",
    "SqlWatchlistStore",
    "SqlStateStore",
    "LoggingNotificationSink",
]

_LAZY_EXPORTS = {
    "ResilientFetchClient": ("services.fetch_client", "ResilientFetchClient"),
    "PositionsSource": ("services.positions_source", "PositionsSource"),
    "SnapshotRepository": ("services.snapshot_repository", "SnapshotRepository"),
    "TradeEventLedger": ("services.trade_ledger", "TradeEventLedger"),
    "PnLAggregator": ("services.pnl_aggregator", "PnLAggregator"),
    "PositionPoller": ("services.position_poller", "PositionPoller"),
    "TrackerCommands": ("services.tracker_commands", "TrackerCommands"),
    "MaintenanceService": ("services.maintenance", "MaintenanceService"),
    "SqlWatchlistStore": ("services.watchlist", "SqlWatchlistStore"),
    "SqlStateStore": ("services.state_store", "SqlStateStore"),
    "LoggingNotificationSink": ("services.notifier", "LoggingNotificationSink"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
