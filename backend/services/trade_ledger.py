"""
Trade Event Ledger

Recent buy/sell markers per (address, symbol) for chart collaborators.
Markers older than the retention window are dropped on every append and by
the hourly maintenance pass.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Callable, Optional

from config import settings
from models.events import ChangeEvent, TradeMarker
from utils.logger import get_logger
from utils.utcnow import to_epoch_seconds, utcnow

logger = get_logger("trade_ledger")


class TradeEventLedger:
    def __init__(
        self,
        retention_hours: Optional[float] = None,
        max_markers_per_symbol: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        hours = settings.LEDGER_RETENTION_HOURS if retention_hours is None else retention_hours
        self.retention_seconds = int(float(hours) * 3600)
        self.max_markers_per_symbol = (
            max_markers_per_symbol
            if max_markers_per_symbol is not None
            else settings.LEDGER_MAX_MARKERS_PER_SYMBOL
        )
        self._clock = clock
        # address -> symbol -> markers, oldest first
        self._markers: dict[str, dict[str, deque[TradeMarker]]] = {}

    def _now(self) -> int:
        return to_epoch_seconds(self._clock())

    def _evict(self, markers: deque[TradeMarker], now: int):
        while markers and now - markers[0].time >= self.retention_seconds:
            markers.popleft()

    def record(
        self, address: str, event: ChangeEvent, at: Optional[datetime] = None
    ) -> Optional[TradeMarker]:
        """Append a marker for ``event``; returns None for non-trade events"""
        side = event.direction
        if side is None:
            return None

        marker = TradeMarker(
            time=to_epoch_seconds(at or self._clock()),
            price=event.reference_position.entry_price,
            side=side,
        )
        by_symbol = self._markers.setdefault(address, {})
        markers = by_symbol.get(event.symbol)
        if markers is None:
            markers = deque(maxlen=self.max_markers_per_symbol)
            by_symbol[event.symbol] = markers
        markers.append(marker)
        self._evict(markers, self._now())
        return marker

    def recent_events(self, address: str, symbol: str) -> list[TradeMarker]:
        """Markers for one address and symbol that are younger than the retention window"""
        markers = self._markers.get(address, {}).get(symbol)
        if not markers:
            return []
        now = self._now()
        return [m for m in markers if now - m.time < self.retention_seconds]

    def prune(self) -> int:
        """Drop expired markers and empty buckets; returns markers removed"""
        now = self._now()
        removed = 0
        for address in list(self._markers):
            by_symbol = self._markers[address]
            for symbol in list(by_symbol):
                markers = by_symbol[symbol]
                before = len(markers)
                self._evict(markers, now)
                removed += before - len(markers)
                if not markers:
                    del by_symbol[symbol]
            if not by_symbol:
                del self._markers[address]
        if removed:
            logger.debug("Pruned trade markers", removed=removed)
        return removed

    def forget(self, address: str):
        self._markers.pop(address, None)

    def addresses(self) -> list[str]:
        return list(self._markers)

    def marker_count(self, address: Optional[str] = None) -> int:
        if address is not None:
            return sum(len(m) for m in self._markers.get(address, {}).values())
        return sum(len(m) for by_symbol in self._markers.values() for m in by_symbol.values())
