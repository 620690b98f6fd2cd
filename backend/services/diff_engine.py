"""
Position diff engine.

Pure function of two snapshots. Events come out in ascending symbol order so
the same pair of snapshots always yields the same list.
"""

from __future__ import annotations

from typing import Optional

from models.events import (
    ChangeEvent,
    PositionClosed,
    PositionIncreased,
    PositionOpened,
    PositionReduced,
    PositionUpdated,
    TradeDirection,
)
from models.positions import Position, PositionSnapshot


def _diff_symbol(
    symbol: str, before: Optional[Position], after: Optional[Position]
) -> list[ChangeEvent]:
    if before is None and after is None:
        return []
    if before is None:
        return [PositionOpened(symbol=symbol, after=after)]
    if after is None:
        return [PositionClosed(symbol=symbol, before=before)]

    # A side flip is a full close of the old side plus a fresh open.
    if before.side is not after.side:
        return [
            PositionClosed(symbol=symbol, before=before),
            PositionOpened(symbol=symbol, after=after),
        ]

    if after.size > before.size:
        return [PositionIncreased(symbol=symbol, before=before, after=after)]
    if after.size < before.size:
        return [PositionReduced(symbol=symbol, before=before, after=after)]
    if after.entry_price != before.entry_price:
        return [PositionUpdated(symbol=symbol, before=before, after=after)]
    return []


def compute(old: PositionSnapshot, new: PositionSnapshot) -> list[ChangeEvent]:
    """Change events that turn ``old`` into ``new``"""
    symbols = sorted(set(old.positions) | set(new.positions))
    events: list[ChangeEvent] = []
    for symbol in symbols:
        events.extend(_diff_symbol(symbol, old.positions.get(symbol), new.positions.get(symbol)))
    return events


def trade_direction(event: ChangeEvent) -> Optional[TradeDirection]:
    """Buy/sell direction for chart markers; None for non-trades"""
    return event.direction
