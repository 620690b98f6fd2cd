from .positions import (
    AccountOverview,
    Position,
    PositionSide,
    PositionSnapshot,
)
from .events import (
    BalancePoint,
    ChangeEvent,
    PositionClosed,
    PositionIncreased,
    PositionOpened,
    PositionReduced,
    PositionUpdated,
    TradeDirection,
    TradeKind,
    TradeMarker,
    TradeRecord,
)

__all__ = [
    "AccountOverview",
    "Position",
    "PositionSide",
    "PositionSnapshot",
    "BalancePoint",
    "ChangeEvent",
    "PositionClosed",
    "PositionIncreased",
    "PositionOpened",
    "PositionReduced",
    "PositionUpdated",
    "TradeDirection",
    "TradeKind",
    "TradeMarker",
    "TradeRecord",
]
