"""Change events, trade records and chart markers.

``ChangeEvent`` is a closed union; consumers dispatch on the concrete class
and treat anything else as a programming error.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from models.positions import Position, PositionSide


class TradeDirection(str, enum.Enum):
    BUY = "buy"
    SELL = "sell"


def _direction(side: PositionSide, adding: bool) -> TradeDirection:
    # Adding to a long is a buy; taking size off a long is a sell. Shorts invert.
    if side is PositionSide.LONG:
        return TradeDirection.BUY if adding else TradeDirection.SELL
    return TradeDirection.SELL if adding else TradeDirection.BUY


@dataclass(frozen=True)
class PositionOpened:
    symbol: str
    after: Position
    before: None = None

    @property
    def direction(self) -> TradeDirection:
        return _direction(self.after.side, adding=True)

    @property
    def reference_position(self) -> Position:
        return self.after


@dataclass(frozen=True)
class PositionClosed:
    symbol: str
    before: Position
    after: None = None

    @property
    def direction(self) -> TradeDirection:
        return _direction(self.before.side, adding=False)

    @property
    def reference_position(self) -> Position:
        return self.before


@dataclass(frozen=True)
class PositionIncreased:
    symbol: str
    before: Position
    after: Position

    @property
    def size_delta(self) -> Decimal:
        return self.after.size - self.before.size

    @property
    def direction(self) -> TradeDirection:
        return _direction(self.after.side, adding=True)

    @property
    def reference_position(self) -> Position:
        return self.after


@dataclass(frozen=True)
class PositionReduced:
    symbol: str
    before: Position
    after: Position

    @property
    def size_delta(self) -> Decimal:
        return self.before.size - self.after.size

    @property
    def direction(self) -> TradeDirection:
        return _direction(self.after.side, adding=False)

    @property
    def reference_position(self) -> Position:
        return self.after


@dataclass(frozen=True)
class PositionUpdated:
    """Entry price moved while size stayed the same; not a trade."""

    symbol: str
    before: Position
    after: Position

    @property
    def direction(self) -> None:
        return None

    @property
    def reference_position(self) -> Position:
        return self.after


ChangeEvent = Union[
    PositionOpened,
    PositionClosed,
    PositionIncreased,
    PositionReduced,
    PositionUpdated,
]


class TradeKind(str, enum.Enum):
    OPEN = "open"
    INCREASE = "increase"
    PARTIAL_CLOSE = "partial_close"
    CLOSE = "close"

    @property
    def realizes_pnl(self) -> bool:
        return self in (TradeKind.PARTIAL_CLOSE, TradeKind.CLOSE)


@dataclass(frozen=True)
class TradeRecord:
    symbol: str
    side: PositionSide
    size: Decimal
    entry_price: Decimal
    exit_price: Optional[Decimal]
    pnl: Decimal
    timestamp: datetime
    kind: TradeKind

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "size": str(self.size),
            "entry_price": str(self.entry_price),
            "exit_price": str(self.exit_price) if self.exit_price is not None else None,
            "pnl": str(self.pnl),
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TradeRecord":
        exit_price = data.get("exit_price")
        return cls(
            symbol=data["symbol"],
            side=PositionSide(data["side"]),
            size=Decimal(data["size"]),
            entry_price=Decimal(data["entry_price"]),
            exit_price=Decimal(exit_price) if exit_price is not None else None,
            pnl=Decimal(data["pnl"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            kind=TradeKind(data["kind"]),
        )


@dataclass(frozen=True)
class TradeMarker:
    """Buy/sell marker drawn on a chart at ``time`` (POSIX seconds)"""

    time: int
    price: Decimal
    side: TradeDirection


@dataclass(frozen=True)
class BalancePoint:
    balance: Decimal
    unrealized_pnl: Decimal
    timestamp: datetime

    @property
    def equity(self) -> Decimal:
        return self.balance + self.unrealized_pnl

    def to_dict(self) -> dict:
        return {
            "balance": str(self.balance),
            "unrealized_pnl": str(self.unrealized_pnl),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BalancePoint":
        return cls(
            balance=Decimal(data["balance"]),
            unrealized_pnl=Decimal(data.get("unrealized_pnl") or "0"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )
