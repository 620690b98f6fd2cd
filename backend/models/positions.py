from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils.utcnow import utcnow

ZERO = Decimal("0")


def to_decimal(raw: Any) -> Optional[Decimal]:
    """Parse an upstream numeric (string, int or float) into a Decimal.

    Returns None for missing, empty or non-finite values.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else None
    text = str(raw).strip()
    if not text:
        return None
    try:
        value = Decimal(text)
    except (InvalidOperation, ValueError):
        return None
    return value if value.is_finite() else None


class PositionSide(str, enum.Enum):
    LONG = "long"
    SHORT = "short"

    @classmethod
    def from_sign(cls, sign: Any) -> "PositionSide":
        """Map the upstream ``sign`` field (1 / -1) to a side"""
        try:
            return cls.SHORT if int(sign) < 0 else cls.LONG
        except (TypeError, ValueError):
            raise ValueError(f"Invalid position sign: {sign!r}")


class Position(BaseModel):
    """One open perpetual position (absolute size, side carried separately)"""

    model_config = ConfigDict(frozen=True)

    symbol: str
    size: Decimal
    side: PositionSide
    entry_price: Decimal
    mark_price: Optional[Decimal] = None  # None = unknown, never zero
    notional_value: Optional[Decimal] = None
    unrealized_pnl: Decimal = ZERO
    open_order_count: int = 0
    market_id: Optional[int] = None

    @field_validator("size")
    @classmethod
    def _size_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("Position size must be positive; zero-size positions are removed")
        return v

    @property
    def is_long(self) -> bool:
        return self.side is PositionSide.LONG

    @property
    def pnl_percent(self) -> Optional[Decimal]:
        """Unrealized P&L as a percentage of entry notional"""
        if not self.entry_price:
            return None
        return self.unrealized_pnl / (self.entry_price * self.size) * 100

    @classmethod
    def from_api_response(
        cls, data: dict, mark_price: Optional[Decimal] = None
    ) -> Optional["Position"]:
        """Parse a raw account position row; None for zero-size rows"""
        signed_size = to_decimal(data.get("position"))
        if signed_size is None or signed_size == 0:
            return None

        symbol = str(data.get("symbol") or "").strip().upper()
        if not symbol:
            raise ValueError("Position row has no symbol")

        sign = data.get("sign")
        side = PositionSide.from_sign(sign) if sign is not None else (
            PositionSide.SHORT if signed_size < 0 else PositionSide.LONG
        )

        market_id = data.get("market_id")
        try:
            market_id = int(market_id) if market_id is not None else None
        except (TypeError, ValueError):
            market_id = None

        try:
            open_orders = int(data.get("open_order_count") or 0)
        except (TypeError, ValueError):
            open_orders = 0

        return cls(
            symbol=symbol,
            size=abs(signed_size),
            side=side,
            entry_price=to_decimal(data.get("avg_entry_price")) or ZERO,
            mark_price=mark_price,
            notional_value=to_decimal(data.get("position_value")),
            unrealized_pnl=to_decimal(data.get("unrealized_pnl")) or ZERO,
            open_order_count=open_orders,
            market_id=market_id,
        )


class PositionSnapshot(BaseModel):
    """Balance and open positions of one address as of one successful fetch"""

    model_config = ConfigDict(frozen=True)

    balance: Decimal = ZERO
    positions: dict[str, Position] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def empty(cls, fetched_at: Optional[datetime] = None) -> "PositionSnapshot":
        return cls(fetched_at=fetched_at or utcnow())

    @property
    def unrealized_pnl(self) -> Decimal:
        return sum((p.unrealized_pnl for p in self.positions.values()), ZERO)

    def to_state(self) -> dict:
        """JSON-safe dict (decimals become strings)"""
        return self.model_dump(mode="json")

    @classmethod
    def from_state(cls, data: dict) -> "PositionSnapshot":
        return cls.model_validate(data)


class AccountOverview(BaseModel):
    """Aggregate exposure figures for one snapshot"""

    balance: Decimal
    long_count: int
    short_count: int
    long_value: Decimal
    short_value: Decimal
    average_leverage: Decimal

    @classmethod
    def from_snapshot(cls, snapshot: PositionSnapshot) -> "AccountOverview":
        longs = [p for p in snapshot.positions.values() if p.is_long]
        shorts = [p for p in snapshot.positions.values() if not p.is_long]
        long_value = sum((p.notional_value or ZERO for p in longs), ZERO)
        short_value = sum((p.notional_value or ZERO for p in shorts), ZERO)
        leverage = (long_value + short_value) / snapshot.balance if snapshot.balance > 0 else ZERO
        return cls(
            balance=snapshot.balance,
            long_count=len(longs),
            short_count=len(shorts),
            long_value=long_value,
            short_value=short_value,
            average_leverage=leverage,
        )
