"""Plain-text change descriptions and the default notification sink."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from interfaces.tracker_ports import NotificationRequest
from models.events import (
    ChangeEvent,
    PositionClosed,
    PositionIncreased,
    PositionOpened,
    PositionReduced,
    PositionUpdated,
)
from models.positions import Position
from utils.logger import get_logger

logger = get_logger("notifier")

_TITLES = {
    PositionOpened: "POSITION OPENED",
    PositionClosed: "POSITION CLOSED",
    PositionIncreased: "POSITION INCREASED",
    PositionReduced: "POSITION REDUCED",
    PositionUpdated: "POSITION UPDATED",
}


def _format_money(value: Optional[Decimal], places: int = 2) -> str:
    if value is None:
        return "N/A"
    return f"${value:,.{places}f}"


def _format_signed(value: Decimal) -> str:
    return f"{'+' if value >= 0 else ''}{value:,.2f}"


def format_pnl(position: Position) -> str:
    text = f"{_format_signed(position.unrealized_pnl)}$"
    percent = position.pnl_percent
    if percent is not None:
        text += f" ({'+' if percent >= 0 else ''}{percent:.2f}%)"
    return text


def short_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


def describe_position(position: Position) -> list[str]:
    return [
        f"{position.symbol} {position.side.value.upper()}",
        f"Size: {position.size}",
        f"Value: {_format_money(position.notional_value)}",
        f"Entry: {_format_money(position.entry_price, 4)}",
        f"Mark: {_format_money(position.mark_price, 4)}",
        f"PNL: {format_pnl(position)}",
    ]


def describe_change(event: ChangeEvent) -> str:
    """Human-readable description of one change event"""
    title = _TITLES.get(type(event))
    if title is None:
        raise TypeError(f"Unknown change event: {event!r}")

    lines = [title, ""]
    if isinstance(event, PositionClosed):
        before = event.before
        lines += [
            f"{before.symbol} {before.side.value.upper()}",
            f"Size: {before.size}",
            f"Entry: {_format_money(before.entry_price, 4)}",
            f"Final PNL: {format_pnl(before)}",
        ]
        return "\n".join(lines)

    lines += describe_position(event.after)
    if event.before is not None:
        lines += ["", "Changes:", f"- Size: {event.before.size} -> {event.after.size}"]
        if event.before.entry_price != event.after.entry_price:
            lines.append(
                f"- Entry: {_format_money(event.before.entry_price, 4)} -> "
                f"{_format_money(event.after.entry_price, 4)}"
            )
    return "\n".join(lines)


class LoggingNotificationSink:
    """``NotificationSink`` that writes each notification to the log"""

    def __init__(self):
        self.dispatched = 0

    async def dispatch(self, request: NotificationRequest) -> None:
        self.dispatched += 1
        logger.info(
            "Position change",
            address=request.address,
            short_address=short_address(request.address),
            symbol=request.event.symbol,
            change=type(request.event).__name__,
            watchers=[w.owner_id for w in request.watchers],
            labels=[w.display_name for w in request.watchers],
            reference_price=request.reference_price,
            markers=len(request.markers),
            description=request.description,
        )
