"""Port contracts for the position tracker.

These protocols are the narrow seams between the polling core and its
collaborators: where watchlists live, where engine state is persisted and
how change notifications are delivered.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Protocol

from models.events import ChangeEvent, TradeMarker


@dataclass(frozen=True)
class Watcher:
    owner_id: str
    label: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.label or "Wallet"


@dataclass(frozen=True)
class NotificationRequest:
    """One change event ready for rendering and delivery"""

    address: str
    watchers: tuple[Watcher, ...]
    event: ChangeEvent
    description: str
    reference_price: Decimal
    markers: list[TradeMarker] = field(default_factory=list)


class WatchlistStore(Protocol):
    """Read side of the owner -> {address -> label} mapping."""

    async def distinct_addresses(self) -> list[str]:
        """Every address watched by at least one owner."""

    async def watchers_for(self, address: str) -> list[Watcher]:
        """Owners (with their labels) watching ``address``."""


class StateStore(Protocol):
    """Opaque per-address engine state."""

    async def load(self) -> dict[str, dict]:
        """All persisted states keyed by address."""

    async def save(self, states: dict[str, dict]) -> None:
        """Write the given states in one batch."""

    async def delete(self, address: str) -> None:
        """Remove the persisted state of one address."""


class NotificationSink(Protocol):
    """Delivers rendered change notifications."""

    async def dispatch(self, request: NotificationRequest) -> None:
        """Deliver one notification to every watcher in the request."""
