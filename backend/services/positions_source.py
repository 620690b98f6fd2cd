"""Reads account positions and mark prices from the zkLighter REST API."""

from __future__ import annotations

import asyncio
import time
from decimal import Decimal
from typing import Any, Optional

from config import settings
from models.positions import Position, PositionSnapshot, ZERO, to_decimal
from services.fetch_client import ResilientFetchClient, UnavailableError
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("positions_source")


class DataShapeError(Exception):
    """Upstream payload does not have the expected structure."""

    pass


def _first_account(payload: Any) -> Optional[dict]:
    if not isinstance(payload, dict):
        raise DataShapeError(f"Account payload is {type(payload).__name__}, expected object")
    accounts = payload.get("accounts")
    if accounts is None:
        return None
    if not isinstance(accounts, list):
        raise DataShapeError("'accounts' is not a list")
    if not accounts:
        return None
    account = accounts[0]
    if not isinstance(account, dict):
        raise DataShapeError("'accounts[0]' is not an object")
    return account


class PositionsSource:
    def __init__(
        self,
        fetch_client: ResilientFetchClient,
        base_url: Optional[str] = None,
        resolution: Optional[str] = None,
    ):
        self.fetch_client = fetch_client
        self.base_url = (base_url or settings.POSITIONS_API_URL).rstrip("/")
        self.resolution = resolution or settings.MARK_PRICE_RESOLUTION

    async def fetch_snapshot(self, address: str) -> PositionSnapshot:
        """Current balance and open positions for ``address``.

        Raises:
            UnavailableError: the account endpoint could not be reached.
        """
        payload = await self.fetch_client.fetch(
            f"{self.base_url}/account",
            params={"by": "l1_address", "value": address},
        )
        fetched_at = utcnow()

        try:
            account = _first_account(payload)
        except DataShapeError as e:
            logger.warning("Unexpected account payload", address=address, error=str(e))
            return PositionSnapshot.empty(fetched_at)

        if account is None:
            return PositionSnapshot.empty(fetched_at)

        rows = account.get("positions") or []
        if not isinstance(rows, list):
            logger.warning("Unexpected positions field", address=address)
            rows = []

        live_rows = [row for row in rows if isinstance(row, dict) and to_decimal(row.get("position"))]
        marks = await asyncio.gather(
            *(self.fetch_mark_price(row.get("market_id")) for row in live_rows)
        )

        positions: dict[str, Position] = {}
        for row, mark in zip(live_rows, marks):
            try:
                position = Position.from_api_response(row, mark_price=mark)
            except ValueError as e:
                logger.warning(
                    "Skipping malformed position row",
                    address=address,
                    symbol=row.get("symbol"),
                    error=str(e),
                )
                continue
            if position is not None:
                positions[position.symbol] = position

        return PositionSnapshot(
            balance=to_decimal(account.get("collateral")) or ZERO,
            positions=positions,
            fetched_at=fetched_at,
        )

    async def fetch_mark_price(self, market_id: Any) -> Optional[Decimal]:
        """Close of the most recent candle, or None when unknown"""
        if market_id is None:
            return None

        end_ms = int(time.time() * 1000)
        params = {
            "market_id": market_id,
            "resolution": self.resolution,
            "start_timestamp": end_ms - 60_000,
            "end_timestamp": end_ms,
            "count_back": 1,
        }
        try:
            payload = await self.fetch_client.fetch(f"{self.base_url}/candlesticks", params=params)
        except UnavailableError as e:
            logger.debug("Mark price unavailable", market_id=market_id, error=str(e))
            return None

        candles = payload.get("candlesticks") if isinstance(payload, dict) else None
        if not isinstance(candles, list) or not candles or not isinstance(candles[-1], dict):
            return None

        price = to_decimal(candles[-1].get("close"))
        # zero is never a valid mark
        if price is None or price <= 0:
            return None
        return price
