"""Shared fixtures for position tracker tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
import pytest_asyncio
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from models.database import Base
from models.positions import Position, PositionSide, PositionSnapshot


ADDRESS_A = "0x1111111111111111111111111111111111111111"
ADDRESS_B = "0x2222222222222222222222222222222222222222"
T0 = datetime(2025, 1, 1, 12, 0, 0)


def make_position(
    symbol: str = "BTC",
    size="1",
    side: PositionSide = PositionSide.LONG,
    entry="50000",
    unrealized="0",
    mark: Optional[str] = None,
    notional: Optional[str] = None,
) -> Position:
    return Position(
        symbol=symbol,
        size=Decimal(str(size)),
        side=side,
        entry_price=Decimal(str(entry)),
        mark_price=Decimal(mark) if mark is not None else None,
        notional_value=Decimal(notional) if notional is not None else None,
        unrealized_pnl=Decimal(str(unrealized)),
    )


def make_snapshot(*positions: Position, balance="1000", at: datetime = T0) -> PositionSnapshot:
    return PositionSnapshot(
        balance=Decimal(str(balance)),
        positions={p.symbol: p for p in positions},
        fetched_at=at,
    )


# ---------------------------------------------------------------------------
# Raw API response fixtures (mimicking zkLighter payloads)
# ---------------------------------------------------------------------------


@pytest.fixture
def raw_account_response():
    """A realistic /account?by=l1_address response."""
    return {
        "code": 200,
        "total": 1,
        "accounts": [
            {
                "account_index": 42,
                "l1_address": ADDRESS_A,
                "collateral": "1523.75",
                "positions": [
                    {
                        "market_id": 1,
                        "symbol": "BTC",
                        "sign": 1,
                        "position": "0.5000",
                        "avg_entry_price": "60000.0",
                        "position_value": "30250.00",
                        "unrealized_pnl": "250.00",
                        "open_order_count": 2,
                    },
                    {
                        "market_id": 0,
                        "symbol": "ETH",
                        "sign": -1,
                        "position": "3.00",
                        "avg_entry_price": "2500.0",
                        "position_value": "7440.00",
                        "unrealized_pnl": "60.00",
                        "open_order_count": 0,
                    },
                    {
                        "market_id": 2,
                        "symbol": "SOL",
                        "sign": 1,
                        "position": "0.000",
                        "avg_entry_price": "0",
                        "position_value": "0",
                        "unrealized_pnl": "0",
                        "open_order_count": 0,
                    },
                ],
            }
        ],
    }


@pytest.fixture
def raw_candles_response():
    return {
        "code": 200,
        "resolution": "1m",
        "candlesticks": [
            {"timestamp": 1735732800000, "open": 60400.0, "high": 60600.0, "low": 60300.0, "close": 60500.0},
        ],
    }


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite file with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
