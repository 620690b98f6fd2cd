import sys
from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import models.database as database
from conftest import ADDRESS_A, ADDRESS_B
from interfaces.tracker_ports import Watcher
from services.state_store import PersistenceError, SqlStateStore
from services.watchlist import SqlWatchlistStore


@pytest.mark.asyncio
async def test_init_database_creates_tracker_tables(tmp_path, monkeypatch):
    db_path = tmp_path / "schema.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    monkeypatch.setattr(database, "async_engine", engine)
    monkeypatch.setattr(database, "AsyncSessionLocal", session_factory)
    monkeypatch.setattr(database, "ensure_data_dir", lambda: None)

    await database.init_database()
    await database.init_database()

    async with engine.begin() as conn:
        rows = await conn.execute(
            text("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
        )
        tables = {row[0] for row in rows.fetchall()}
    assert {"tracked_addresses", "address_states"} <= tables

    await engine.dispose()


@pytest.mark.asyncio
async def test_watchlist_add_list_and_dedupe(session_factory):
    store = SqlWatchlistStore(session_factory)

    assert await store.add("alice", ADDRESS_A, "main") is True
    assert await store.add("alice", ADDRESS_A, "again") is False
    assert await store.add("bob", ADDRESS_A, None) is True
    assert await store.add("bob", ADDRESS_B, "degen") is True

    assert await store.distinct_addresses() == [ADDRESS_A, ADDRESS_B]
    assert await store.count_for_owner("bob") == 2
    assert await store.watchers_for(ADDRESS_A) == [
        Watcher(owner_id="alice", label="main"),
        Watcher(owner_id="bob", label=None),
    ]
    assert [row.address for row in await store.list_for_owner("alice")] == [ADDRESS_A]


@pytest.mark.asyncio
async def test_watchlist_resolve_by_label_or_address(session_factory):
    store = SqlWatchlistStore(session_factory)
    await store.add("alice", ADDRESS_A, "Main")

    assert (await store.resolve("alice", "main")).address == ADDRESS_A
    assert (await store.resolve("alice", f" {ADDRESS_A} ")).address == ADDRESS_A
    assert await store.resolve("alice", "other") is None
    assert await store.resolve("bob", "main") is None


@pytest.mark.asyncio
async def test_watchlist_remove(session_factory):
    store = SqlWatchlistStore(session_factory)
    await store.add("alice", ADDRESS_A)
    await store.add("bob", ADDRESS_A)

    assert await store.remove("alice", ADDRESS_A) is True
    assert await store.remove("alice", ADDRESS_A) is False
    assert await store.is_watched(ADDRESS_A) is True

    await store.remove("bob", ADDRESS_A)
    assert await store.is_watched(ADDRESS_A) is False
    assert await store.distinct_addresses() == []


@pytest.mark.asyncio
async def test_state_store_save_load_update_delete(session_factory):
    store = SqlStateStore(session_factory)

    await store.save({ADDRESS_A: {"snapshot": {"balance": "1"}, "pnl": None}})
    await store.save(
        {
            ADDRESS_A: {"snapshot": {"balance": "2"}, "pnl": None},
            ADDRESS_B: {"snapshot": {"balance": "3"}, "pnl": {"realized_pnl": "4"}},
        }
    )

    loaded = await store.load()
    assert loaded[ADDRESS_A]["snapshot"]["balance"] == "2"
    assert loaded[ADDRESS_B]["pnl"]["realized_pnl"] == "4"

    await store.delete(ADDRESS_A)
    assert set(await store.load()) == {ADDRESS_B}


@pytest.mark.asyncio
async def test_state_store_wraps_database_errors(tmp_path):
    # No tables created: every query fails.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    store = SqlStateStore(sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))

    with pytest.raises(PersistenceError):
        await store.load()
    with pytest.raises(PersistenceError):
        await store.save({ADDRESS_A: {"snapshot": {}}})
    with pytest.raises(PersistenceError):
        await store.delete(ADDRESS_A)

    await engine.dispose()
