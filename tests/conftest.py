"""Shared test fixtures — temp databases, unit factories, fast settings."""

from __future__ import annotations

import pytest
import pytest_asyncio

from strata.config import StrataSettings
from strata.fleet.membership import StaticFleetMembership
from strata.registry.registry import UnitRegistry
from strata.store.db import connect
from strata.store.lock import MigrationLock
from strata.store.marker import VersionMarkerStore
from strata.types import MigrationUnit, SqlAction

ACCOUNTS_DDL = (
    "CREATE TABLE accounts (id INTEGER PRIMARY KEY, username TEXT NOT NULL)"
)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "strata.db"


@pytest.fixture
def config():
    return StrataSettings(
        instance_id="node-a",
        lease_seconds=30.0,
        renew_interval_seconds=10.0,
        lock_acquire_timeout=0.0,
        convergence_timeout=1.0,
        poll_interval_seconds=0.05,
        startup_deadline_seconds=2.0,
        max_backoff_seconds=0.1,
        cleanup_interval_seconds=0.05,
    )


@pytest.fixture
def make_unit():
    def _factory(range_from: str, range_to: str, **kwargs) -> MigrationUnit:
        for key in ("prepare", "cleanup"):
            if key in kwargs:
                kwargs[key] = [
                    SqlAction(sql=a) if isinstance(a, str) else a for a in kwargs[key]
                ]
        return MigrationUnit(range_from=range_from, range_to=range_to, **kwargs)
    return _factory


@pytest.fixture
def rename_registry(make_unit):
    """1.0 -> 1.1 (rolling-safe) -> 2.0 (not rolling-safe, renames a table)."""
    return UnitRegistry([
        make_unit(
            "1.0", "1.1",
            prepare=["ALTER TABLE accounts ADD COLUMN email TEXT"],
        ),
        make_unit(
            "1.1", "2.0",
            supports_rolling_upgrade=False,
            prepare=[
                "CREATE TABLE users (id INTEGER PRIMARY KEY, login TEXT NOT NULL, email TEXT);\n"
                "INSERT INTO users (id, login, email) SELECT id, username, email FROM accounts;"
            ],
            cleanup=["DROP TABLE accounts"],
        ),
    ])


@pytest_asyncio.fixture
async def store(db_path):
    async with connect(db_path) as db:
        await db.execute(ACCOUNTS_DDL)
        await db.execute("INSERT INTO accounts (username) VALUES ('ada'), ('grace')")
    marker_store = VersionMarkerStore(db_path)
    await marker_store.initialize(baseline="1.0")
    return marker_store


@pytest.fixture
def lock(db_path):
    return MigrationLock(db_path)


@pytest.fixture
def fleet():
    return StaticFleetMembership()


@pytest.fixture
def table_names(db_path):
    async def _names() -> set[str]:
        async with connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            return {r[0] for r in await cursor.fetchall()}
    return _names
