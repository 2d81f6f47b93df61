"""SQLite plumbing shared by the marker store, the lock and the executor.

Connections are opened in autocommit mode (``isolation_level=None``) so the
only transactions are the explicit ``BEGIN IMMEDIATE`` blocks below. SQL
scripts are split into single statements rather than run through
``executescript``, which would commit whatever transaction is open.
"""

from __future__ import annotations

import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

BUSY_TIMEOUT_SECONDS = 30.0

SCHEMA = (
    """CREATE TABLE IF NOT EXISTS schema_marker (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        current_version TEXT NOT NULL,
        updated_at TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS unit_checkpoints (
        unit_id TEXT PRIMARY KEY,
        from_version TEXT NOT NULL,
        to_version TEXT NOT NULL,
        applied_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS cleanup_pending (
        unit_id TEXT PRIMARY KEY,
        produced_version TEXT NOT NULL,
        queued_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS version_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        unit_id TEXT NOT NULL,
        step TEXT NOT NULL,
        from_version TEXT NOT NULL,
        to_version TEXT NOT NULL,
        holder_id TEXT,
        applied_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS migration_lock (
        name TEXT PRIMARY KEY,
        holder_id TEXT NOT NULL,
        acquired_at REAL NOT NULL,
        expires_at REAL NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS fleet_members (
        instance_id TEXT PRIMARY KEY,
        reported_version TEXT NOT NULL,
        status TEXT NOT NULL,
        heartbeat_at REAL NOT NULL
    )""",
)


@asynccontextmanager
async def connect(db_path: Path | str) -> AsyncIterator[aiosqlite.Connection]:
    """Open an autocommit connection; callers delimit their own transactions."""
    async with aiosqlite.connect(
        str(db_path), isolation_level=None, timeout=BUSY_TIMEOUT_SECONDS
    ) as db:
        yield db


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """``BEGIN IMMEDIATE`` … ``COMMIT``, rolled back on any exception.

    IMMEDIATE takes the write lock up front, so two writers serialize here
    instead of failing at their first write.
    """
    await db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        if db.in_transaction:
            await db.execute("ROLLBACK")
        raise
    else:
        await db.execute("COMMIT")


async def create_tables(db: aiosqlite.Connection) -> None:
    for ddl in SCHEMA:
        await db.execute(ddl)


def split_statements(sql: str) -> list[str]:
    """Split a SQL script into complete statements.

    Relies on ``sqlite3.complete_statement`` so semicolons inside string
    literals and trigger bodies do not end a statement early.
    """
    statements: list[str] = []
    buffer = ""
    for piece in sql.split(";"):
        buffer += piece + ";"
        if sqlite3.complete_statement(buffer):
            if not _is_blank(buffer):
                statements.append(buffer.strip())
            buffer = ""
    if buffer.strip(";").strip() and not _is_blank(buffer):
        raise ValueError(f"Incomplete SQL statement: {buffer.strip()[:80]!r}")
    return statements


def _is_blank(statement: str) -> bool:
    code = [
        line for line in statement.splitlines()
        if line.strip() and not line.strip().startswith("--")
    ]
    return not "".join(code).replace(";", "").strip()


async def execute_script(db: aiosqlite.Connection, sql: str) -> int:
    """Run every statement of ``sql`` on ``db``; returns the statement count."""
    statements = split_statements(sql)
    for statement in statements:
        await db.execute(statement)
    return len(statements)
