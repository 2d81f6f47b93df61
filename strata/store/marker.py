"""Version marker store — the durable source of truth for schema state.

Holds the current schema version, the checkpoint of every unit whose
prepare step committed, the units still waiting on cleanup, and an
append-only history of each applied step. Readers may use any connection;
the write helpers take the caller's open transaction so that the marker
moves in the same commit as the schema change it describes.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from strata.exceptions import StaleMarkerError
from strata.store.db import connect, create_tables, transaction
from strata.types import (
    BASELINE_VERSION,
    HistoryEntry,
    MigrationUnit,
    Version,
    VersionMarker,
)

_logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class VersionMarkerStore:
    """SQLite-backed version marker shared by every fleet member."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def initialize(self, baseline: str = BASELINE_VERSION) -> None:
        """Create the tables and the marker row (at ``baseline``) if missing."""
        async with self._init_lock:
            if self._initialized:
                return
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            async with connect(self._db_path) as db:
                async with transaction(db):
                    await create_tables(db)
                    cursor = await db.execute("SELECT 1 FROM schema_marker WHERE id = 1")
                    if await cursor.fetchone() is None:
                        await db.execute(
                            "INSERT INTO schema_marker (id, current_version, updated_at) "
                            "VALUES (1, ?, ?)",
                            (Version(baseline).raw, _now()),
                        )
                        _logger.info("Bootstrapped version marker at %s", baseline)
            self._initialized = True

    # ── Reads ────────────────────────────────────────────────────────

    async def load(self) -> VersionMarker:
        await self.initialize()
        async with connect(self._db_path) as db:
            return await self.read(db)

    async def read(self, db: aiosqlite.Connection) -> VersionMarker:
        """Read the marker on an existing connection (inside or outside a transaction)."""
        cursor = await db.execute(
            "SELECT current_version, updated_at FROM schema_marker WHERE id = 1"
        )
        row = await cursor.fetchone()
        current, updated = (row[0], row[1]) if row else (BASELINE_VERSION, None)

        cursor = await db.execute("SELECT unit_id FROM unit_checkpoints")
        checkpoints = {r[0] for r in await cursor.fetchall()}
        cursor = await db.execute("SELECT unit_id FROM cleanup_pending")
        pending = {r[0] for r in await cursor.fetchall()}

        return VersionMarker(
            current_version=current,
            applied_unit_checkpoints=checkpoints,
            cleanup_pending=pending,
            updated_at=datetime.fromisoformat(updated) if updated else None,
        )

    async def current_version(self) -> Version:
        marker = await self.load()
        return marker.version

    async def history(self, limit: int = 50) -> list[HistoryEntry]:
        """Most recent applied steps first."""
        await self.initialize()
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT unit_id, step, from_version, to_version, holder_id, applied_at "
                "FROM version_history ORDER BY id DESC LIMIT ?",
                (limit,),
            )
            rows = await cursor.fetchall()
        return [
            HistoryEntry(
                unit_id=r[0],
                step=r[1],
                from_version=r[2],
                to_version=r[3],
                holder_id=r[4] or "",
                applied_at=datetime.fromisoformat(r[5]),
            )
            for r in rows
        ]

    # ── Writes (inside the caller's transaction) ─────────────────────

    async def advance(
        self, db: aiosqlite.Connection, unit: MigrationUnit, holder_id: str
    ) -> None:
        """Move the marker across ``unit`` and checkpoint it.

        The marker must sit exactly at the unit's ``range_from``; anything
        else means the chain was resolved from a stale read.
        """
        marker = await self.read(db)
        if marker.version != unit.source:
            raise StaleMarkerError(unit.id, unit.range_from, marker.current_version)

        now = _now()
        await db.execute(
            "UPDATE schema_marker SET current_version = ?, updated_at = ? WHERE id = 1",
            (unit.produced_version, now),
        )
        await db.execute(
            "INSERT OR REPLACE INTO unit_checkpoints "
            "(unit_id, from_version, to_version, applied_at) VALUES (?, ?, ?, ?)",
            (unit.id, unit.range_from, unit.produced_version, now),
        )
        if unit.has_cleanup:
            await db.execute(
                "INSERT OR IGNORE INTO cleanup_pending "
                "(unit_id, produced_version, queued_at) VALUES (?, ?, ?)",
                (unit.id, unit.produced_version, now),
            )
        await self._record(db, unit, "prepare", holder_id, now)

    async def complete_cleanup(
        self, db: aiosqlite.Connection, unit: MigrationUnit, holder_id: str
    ) -> None:
        await db.execute("DELETE FROM cleanup_pending WHERE unit_id = ?", (unit.id,))
        await self._record(db, unit, "cleanup", holder_id, _now())

    async def _record(
        self,
        db: aiosqlite.Connection,
        unit: MigrationUnit,
        step: str,
        holder_id: str,
        when: str,
    ) -> None:
        await db.execute(
            "INSERT INTO version_history "
            "(unit_id, step, from_version, to_version, holder_id, applied_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (unit.id, step, unit.range_from, unit.produced_version, holder_id, when),
        )

    def __repr__(self) -> str:
        return f"VersionMarkerStore({str(self._db_path)!r})"
