"""Migration lock — a lease that lets one fleet member migrate at a time.

The lease lives in the shared database. Acquisition runs under
``BEGIN IMMEDIATE`` so concurrent attempts serialize and exactly one wins.
A holder proves liveness by renewing well before ``expires_at``; a crashed
holder simply stops renewing and the lease becomes free to seize.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable

import aiosqlite

from strata.events.bus import EventBus
from strata.exceptions import LockHeldElsewhereError
from strata.store.db import connect, create_tables, transaction
from strata.types import LeaseRecord, LockDenied, LockGranted

_logger = logging.getLogger(__name__)

DEFAULT_LOCK_NAME = "schema-upgrade"


class LeaseHandle:
    """Handed to the body of ``MigrationLock.lease``.

    ``lost`` flips to True once a renewal fails; the holder must stop
    writing as soon as it sees that.
    """

    def __init__(self, holder_id: str, expires_at: float) -> None:
        self.holder_id = holder_id
        self.expires_at = expires_at
        self.lost = False

    def __repr__(self) -> str:
        return f"LeaseHandle(holder={self.holder_id!r}, lost={self.lost})"


class MigrationLock:
    """Lease-based mutual exclusion across service instances."""

    def __init__(
        self,
        db_path: Path | str,
        name: str = DEFAULT_LOCK_NAME,
        event_bus: EventBus | None = None,
        stuck_lease_multiplier: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = Path(db_path)
        self._name = name
        self._event_bus = event_bus
        self._stuck_multiplier = stuck_lease_multiplier
        self._clock = clock
        self._initialized = False

    async def _ensure_tables(self) -> None:
        if self._initialized:
            return
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with connect(self._db_path) as db:
            await create_tables(db)
        self._initialized = True

    async def acquire(
        self,
        holder_id: str,
        lease_seconds: float,
        wait_seconds: float = 0.0,
        poll_interval: float = 0.25,
    ) -> LockGranted | LockDenied:
        """Try to take the lease, retrying for up to ``wait_seconds``.

        Re-acquiring a lease the caller already holds extends it. A timed-out
        attempt returns the last denial rather than raising.
        """
        await self._ensure_tables()
        deadline = time.monotonic() + wait_seconds
        while True:
            result = await self._try_acquire(holder_id, lease_seconds)
            remaining = deadline - time.monotonic()
            if result.granted or remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval, remaining))

        if result.granted:
            _logger.info("Migration lock %s acquired by %s", self._name, holder_id)
        else:
            _logger.info(
                "Migration lock %s held by %s until %.0f",
                self._name, result.holder_id, result.expires_at,
            )
            await self._check_stuck(result, lease_seconds)
        return result

    async def _try_acquire(
        self, holder_id: str, lease_seconds: float
    ) -> LockGranted | LockDenied:
        async with connect(self._db_path) as db:
            async with transaction(db):
                now = self._clock()
                current = await self.read(db)
                if current and current.holder_id != holder_id and current.expires_at > now:
                    return LockDenied(
                        holder_id=current.holder_id,
                        expires_at=current.expires_at,
                        acquired_at=current.acquired_at,
                    )
                renewing = (
                    current is not None
                    and current.holder_id == holder_id
                    and current.expires_at > now
                )
                acquired_at = current.acquired_at if renewing else now
                expires_at = now + lease_seconds
                await db.execute(
                    "INSERT OR REPLACE INTO migration_lock "
                    "(name, holder_id, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
                    (self._name, holder_id, acquired_at, expires_at),
                )
        if current and current.holder_id != holder_id:
            _logger.warning(
                "Seized expired migration lock from %s (expired %.0f)",
                current.holder_id, current.expires_at,
            )
        return LockGranted(holder_id=holder_id, expires_at=expires_at)

    async def renew(self, holder_id: str, lease_seconds: float) -> bool:
        """Extend the caller's lease. False means the caller no longer holds it."""
        await self._ensure_tables()
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "UPDATE migration_lock SET expires_at = ? WHERE name = ? AND holder_id = ?",
                (self._clock() + lease_seconds, self._name, holder_id),
            )
            return cursor.rowcount == 1

    async def release(self, holder_id: str) -> bool:
        """Drop the caller's lease. Releasing someone else's lease is a no-op."""
        await self._ensure_tables()
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "DELETE FROM migration_lock WHERE name = ? AND holder_id = ?",
                (self._name, holder_id),
            )
            released = cursor.rowcount == 1
        if released:
            _logger.info("Migration lock %s released by %s", self._name, holder_id)
        return released

    async def holder(self) -> LeaseRecord | None:
        """The current lease row, expired or not."""
        await self._ensure_tables()
        async with connect(self._db_path) as db:
            return await self.read(db)

    async def held_by(self, db: aiosqlite.Connection, holder_id: str) -> bool:
        """Fencing check on the caller's connection: is the lease ours and live?"""
        current = await self.read(db)
        return (
            current is not None
            and current.holder_id == holder_id
            and current.expires_at > self._clock()
        )

    @asynccontextmanager
    async def lease(
        self,
        holder_id: str,
        lease_seconds: float,
        renew_interval: float,
        wait_seconds: float = 0.0,
    ) -> AsyncIterator[LeaseHandle]:
        """Hold the lease for the duration of the block, renewing in the background.

        Raises LockHeldElsewhereError if the lease cannot be acquired. The
        lease is released on every exit path; if the release itself fails
        the lease is left to expire.
        """
        result = await self.acquire(holder_id, lease_seconds, wait_seconds)
        if not result.granted:
            raise LockHeldElsewhereError(result.holder_id, result.expires_at)

        handle = LeaseHandle(holder_id, result.expires_at)
        renewer = asyncio.create_task(
            self._renew_loop(handle, lease_seconds, renew_interval)
        )
        try:
            yield handle
        finally:
            renewer.cancel()
            try:
                await renewer
            except asyncio.CancelledError:
                pass
            except Exception as e:
                _logger.warning("Lease renewer for %s crashed: %s", holder_id, e)
            if not handle.lost:
                try:
                    await self.release(holder_id)
                except (aiosqlite.Error, OSError) as e:
                    _logger.warning(
                        "Could not release migration lock (it will expire at %.0f): %s",
                        handle.expires_at, e,
                    )

    async def _renew_loop(
        self, handle: LeaseHandle, lease_seconds: float, interval: float
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self.renew(handle.holder_id, lease_seconds)
            except aiosqlite.Error as e:
                _logger.warning("Lease renewal for %s failed: %s", handle.holder_id, e)
                if self._clock() >= handle.expires_at:
                    renewed = False
                else:
                    continue
            if not renewed:
                handle.lost = True
                _logger.error("Migration lock lost by %s", handle.holder_id)
                if self._event_bus:
                    await self._event_bus.emit(
                        "lock.lost", {"holder_id": handle.holder_id}, source="migration_lock"
                    )
                return
            handle.expires_at = self._clock() + lease_seconds

    async def _check_stuck(self, denied: LockDenied, lease_seconds: float) -> None:
        held_for = self._clock() - denied.acquired_at
        if held_for < self._stuck_multiplier * lease_seconds:
            return
        _logger.error(
            "Migration lock held by %s for %.0fs (%d lease lifetimes); "
            "holder may be stuck",
            denied.holder_id, held_for, int(held_for // lease_seconds),
        )
        if self._event_bus:
            await self._event_bus.emit(
                "lock.stuck",
                {"holder_id": denied.holder_id, "held_for_seconds": held_for},
                source="migration_lock",
            )

    async def read(self, db: aiosqlite.Connection) -> LeaseRecord | None:
        """The lease row, read on the caller's connection."""
        cursor = await db.execute(
            "SELECT name, holder_id, acquired_at, expires_at FROM migration_lock "
            "WHERE name = ?",
            (self._name,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return LeaseRecord(
            name=row[0], holder_id=row[1], acquired_at=row[2], expires_at=row[3]
        )

    def __repr__(self) -> str:
        return f"MigrationLock({self._name!r})"
