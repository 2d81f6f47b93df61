"""Fleet membership oracles.

The executor and cleanup scheduler only ever ask one question: which
members exist and what version does each report. How that is known (live
heartbeats, a deployment descriptor) is the oracle's business.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Iterable

from strata.store.db import connect, create_tables
from strata.types import FleetMember, MemberStatus, Version

_logger = logging.getLogger(__name__)


class FleetMembership(ABC):
    """Read-only view of the fleet."""

    @abstractmethod
    async def list_members(self) -> list[FleetMember]:
        ...


class StaticFleetMembership(FleetMembership):
    """A fixed member list, e.g. from a deployment descriptor."""

    def __init__(self, members: Iterable[FleetMember] = ()) -> None:
        self._members = list(members)

    async def list_members(self) -> list[FleetMember]:
        return list(self._members)

    def set_members(self, members: Iterable[FleetMember]) -> None:
        self._members = list(members)


class SqliteFleetMembership(FleetMembership):
    """Heartbeat table in the shared database.

    Each instance calls ``report`` periodically; members whose last
    heartbeat is older than ``stale_after_seconds`` are considered gone.
    """

    def __init__(
        self,
        db_path: Path | str,
        stale_after_seconds: float = 120.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = Path(db_path)
        self._stale_after = stale_after_seconds
        self._clock = clock
        self._initialized = False

    async def _ensure_tables(self) -> None:
        if self._initialized:
            return
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with connect(self._db_path) as db:
            await create_tables(db)
        self._initialized = True

    async def report(
        self,
        instance_id: str,
        version: str,
        status: MemberStatus = MemberStatus.SERVING,
    ) -> None:
        await self._ensure_tables()
        Version(version)
        async with connect(self._db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO fleet_members "
                "(instance_id, reported_version, status, heartbeat_at) VALUES (?, ?, ?, ?)",
                (instance_id, version, MemberStatus(status).value, self._clock()),
            )

    async def remove(self, instance_id: str) -> None:
        await self._ensure_tables()
        async with connect(self._db_path) as db:
            await db.execute(
                "DELETE FROM fleet_members WHERE instance_id = ?", (instance_id,)
            )

    async def list_members(self) -> list[FleetMember]:
        await self._ensure_tables()
        cutoff = self._clock() - self._stale_after
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT instance_id, reported_version, status FROM fleet_members "
                "WHERE heartbeat_at >= ? ORDER BY instance_id",
                (cutoff,),
            )
            rows = await cursor.fetchall()
        return [
            FleetMember(instance_id=r[0], reported_version=r[1], status=MemberStatus(r[2]))
            for r in rows
        ]


def members_blocking(
    members: Iterable[FleetMember], minimum: Version, exclude: str = ""
) -> list[FleetMember]:
    """Serving members other than ``exclude`` that report a version below ``minimum``."""
    return [
        m for m in members
        if m.instance_id != exclude
        and m.status == MemberStatus.SERVING
        and m.version < minimum
    ]


def converged(members: Iterable[FleetMember], minimum: Version) -> tuple[bool, list[str]]:
    """Whether every member reports at least ``minimum``; also returns the laggards."""
    laggards = [m.instance_id for m in members if m.version < minimum]
    return not laggards, laggards
