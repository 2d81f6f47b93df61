"""Upgrade executor — applies a resolved chain of units, one commit per unit.

Each unit runs in its own ``BEGIN IMMEDIATE`` transaction: the prepare
actions, the data migration, the marker advance and the checkpoint commit
together or not at all. A failure therefore leaves the marker at the last
good unit, and the next run resumes there.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from strata.config import StrataSettings, settings
from strata.events.bus import EventBus
from strata.exceptions import (
    LockHeldElsewhereError,
    RollingUpgradeUnsafeError,
    UnitExecutionError,
    StrataError,
)
from strata.executor.actions import run_action, run_actions
from strata.fleet.membership import FleetMembership, members_blocking
from strata.registry.registry import UnitRegistry
from strata.resolver import resolve_path
from strata.store.db import connect, transaction
from strata.store.lock import LeaseHandle, MigrationLock
from strata.store.marker import VersionMarkerStore
from strata.types import (
    Applied,
    Failed,
    MigrationUnit,
    NoOpAlreadyCurrent,
    UpgradeOutcome,
    Version,
)

_logger = logging.getLogger(__name__)


class UpgradeExecutor:
    """Brings the store from its marked version to a target version.

    Resolution errors (no path, ambiguous path, downgrade) raise: the
    service must not start against an unknown schema. Everything that can
    resolve itself or needs an operator is reported as ``Failed``.
    """

    def __init__(
        self,
        store: VersionMarkerStore,
        lock: MigrationLock,
        registry: UnitRegistry,
        fleet: FleetMembership,
        instance_id: str | None = None,
        config: StrataSettings | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._lock = lock
        self._registry = registry
        self._fleet = fleet
        self._config = config or settings
        self._instance_id = instance_id or self._config.instance_id
        self._event_bus = event_bus

    @property
    def instance_id(self) -> str:
        return self._instance_id

    async def run(self, target: Version | str) -> UpgradeOutcome:
        target = Version.parse(target)
        marker = await self._store.load()
        if marker.version == target:
            _logger.info("Schema already at %s; nothing to do", target)
            return NoOpAlreadyCurrent(marker.current_version)

        # Fail fast on a broken registry before contending for the lock.
        resolve_path(self._registry, marker.version, target)

        try:
            async with self._lock.lease(
                self._instance_id,
                self._config.lease_seconds,
                self._config.renew_interval_seconds,
                wait_seconds=self._config.lock_acquire_timeout,
            ) as lease:
                return await self._run_locked(target, lease)
        except LockHeldElsewhereError as e:
            _logger.info("Another instance is migrating: %s", e)
            await self._emit("upgrade.waiting", {"holder_id": e.holder_id})
            return Failed(at_unit=None, cause=e)

    async def _run_locked(self, target: Version, lease: LeaseHandle) -> UpgradeOutcome:
        # Re-read under the lock: the previous holder may have finished.
        marker = await self._store.load()
        if marker.version == target:
            _logger.info("Schema reached %s while waiting for the lock", target)
            return NoOpAlreadyCurrent(marker.current_version)

        chain = resolve_path(self._registry, marker.version, target)
        start = marker.current_version
        applied: list[str] = []
        _logger.info(
            "Upgrading schema %s -> %s through %d units", start, target, len(chain)
        )
        await self._emit(
            "upgrade.started",
            {"from": start, "to": str(target), "units": [u.id for u in chain]},
        )

        for unit in chain:
            if unit.id in marker.applied_unit_checkpoints:
                _logger.info("Unit %s already checkpointed; skipping", unit.id)
                continue

            if lease.lost:
                return await self._fail(unit, await self._lock_error())

            unsafe = await self._check_rolling_safe(unit)
            if unsafe:
                return await self._fail(unit, unsafe)

            try:
                await self._apply(unit)
            except LockHeldElsewhereError as e:
                return await self._fail(unit, e)
            except Exception as e:
                error = UnitExecutionError(unit.id, f"{type(e).__name__}: {e}")
                error.__cause__ = e
                return await self._fail(unit, error)

            applied.append(unit.id)
            _logger.info(
                "Applied unit %s (%s -> %s)", unit.id, unit.range_from, unit.produced_version
            )
            await self._emit(
                "upgrade.unit_applied",
                {"unit_id": unit.id, "version": unit.produced_version},
            )

        final = await self._store.current_version()
        await self._emit(
            "upgrade.completed", {"from": start, "to": str(final), "units": applied}
        )
        return Applied(from_version=start, to_version=str(final), units_applied=applied)

    async def _apply(self, unit: MigrationUnit) -> None:
        async with connect(self._store.db_path) as db:
            async with transaction(db):
                if not await self._lock.held_by(db, self._instance_id):
                    record = await self._lock.read(db)
                    raise LockHeldElsewhereError(
                        record.holder_id if record else "nobody",
                        record.expires_at if record else 0.0,
                    )
                await run_actions(db, unit.prepare)
                if unit.data_migration is not None:
                    await run_action(db, unit.data_migration)
                await self._store.advance(db, unit, self._instance_id)

    async def _check_rolling_safe(self, unit: MigrationUnit) -> RollingUpgradeUnsafeError | None:
        """None if the unit may run now; otherwise the reason it may not."""
        if unit.supports_rolling_upgrade:
            return None
        try:
            members = await asyncio.wait_for(
                self._fleet.list_members(), timeout=self._config.convergence_timeout
            )
        except asyncio.TimeoutError:
            _logger.warning("Fleet membership timed out checking unit %s", unit.id)
            return RollingUpgradeUnsafeError(unit.id, [])
        blocking = members_blocking(members, unit.source, exclude=self._instance_id)
        if blocking:
            return RollingUpgradeUnsafeError(unit.id, [m.instance_id for m in blocking])
        return None

    async def _lock_error(self) -> LockHeldElsewhereError:
        record = await self._lock.holder()
        if record is None:
            return LockHeldElsewhereError("nobody", 0.0)
        return LockHeldElsewhereError(record.holder_id, record.expires_at)

    async def _fail(self, unit: MigrationUnit, error: StrataError) -> Failed:
        _logger.error("Upgrade halted at unit %s: %s", unit.id, error)
        await self._emit(
            "upgrade.failed",
            {"unit_id": unit.id, "error": str(error), "kind": type(error).__name__},
        )
        return Failed(at_unit=unit.id, cause=error)

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(topic, data, source="upgrade_executor")
