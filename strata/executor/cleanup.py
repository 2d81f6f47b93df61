"""Cleanup scheduler — runs deferred destructive actions once the fleet converges.

A unit's cleanup (dropping the columns and tables its prepare step made
obsolete) is only safe after every member reports the unit's produced
version. ``sweep`` is idempotent and safe on a timer; failures leave the
unit pending for the next sweep and never reach the serving path.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from strata.config import StrataSettings, settings
from strata.events.bus import EventBus
from strata.exceptions import CleanupExecutionError, LockHeldElsewhereError
from strata.executor.actions import run_actions
from strata.fleet.membership import FleetMembership, converged
from strata.registry.registry import UnitRegistry
from strata.store.db import connect, transaction
from strata.store.lock import MigrationLock
from strata.store.marker import VersionMarkerStore
from strata.types import CleanedUnits, Deferred, MigrationUnit, SweepOutcome

logger = structlog.get_logger()


class CleanupScheduler:
    """Applies pending cleanup actions, one transaction per unit."""

    def __init__(
        self,
        store: VersionMarkerStore,
        registry: UnitRegistry,
        fleet: FleetMembership,
        lock: MigrationLock | None = None,
        instance_id: str | None = None,
        config: StrataSettings | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._fleet = fleet
        self._lock = lock
        self._config = config or settings
        self._instance_id = instance_id or self._config.instance_id
        self._event_bus = event_bus
        self._running = False
        self._task: asyncio.Task | None = None
        self._history: list[SweepOutcome] = []

    async def sweep(self) -> SweepOutcome:
        """Clean every pending unit whose produced version the whole fleet has reached."""
        marker = await self._store.load()
        if not marker.cleanup_pending:
            return Deferred(reason="nothing pending")
        pending = sorted(marker.cleanup_pending)

        if self._lock is None:
            return await self._sweep(pending)
        try:
            async with self._lock.lease(
                self._instance_id,
                self._config.lease_seconds,
                self._config.renew_interval_seconds,
            ):
                return await self._sweep(pending)
        except LockHeldElsewhereError as e:
            return Deferred(reason=f"migration lock held by {e.holder_id}", pending=pending)

    async def _sweep(self, pending: list[str]) -> SweepOutcome:
        try:
            members = await asyncio.wait_for(
                self._fleet.list_members(), timeout=self._config.convergence_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("cleanup_fleet_membership_timeout")
            return Deferred(reason="fleet membership unavailable", pending=pending)

        units: list[MigrationUnit] = []
        unknown: list[str] = []
        for unit_id in pending:
            unit = self._registry.get(unit_id)
            if unit is None:
                logger.warning("cleanup_unknown_unit", unit_id=unit_id)
                unknown.append(unit_id)
                continue
            units.append(unit)
        units.sort(key=lambda u: (u.produced, u.id))

        cleaned: list[str] = []
        failed: list[str] = []
        waiting: list[str] = []
        for unit in units:
            ok, laggards = converged(members, unit.produced)
            if not ok:
                logger.info(
                    "cleanup_waiting_for_convergence",
                    unit_id=unit.id,
                    laggards=laggards,
                    version=unit.produced_version,
                )
                waiting.append(unit.id)
                continue
            try:
                done = await self._clean(unit)
            except Exception as e:
                error = CleanupExecutionError(unit.id, f"{type(e).__name__}: {e}")
                error.__cause__ = e
                logger.error("cleanup_unit_failed", unit_id=unit.id, error=str(error))
                await self._emit("cleanup.failed", {"unit_id": unit.id, "error": str(error)})
                failed.append(unit.id)
                continue
            if done:
                cleaned.append(unit.id)
                logger.info("cleanup_unit_cleaned", unit_id=unit.id)
                await self._emit("cleanup.unit_cleaned", {"unit_id": unit.id})

        if cleaned or failed:
            return CleanedUnits(units=cleaned, failed=failed)
        if waiting:
            return Deferred(reason="fleet has not converged", pending=waiting)
        if unknown:
            return Deferred(
                reason=f"units not in the registry: {', '.join(unknown)}", pending=unknown
            )
        return Deferred(reason="nothing pending")

    async def _clean(self, unit: MigrationUnit) -> bool:
        """Run one unit's cleanup. False if another sweep already did it."""
        async with connect(self._store.db_path) as db:
            async with transaction(db):
                cursor = await db.execute(
                    "SELECT 1 FROM cleanup_pending WHERE unit_id = ?", (unit.id,)
                )
                if await cursor.fetchone() is None:
                    return False
                await run_actions(db, unit.cleanup)
                await self._store.complete_cleanup(db, unit, self._instance_id)
        return True

    # ── Background loop ──────────────────────────────────────────────

    async def start(self) -> None:
        """Start sweeping every ``cleanup_interval_seconds``."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def run_once(self) -> SweepOutcome:
        outcome = await self.sweep()
        self._history.append(outcome)
        return outcome

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def history(self) -> list[SweepOutcome]:
        return list(self._history)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                outcome = await self.run_once()
                if isinstance(outcome, CleanedUnits):
                    logger.info(
                        "cleanup_sweep_finished",
                        cleaned=outcome.units,
                        failed=outcome.failed,
                    )
            except Exception as e:
                logger.error("cleanup_sweep_failed", error=str(e))

            try:
                await asyncio.sleep(self._config.cleanup_interval_seconds)
            except asyncio.CancelledError:
                break

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(topic, data, source="cleanup_scheduler")
