"""CLI runtime context — wires the engine together from settings."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

from strata.bootstrap import ensure_schema
from strata.config import settings
from strata.events.bus import EventBus
from strata.executor.cleanup import CleanupScheduler
from strata.executor.upgrade import UpgradeExecutor
from strata.fleet.membership import SqliteFleetMembership
from strata.registry.manifest import load_registry
from strata.registry.registry import UnitRegistry
from strata.store.lock import MigrationLock
from strata.store.marker import VersionMarkerStore
from strata.types import SweepOutcome, UpgradeOutcome


class StrataContext:
    """Singleton holding the store, lock and fleet view for CLI commands.

    The registry is loaded on first use so that commands which only read
    the marker still work when the manifest is broken.
    """

    _instance: StrataContext | None = None

    def __init__(self) -> None:
        self.event_bus = EventBus()
        self.store = VersionMarkerStore(settings.db_path)
        self.lock = MigrationLock(
            settings.db_path,
            event_bus=self.event_bus,
            stuck_lease_multiplier=settings.stuck_lease_multiplier,
        )
        self.fleet = SqliteFleetMembership(
            settings.db_path, stale_after_seconds=settings.fleet_stale_after_seconds
        )
        self._registry: UnitRegistry | None = None

    @property
    def registry(self) -> UnitRegistry:
        if self._registry is None:
            self._registry = load_registry(settings.manifest_path)
        return self._registry

    def executor(self) -> UpgradeExecutor:
        return UpgradeExecutor(
            store=self.store,
            lock=self.lock,
            registry=self.registry,
            fleet=self.fleet,
            instance_id=settings.instance_id,
            config=settings,
            event_bus=self.event_bus,
        )

    def cleanup(self) -> CleanupScheduler:
        return CleanupScheduler(
            store=self.store,
            registry=self.registry,
            fleet=self.fleet,
            lock=self.lock,
            instance_id=settings.instance_id,
            config=settings,
            event_bus=self.event_bus,
        )

    async def migrate(self, target: str, wait: bool) -> UpgradeOutcome:
        executor = self.executor()
        if wait:
            return await ensure_schema(executor, self.store, target, settings)
        return await executor.run(target)

    async def sweep(self) -> SweepOutcome:
        return await self.cleanup().sweep()

    @classmethod
    def get(cls) -> StrataContext:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)
