"""Tests for the cleanup scheduler."""

import asyncio

import pytest
import pytest_asyncio

from strata.events.bus import EventBus
from strata.executor.cleanup import CleanupScheduler
from strata.executor.upgrade import UpgradeExecutor
from strata.fleet.membership import StaticFleetMembership
from strata.registry.registry import UnitRegistry
from strata.types import CleanedUnits, Deferred, FleetMember, MemberStatus


def _fleet(*versions: str) -> StaticFleetMembership:
    return StaticFleetMembership([
        FleetMember(instance_id=f"node-{i}", reported_version=v)
        for i, v in enumerate(versions)
    ])


@pytest_asyncio.fixture
async def upgraded(store, lock, fleet, config, rename_registry):
    """Store migrated to 2.0 with the accounts drop still pending."""
    executor = UpgradeExecutor(
        store=store, lock=lock, registry=rename_registry,
        fleet=fleet, instance_id="node-a", config=config,
    )
    await executor.run("2.0")
    return store


@pytest.fixture
def make_scheduler(store, rename_registry, config):
    def _factory(fleet, **overrides):
        kwargs = dict(
            store=store,
            registry=rename_registry,
            fleet=fleet,
            instance_id="node-a",
            config=config,
        )
        kwargs.update(overrides)
        return CleanupScheduler(**kwargs)
    return _factory


@pytest.mark.asyncio
async def test_nothing_pending(store, make_scheduler):
    outcome = await make_scheduler(_fleet("1.0")).sweep()
    assert outcome == Deferred(reason="nothing pending")


@pytest.mark.asyncio
async def test_defers_until_fleet_converges(upgraded, make_scheduler, table_names):
    outcome = await make_scheduler(_fleet("2.0", "1.1")).sweep()

    assert isinstance(outcome, Deferred)
    assert outcome.pending == ["1.1-2.0"]
    assert "accounts" in await table_names()
    assert (await upgraded.load()).cleanup_pending == {"1.1-2.0"}


@pytest.mark.asyncio
async def test_draining_laggard_still_blocks_cleanup(upgraded, make_scheduler):
    fleet = StaticFleetMembership([
        FleetMember(instance_id="node-a", reported_version="2.0"),
        FleetMember(instance_id="node-b", reported_version="1.1", status=MemberStatus.DRAINING),
    ])
    outcome = await make_scheduler(fleet).sweep()
    assert isinstance(outcome, Deferred)


@pytest.mark.asyncio
async def test_cleans_once_converged(upgraded, make_scheduler, table_names):
    bus = EventBus()
    scheduler = make_scheduler(_fleet("2.0", "2.0"), event_bus=bus)

    outcome = await scheduler.sweep()

    assert outcome == CleanedUnits(units=["1.1-2.0"], failed=[])
    tables = await table_names()
    assert "accounts" not in tables
    assert "users" in tables
    assert (await upgraded.load()).cleanup_pending == set()
    assert [e.topic for e in bus.history("cleanup.*")] == ["cleanup.unit_cleaned"]

    history = await upgraded.history()
    assert history[0].step == "cleanup"
    assert history[0].unit_id == "1.1-2.0"


@pytest.mark.asyncio
async def test_sweep_is_idempotent(upgraded, make_scheduler):
    scheduler = make_scheduler(_fleet("2.0"))
    await scheduler.sweep()
    assert await scheduler.sweep() == Deferred(reason="nothing pending")


@pytest.mark.asyncio
async def test_members_ahead_count_as_converged(upgraded, make_scheduler):
    outcome = await make_scheduler(_fleet("2.0", "2.1")).sweep()
    assert isinstance(outcome, CleanedUnits)


@pytest.mark.asyncio
async def test_failed_cleanup_stays_pending(store, lock, fleet, config, make_unit, table_names):
    registry = UnitRegistry([
        make_unit(
            "1.0", "1.1",
            prepare=["CREATE TABLE scratch (x)"],
            cleanup=["DROP TABLE scratch", "DROP TABLE no_such_table"],
        ),
    ])
    await UpgradeExecutor(
        store=store, lock=lock, registry=registry,
        fleet=fleet, instance_id="node-a", config=config,
    ).run("1.1")
    bus = EventBus()
    scheduler = CleanupScheduler(
        store=store, registry=registry, fleet=_fleet("1.1"),
        instance_id="node-a", config=config, event_bus=bus,
    )

    outcome = await scheduler.sweep()

    assert outcome == CleanedUnits(units=[], failed=["1.0-1.1"])
    assert (await store.load()).cleanup_pending == {"1.0-1.1"}
    # The partial cleanup rolled back with the failing statement.
    assert "scratch" in await table_names()
    assert [e.topic for e in bus.history("cleanup.*")] == ["cleanup.failed"]


@pytest.mark.asyncio
async def test_defers_while_migration_lock_held(upgraded, make_scheduler, lock):
    await lock.acquire("node-b", lease_seconds=60)
    outcome = await make_scheduler(_fleet("2.0"), lock=lock).sweep()

    assert isinstance(outcome, Deferred)
    assert "node-b" in outcome.reason
    assert outcome.pending == ["1.1-2.0"]


@pytest.mark.asyncio
async def test_sweep_with_lock_releases_it(upgraded, make_scheduler, lock):
    outcome = await make_scheduler(_fleet("2.0"), lock=lock).sweep()
    assert isinstance(outcome, CleanedUnits)
    assert await lock.holder() is None


@pytest.mark.asyncio
async def test_unresponsive_fleet_defers(upgraded, make_scheduler):
    class HangingFleet(StaticFleetMembership):
        async def list_members(self):
            await asyncio.sleep(10)
            return []

    outcome = await make_scheduler(HangingFleet()).sweep()
    assert outcome.reason == "fleet membership unavailable"


@pytest.mark.asyncio
async def test_background_loop(upgraded, make_scheduler, table_names):
    scheduler = make_scheduler(_fleet("2.0"))
    await scheduler.start()
    assert scheduler.is_running
    try:
        for _ in range(100):
            if any(isinstance(o, CleanedUnits) for o in scheduler.history):
                break
            await asyncio.sleep(0.02)
    finally:
        await scheduler.stop()

    assert not scheduler.is_running
    assert "accounts" not in await table_names()
    assert isinstance(scheduler.history[0], CleanedUnits)


@pytest.mark.asyncio
async def test_unknown_pending_units_reported(upgraded, store, config):
    scheduler = CleanupScheduler(
        store=store, registry=UnitRegistry([]), fleet=_fleet("2.0"),
        instance_id="node-a", config=config,
    )
    outcome = await scheduler.sweep()

    assert isinstance(outcome, Deferred)
    assert outcome.reason == "units not in the registry: 1.1-2.0"
    assert outcome.pending == ["1.1-2.0"]
    assert (await store.load()).cleanup_pending == {"1.1-2.0"}
