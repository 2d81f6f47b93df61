"""Startup orchestration — block until the schema is at the target version.

Every instance calls ``ensure_schema`` before it accepts traffic. One of
them wins the lock and migrates; the others poll the marker. Transient
conditions (lock contention, old members still serving) are retried until
the startup deadline; anything that needs an operator raises.
"""

from __future__ import annotations

import asyncio
import logging
import time

from strata.config import StrataSettings, settings
from strata.exceptions import (
    LockHeldElsewhereError,
    RollingUpgradeUnsafeError,
    StartupDeadlineExceededError,
)
from strata.executor.upgrade import UpgradeExecutor
from strata.store.marker import VersionMarkerStore
from strata.types import Failed, NoOpAlreadyCurrent, UpgradeOutcome, Version

_logger = logging.getLogger(__name__)


async def wait_for_version(
    store: VersionMarkerStore,
    target: Version | str,
    poll_interval: float,
    timeout: float,
) -> bool:
    """Poll the marker until it reaches ``target``. False if ``timeout`` elapses first."""
    target = Version.parse(target)
    deadline = time.monotonic() + timeout
    while True:
        current = await store.current_version()
        if current >= target:
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        _logger.debug("Schema at %s, waiting for %s", current, target)
        await asyncio.sleep(min(poll_interval, remaining))


async def ensure_schema(
    executor: UpgradeExecutor,
    store: VersionMarkerStore,
    target: Version | str,
    config: StrataSettings | None = None,
) -> UpgradeOutcome:
    """Migrate, or wait for whoever is migrating, until ``target`` is reached.

    Returns ``Applied`` or ``NoOpAlreadyCurrent``. Raises the unit's
    ``UnitExecutionError`` when a unit fails, and
    ``StartupDeadlineExceededError`` when the deadline passes first.
    Resolution errors from the executor propagate unchanged.
    """
    config = config or settings
    target = Version.parse(target)
    deadline = time.monotonic() + config.startup_deadline_seconds
    backoff = config.poll_interval_seconds

    while True:
        outcome = await executor.run(target)
        if not isinstance(outcome, Failed):
            return outcome

        cause = outcome.cause
        remaining = deadline - time.monotonic()

        if isinstance(cause, LockHeldElsewhereError):
            _logger.info("Waiting for %s to finish migrating to %s", cause.holder_id, target)
            # Short slices: the holder may release without reaching the target
            # or die and let its lease expire, and the next run picks that up.
            if remaining > 0 and await wait_for_version(
                store, target, config.poll_interval_seconds,
                min(remaining, config.poll_interval_seconds),
            ):
                return NoOpAlreadyCurrent(str(await store.current_version()))
        elif isinstance(cause, RollingUpgradeUnsafeError):
            _logger.warning(
                "Unit %s must wait for old members to drain; retrying in %.1fs",
                cause.unit_id, backoff,
            )
            if remaining > 0:
                await asyncio.sleep(min(backoff, remaining))
            backoff = min(backoff * 2, config.max_backoff_seconds)
        else:
            raise cause

        if time.monotonic() >= deadline:
            raise StartupDeadlineExceededError(
                f"Schema did not reach {target} within "
                f"{config.startup_deadline_seconds:.0f}s (last: {cause})"
            ) from cause
