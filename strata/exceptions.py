"""Custom exception hierarchy for strata.

Every error carries the process exit code the ``strata`` CLI reports for it.
"""

from __future__ import annotations


class StrataError(Exception):
    """Base for all strata errors."""

    exit_code = 1


class RegistryError(StrataError):
    """The migration unit registry or its manifest is malformed."""

    exit_code = 16


class NoUpgradePathError(StrataError):
    """No contiguous chain of units leads to the target version."""

    exit_code = 10

    def __init__(self, current: str, target: str, frontier: str) -> None:
        self.current = current
        self.target = target
        self.frontier = frontier
        super().__init__(
            f"No upgrade path from {current} to {target}: "
            f"no unit upgrades from {frontier}"
        )


class AmbiguousUpgradePathError(StrataError):
    """More than one unit upgrades from the same version."""

    exit_code = 11

    def __init__(self, frontier: str, unit_ids: list[str]) -> None:
        self.frontier = frontier
        self.unit_ids = unit_ids
        super().__init__(
            f"Ambiguous upgrade path at {frontier}: units {', '.join(unit_ids)} "
            "all upgrade from it"
        )


class DowngradeNotSupportedError(StrataError):
    """The persisted schema is newer than the requested target."""

    exit_code = 12

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot downgrade schema from {current} to {target}")


class RollingUpgradeUnsafeError(StrataError):
    """A unit that forbids rolling upgrades found old members still serving."""

    exit_code = 13

    def __init__(self, unit_id: str, blocking: list[str]) -> None:
        self.unit_id = unit_id
        self.blocking = blocking
        super().__init__(
            f"Unit {unit_id} does not support rolling upgrade; "
            f"members still serving the old schema: {', '.join(blocking) or 'unknown'}"
        )


class LockHeldElsewhereError(StrataError):
    """Another instance holds the migration lock."""

    exit_code = 14

    def __init__(self, holder_id: str, expires_at: float) -> None:
        self.holder_id = holder_id
        self.expires_at = expires_at
        super().__init__(
            f"Migration lock held by {holder_id} until {expires_at:.0f}"
        )


class UnitExecutionError(StrataError):
    """A prepare action or data migration failed; the unit was rolled back."""

    exit_code = 15

    def __init__(self, unit_id: str, reason: str) -> None:
        self.unit_id = unit_id
        self.reason = reason
        super().__init__(f"Unit {unit_id} failed: {reason}")


class CleanupExecutionError(StrataError):
    """A cleanup action failed; the unit stays pending."""

    def __init__(self, unit_id: str, reason: str) -> None:
        self.unit_id = unit_id
        self.reason = reason
        super().__init__(f"Cleanup of {unit_id} failed: {reason}")


class StartupDeadlineExceededError(StrataError):
    """The schema did not reach the target version before the startup deadline."""

    exit_code = 17


class StaleMarkerError(StrataError):
    """The marker moved underneath a unit; its chain was resolved from stale state."""

    def __init__(self, unit_id: str, expected: str, found: str) -> None:
        self.unit_id = unit_id
        super().__init__(
            f"Unit {unit_id} expects the marker at {expected}, found {found}"
        )
