"""Path resolver — finds the contiguous chain of units between two versions.

The registry is a directed graph: versions are nodes, units are edges keyed
by ``range_from``. From the current version we follow the single outgoing
edge at each step until we land exactly on the target. The resolver never
guesses: a missing edge, a fork or an overshoot is a failure.
"""

from __future__ import annotations

import logging

from strata.exceptions import (
    AmbiguousUpgradePathError,
    DowngradeNotSupportedError,
    NoUpgradePathError,
)
from strata.registry.registry import UnitRegistry
from strata.types import MigrationUnit, Version

_logger = logging.getLogger(__name__)


def resolve_path(
    registry: UnitRegistry,
    current: Version | str,
    target: Version | str,
) -> list[MigrationUnit]:
    """Return the ordered units upgrading ``current`` to ``target``.

    Raises:
        DowngradeNotSupportedError: ``current`` is newer than ``target``.
        NoUpgradePathError: the walk hits a version with no outgoing unit,
            or a unit jumps past the target.
        AmbiguousUpgradePathError: more than one unit leaves a version.
    """
    current = Version.parse(current)
    target = Version.parse(target)

    if current == target:
        return []
    if current > target:
        raise DowngradeNotSupportedError(str(current), str(target))

    chain: list[MigrationUnit] = []
    frontier = current
    while frontier != target:
        candidates = registry.units_from(frontier)
        if not candidates:
            raise NoUpgradePathError(str(current), str(target), str(frontier))
        if len(candidates) > 1:
            raise AmbiguousUpgradePathError(str(frontier), [u.id for u in candidates])

        unit = candidates[0]
        if unit.produced > target:
            raise NoUpgradePathError(str(current), str(target), str(frontier))
        chain.append(unit)
        frontier = unit.produced

    _logger.debug(
        "Resolved %s -> %s: %s", current, target, " -> ".join(u.id for u in chain)
    )
    return chain
