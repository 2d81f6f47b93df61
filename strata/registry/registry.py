"""UnitRegistry — validated, read-only lookup of migration units."""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable

from strata.exceptions import RegistryError
from strata.types import MigrationUnit, UnitId, Version


class UnitRegistry:
    """Catalog of migration units keyed by the version they upgrade from.

    Validation happens in the constructor so that an ambiguous or malformed
    registry fails at boot rather than midway through a migration.
    """

    def __init__(self, units: Iterable[MigrationUnit] = ()) -> None:
        self._units: dict[UnitId, MigrationUnit] = {}
        self._by_source: dict[Version, list[MigrationUnit]] = defaultdict(list)
        edges: dict[tuple[Version, Version], UnitId] = {}

        for unit in units:
            if unit.id in self._units:
                raise RegistryError(f"Duplicate migration unit id {unit.id!r}")
            if unit.edge in edges:
                raise RegistryError(
                    f"Units {edges[unit.edge]!r} and {unit.id!r} both declare "
                    f"the edge {unit.range_from} -> {unit.range_to}"
                )
            if unit.produced <= unit.source:
                raise RegistryError(
                    f"Unit {unit.id!r} produces {unit.produced_version}, which does "
                    f"not advance past {unit.range_from}"
                )
            edges[unit.edge] = unit.id
            self._units[unit.id] = unit
            self._by_source[unit.source].append(unit)

    def units(self) -> list[MigrationUnit]:
        """All units, ordered by source version then id."""
        return sorted(self._units.values(), key=lambda u: (u.source, u.id))

    def get(self, unit_id: UnitId) -> MigrationUnit | None:
        return self._units.get(unit_id)

    def units_from(self, version: Version | str) -> list[MigrationUnit]:
        """Units whose ``range_from`` is exactly ``version``."""
        found = self._by_source.get(Version.parse(version), [])
        return sorted(found, key=lambda u: u.id)

    def latest_version(self) -> Version | None:
        """Highest version any unit produces."""
        if not self._units:
            return None
        return max(u.produced for u in self._units.values())

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._units

    def __repr__(self) -> str:
        return f"UnitRegistry(units={len(self._units)})"
