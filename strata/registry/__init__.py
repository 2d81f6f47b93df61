"""Migration unit registry — the static catalog of version edges.

Units are compiled into the registry at boot, either from a JSON manifest
or from a package of ``u_*.py`` modules, and never mutated afterwards.
"""

from strata.registry.registry import UnitRegistry
from strata.registry.manifest import discover_units, load_manifest, load_registry

__all__ = ["UnitRegistry", "discover_units", "load_manifest", "load_registry"]
