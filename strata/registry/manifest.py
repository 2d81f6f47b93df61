"""Registry sources — JSON manifests and ``u_*`` unit packages.

A manifest looks like::

    {
      "units": [
        {
          "range_from": "1.0", "range_to": "1.1",
          "prepare": [{"kind": "script", "path": "sql/1.0-1.1.sql"}],
          "data_migration": "myapp.upgrades.v1_1:backfill_names",
          "cleanup": [{"kind": "sql", "sql": "DROP TABLE legacy_names"}],
          "supports_rolling_upgrade": false
        }
      ]
    }

Script paths are resolved against the manifest's directory.
"""

from __future__ import annotations

import importlib
import logging
import pkgutil
from pathlib import Path
from types import ModuleType

from pydantic import BaseModel, Field, ValidationError

from strata.exceptions import RegistryError
from strata.registry.registry import UnitRegistry
from strata.types import MigrationUnit, ScriptAction

_logger = logging.getLogger(__name__)

UNIT_MODULE_PREFIX = "u_"


class Manifest(BaseModel):
    units: list[MigrationUnit] = Field(default_factory=list)


def load_manifest(path: Path | str) -> list[MigrationUnit]:
    """Parse and validate a JSON manifest. Returns units with absolute script paths."""
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise RegistryError(f"Cannot read manifest {path}: {e}") from e

    try:
        manifest = Manifest.model_validate_json(raw)
    except ValidationError as e:
        raise RegistryError(f"Invalid manifest {path}: {e}") from e

    base = path.parent
    units = [_resolve_scripts(unit, base) for unit in manifest.units]
    _logger.info("Loaded %d migration units from %s", len(units), path)
    return units


def discover_units(package: str | ModuleType) -> list[MigrationUnit]:
    """Collect ``UNIT`` from every ``u_*`` module in a package.

    Modules are visited in name order; each must define
    ``UNIT: MigrationUnit``.
    """
    if isinstance(package, str):
        package = importlib.import_module(package)
    package_dir = Path(package.__file__).parent

    units: list[MigrationUnit] = []
    for info in sorted(pkgutil.iter_modules(package.__path__), key=lambda m: m.name):
        if not info.name.startswith(UNIT_MODULE_PREFIX):
            continue
        module = importlib.import_module(f"{package.__name__}.{info.name}")
        unit = getattr(module, "UNIT", None)
        if not isinstance(unit, MigrationUnit):
            raise RegistryError(
                f"Module {module.__name__} does not define UNIT: MigrationUnit"
            )
        units.append(_resolve_scripts(unit, package_dir))

    _logger.info("Discovered %d migration units in %s", len(units), package.__name__)
    return units


def load_registry(path: Path | str) -> UnitRegistry:
    """Load a manifest and build the validated registry in one step."""
    return UnitRegistry(load_manifest(path))


def _resolve_scripts(unit: MigrationUnit, base: Path) -> MigrationUnit:
    prepare = tuple(_resolve_action(a, base, unit.id) for a in unit.prepare)
    cleanup = tuple(_resolve_action(a, base, unit.id) for a in unit.cleanup)
    return unit.model_copy(update={"prepare": prepare, "cleanup": cleanup})


def _resolve_action(action, base: Path, unit_id: str):
    if not isinstance(action, ScriptAction):
        return action
    path = action.path if action.path.is_absolute() else (base / action.path)
    if not path.is_file():
        raise RegistryError(f"Unit {unit_id!r} references missing script {path}")
    return action.model_copy(update={"path": path.resolve()})
