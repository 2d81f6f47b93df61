"""Tests for registry validation and lookups."""

import pytest

from strata.exceptions import RegistryError
from strata.registry.registry import UnitRegistry
from strata.types import MigrationUnit


def test_units_from_exact_version(make_unit):
    registry = UnitRegistry([
        make_unit("1.0", "1.1"),
        make_unit("1.1", "1.2"),
    ])
    assert [u.id for u in registry.units_from("1.0")] == ["1.0-1.1"]
    assert [u.id for u in registry.units_from("1.0.0")] == ["1.0-1.1"]
    assert registry.units_from("1.05") == []


def test_duplicate_edge_fails_at_load(make_unit):
    with pytest.raises(RegistryError, match="both declare the edge"):
        UnitRegistry([
            make_unit("1.0", "1.1", id="add-email"),
            make_unit("1.0", "1.1", id="add-email-again"),
        ])


def test_duplicate_edge_across_equal_spellings(make_unit):
    with pytest.raises(RegistryError):
        UnitRegistry([
            make_unit("1.0", "1.1", id="a"),
            make_unit("1.0.0", "1.1.0", id="b"),
        ])


def test_duplicate_id_rejected(make_unit):
    with pytest.raises(RegistryError, match="Duplicate migration unit id"):
        UnitRegistry([
            make_unit("1.0", "1.1", id="same"),
            make_unit("1.1", "1.2", id="same"),
        ])


def test_unit_must_advance_version():
    with pytest.raises(RegistryError, match="does not advance"):
        UnitRegistry([
            MigrationUnit(range_from="1.1", range_to="1.2", produced_version="1.0"),
        ])


def test_explicit_produced_version(make_unit):
    unit = make_unit("4.3.1", "4.3.2", produced_version="4.3.2")
    registry = UnitRegistry([unit])
    assert registry.get("4.3.1-4.3.2") is unit
    assert "4.3.1-4.3.2" in registry


def test_units_sorted_by_source(make_unit):
    registry = UnitRegistry([
        make_unit("1.1", "2.0"),
        make_unit("none", "1.0"),
        make_unit("1.0", "1.1"),
    ])
    assert [u.id for u in registry.units()] == ["none-1.0", "1.0-1.1", "1.1-2.0"]
    assert registry.latest_version() == "2.0"
    assert len(registry) == 3


def test_empty_registry():
    registry = UnitRegistry()
    assert len(registry) == 0
    assert registry.latest_version() is None
    assert registry.get("anything") is None
