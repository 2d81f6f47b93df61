"""Tests for the strata CLI."""

import asyncio
import json

import pytest
from typer.testing import CliRunner

from strata.cli.context import StrataContext
from strata.cli.main import app
from strata.config import settings
from strata.store.lock import MigrationLock

runner = CliRunner()


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Point the CLI at a temp database and a two-unit manifest."""
    manifest = tmp_path / "manifest.json"
    manifest.write_text(json.dumps({"units": [
        {
            "range_from": "none",
            "range_to": "1.0",
            "prepare": [{"kind": "sql", "sql": "CREATE TABLE accounts (id INTEGER PRIMARY KEY, username TEXT)"}],
        },
        {
            "range_from": "1.0",
            "range_to": "1.1",
            "prepare": [{"kind": "sql", "sql": "ALTER TABLE accounts ADD COLUMN email TEXT"}],
            "cleanup": [{"kind": "sql", "sql": "SELECT 1"}],
        },
    ]}))
    db_path = tmp_path / "strata.db"
    monkeypatch.setattr(settings, "db_path", db_path)
    monkeypatch.setattr(settings, "manifest_path", manifest)
    monkeypatch.setattr(settings, "instance_id", "node-a")
    monkeypatch.setattr(settings, "lock_acquire_timeout", 0.0)
    StrataContext.reset()
    yield tmp_path
    StrataContext.reset()


def test_migrate_applies(workspace):
    result = runner.invoke(app, ["migrate", "--target", "1.1"])
    assert result.exit_code == 0, result.output
    assert "none-1.0" in result.output
    assert "1.0-1.1" in result.output


def test_migrate_twice_is_noop(workspace):
    runner.invoke(app, ["migrate", "--target", "1.1"])
    StrataContext.reset()
    result = runner.invoke(app, ["migrate", "-t", "1.1"])
    assert result.exit_code == 0
    assert "already at 1.1" in result.output


def test_migrate_without_path(workspace):
    result = runner.invoke(app, ["migrate", "--target", "3.0"])
    assert result.exit_code == 10
    assert "needs manual intervention" in result.output


def test_migrate_while_locked_elsewhere(workspace):
    asyncio.run(MigrationLock(settings.db_path).acquire("node-b", lease_seconds=60))
    result = runner.invoke(app, ["migrate", "--target", "1.1"])
    assert result.exit_code == 14
    assert "waiting on another instance" in result.output


def test_migrate_with_broken_manifest(workspace):
    (workspace / "manifest.json").write_text("{not json")
    result = runner.invoke(app, ["migrate", "--target", "1.1"])
    assert result.exit_code == 16


def test_validate(workspace):
    result = runner.invoke(app, ["validate", "--target", "1.1"])
    assert result.exit_code == 0
    assert "2 units OK" in result.output
    assert "none-1.0 -> 1.0-1.1" in result.output


def test_validate_reports_bad_registry(workspace):
    (workspace / "manifest.json").write_text(json.dumps({"units": [
        {"range_from": "1.0", "range_to": "1.1"},
        {"id": "other", "range_from": "1.0", "range_to": "1.1"},
    ]}))
    result = runner.invoke(app, ["validate"])
    assert result.exit_code == 16


def test_status(workspace):
    runner.invoke(app, ["migrate", "--target", "1.1"])
    StrataContext.reset()
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "1.1" in result.output
    assert "free" in result.output


def test_history(workspace):
    result = runner.invoke(app, ["history"])
    assert "No upgrades applied yet." in result.output

    runner.invoke(app, ["migrate", "--target", "1.1"])
    StrataContext.reset()
    result = runner.invoke(app, ["history"])
    assert result.exit_code == 0
    assert "1.0-1.1" in result.output


def test_sweep(workspace):
    result = runner.invoke(app, ["sweep"])
    assert "nothing pending" in result.output

    runner.invoke(app, ["migrate", "--target", "1.1"])
    runner.invoke(app, ["fleet", "report", "--version", "1.1"])
    StrataContext.reset()
    result = runner.invoke(app, ["sweep"])
    assert result.exit_code == 0
    assert "Cleaned:" in result.output
    assert "1.0-1.1" in result.output


def test_fleet_report_and_list(workspace):
    result = runner.invoke(app, ["fleet", "report", "-v", "1.0", "--instance-id", "node-b"])
    assert result.exit_code == 0
    assert "node-b" in result.output

    result = runner.invoke(app, ["fleet", "list"])
    assert result.exit_code == 0
    assert "node-b" in result.output
    assert "serving" in result.output


def test_fleet_report_rejects_bad_version(workspace):
    result = runner.invoke(app, ["fleet", "report", "-v", "1..0"])
    assert result.exit_code == 1
