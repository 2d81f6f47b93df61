"""Durable shared state — the version marker and the migration lock."""

from strata.store.db import connect, transaction
from strata.store.lock import LeaseHandle, MigrationLock
from strata.store.marker import VersionMarkerStore

__all__ = ["LeaseHandle", "MigrationLock", "VersionMarkerStore", "connect", "transaction"]
