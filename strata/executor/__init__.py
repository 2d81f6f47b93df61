"""Applying migration units: the upgrade executor and the cleanup scheduler."""

from strata.executor.cleanup import CleanupScheduler
from strata.executor.upgrade import UpgradeExecutor

__all__ = ["CleanupScheduler", "UpgradeExecutor"]
