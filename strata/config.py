"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings

from strata.types import new_id


class StrataSettings(BaseSettings):
    db_path: Path = Path(".strata/strata.db")
    manifest_path: Path = Path("migrations/manifest.json")
    instance_id: str = f"instance-{new_id()}"
    log_level: str = "INFO"

    # Migration lock lease
    lease_seconds: float = 60.0
    renew_interval_seconds: float = 15.0  # well under lease_seconds
    lock_acquire_timeout: float = 10.0
    stuck_lease_multiplier: int = 5  # alert once a lease is this many lifetimes old

    # Fleet checks
    convergence_timeout: float = 10.0
    fleet_stale_after_seconds: float = 120.0

    # Startup wait for another instance's migration
    poll_interval_seconds: float = 2.0
    startup_deadline_seconds: float = 900.0
    max_backoff_seconds: float = 30.0

    # Background cleanup sweep
    cleanup_interval_seconds: float = 300.0

    model_config = {"env_prefix": "STRATA_"}


settings = StrataSettings()
