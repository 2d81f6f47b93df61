"""Fleet membership — who else is running, and at which schema version."""

from strata.fleet.membership import (
    FleetMembership,
    SqliteFleetMembership,
    StaticFleetMembership,
    converged,
    members_blocking,
)

__all__ = [
    "FleetMembership",
    "SqliteFleetMembership",
    "StaticFleetMembership",
    "converged",
    "members_blocking",
]
