"""In-process events emitted while migrating."""

from strata.events.bus import Event, EventBus

__all__ = ["Event", "EventBus"]
