"""Event logger — writes every session lifecycle event to the structured log."""
from __future__ import annotations

import structlog

from events.bus import EventBus, EventKind, SessionEvent, Subscription

logger = structlog.get_logger()


class EventLogger:
    """Subscribes to all event kinds; escalations are logged as warnings."""

    def __init__(self, bus: EventBus):
        self._subscriptions: list[Subscription] = [
            bus.subscribe(kind, self.handle) for kind in EventKind
        ]

    def handle(self, event: SessionEvent) -> None:
        fields = event.model_dump(mode="json", exclude={"kind", "occurred_at"})
        if event.kind == EventKind.ESCALATION:
            logger.warning("session_escalated", **fields)
        else:
            logger.info(event.kind.value, **fields)

    def stop(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions.clear()
