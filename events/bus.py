"""
Event Bus — typed lifecycle events with isolated listener delivery.

    bus = EventBus()
    sub = bus.subscribe(EventKind.ESCALATION, on_escalation)
    delivered = await bus.publish(EscalationEvent(subject_id=..., level=2, previous_level=1))
    sub.unsubscribe()

Listeners may be plain callables or coroutine functions. A listener that
raises is logged and skipped; the remaining listeners still receive the
event. The bus is an instance owned by whoever wires the system together,
never a module-level singleton.
"""
from __future__ import annotations

import inspect
import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from pydantic import BaseModel, Field

from models.schemas import SubjectId

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventKind(str, Enum):
    CONVERSATION_START = "conversation_start"
    CONVERSATION_END = "conversation_end"
    ESCALATION = "escalation"


# ──────────────────────────────────────────────────────────────
#  Payloads — one fixed shape per kind
# ──────────────────────────────────────────────────────────────

class SessionEvent(BaseModel):
    kind: EventKind
    subject_id: SubjectId
    occurred_at: datetime = Field(default_factory=_utcnow)


class ConversationStartEvent(SessionEvent):
    kind: EventKind = EventKind.CONVERSATION_START
    agent_name: str = ""


class ConversationEndEvent(SessionEvent):
    kind: EventKind = EventKind.CONVERSATION_END
    duration_ms: int = 0
    message_count: int = 0


class EscalationEvent(SessionEvent):
    kind: EventKind = EventKind.ESCALATION
    level: int
    previous_level: int = 0


Listener = Callable[[SessionEvent], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by subscribe(); unsubscribe() is idempotent."""

    def __init__(self, bus: EventBus, kind: EventKind, listener: Listener):
        self._bus = bus
        self.kind = kind
        self.listener = listener
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._bus._remove(self)


class EventBus:

    def __init__(self):
        self._subscriptions: dict[EventKind, list[Subscription]] = {kind: [] for kind in EventKind}
        self._published: dict[EventKind, int] = {kind: 0 for kind in EventKind}
        self._listener_errors = 0

    def subscribe(self, kind: EventKind, listener: Listener) -> Subscription:
        sub = Subscription(self, EventKind(kind), listener)
        self._subscriptions[sub.kind].append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscriptions[sub.kind]
        if sub in subs:
            subs.remove(sub)

    async def publish(self, event: SessionEvent) -> int:
        """Deliver to every listener of the event's kind; returns successful deliveries."""
        self._published[event.kind] += 1
        delivered = 0
        # snapshot: listeners may unsubscribe while being called
        for sub in list(self._subscriptions[event.kind]):
            try:
                result = sub.listener(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                self._listener_errors += 1
                logger.error("event_listener_failed",
                             kind=event.kind.value, subject_id=event.subject_id,
                             listener=getattr(sub.listener, "__qualname__", repr(sub.listener)),
                             error=str(e))
        return delivered

    def listener_count(self, kind: EventKind) -> int:
        return len(self._subscriptions[EventKind(kind)])

    def stats(self) -> dict[str, Any]:
        return {
            "listeners": {k.value: len(v) for k, v in self._subscriptions.items()},
            "published": {k.value: n for k, n in self._published.items()},
            "listener_errors": self._listener_errors,
        }

    def clear(self) -> None:
        for subs in self._subscriptions.values():
            for sub in subs:
                sub.active = False
            subs.clear()
