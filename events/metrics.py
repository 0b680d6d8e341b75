"""
Session metrics — running conversation totals built from lifecycle events.

    metrics = SessionMetrics(bus)
    ...
    metrics.snapshot().escalation_rate
    metrics.stop()

Durations and message counts come from the conversation_end payloads, so
sessions recovered from storage by another process are counted correctly.
"""
from __future__ import annotations

import structlog
from pydantic import BaseModel

from events.bus import EventBus, EventKind, SessionEvent, Subscription
from models.schemas import SubjectId

logger = structlog.get_logger()


class MetricsSnapshot(BaseModel):
    conversations_started: int = 0
    conversations_ended: int = 0
    escalations: int = 0
    escalated_conversations: int = 0
    max_escalation_level: int = 0
    average_duration_ms: float = 0.0
    average_message_count: float = 0.0
    escalation_rate: float = 0.0


class SessionMetrics:
    """
    Subscribes to all event kinds. escalation_rate is the share of started
    conversations that escalated at least once, as a fraction in [0, 1].
    """

    def __init__(self, bus: EventBus):
        self._started = 0
        self._ended = 0
        self._escalations = 0
        self._escalated_conversations = 0
        self._max_level = 0
        self._total_duration_ms = 0
        self._total_messages = 0
        # subjects that escalated during their current conversation
        self._escalated_live: set[SubjectId] = set()
        self._subscriptions: list[Subscription] = [
            bus.subscribe(kind, self.handle) for kind in EventKind
        ]

    def handle(self, event: SessionEvent) -> None:
        if event.kind == EventKind.CONVERSATION_START:
            self._started += 1
        elif event.kind == EventKind.CONVERSATION_END:
            self._ended += 1
            self._total_duration_ms += max(event.duration_ms, 0)
            self._total_messages += event.message_count
            self._escalated_live.discard(event.subject_id)
        elif event.kind == EventKind.ESCALATION:
            self._escalations += 1
            self._max_level = max(self._max_level, event.level)
            if event.subject_id not in self._escalated_live:
                self._escalated_live.add(event.subject_id)
                self._escalated_conversations += 1

    def snapshot(self) -> MetricsSnapshot:
        ended = self._ended
        return MetricsSnapshot(
            conversations_started=self._started,
            conversations_ended=ended,
            escalations=self._escalations,
            escalated_conversations=self._escalated_conversations,
            max_escalation_level=self._max_level,
            average_duration_ms=self._total_duration_ms / ended if ended else 0.0,
            average_message_count=self._total_messages / ended if ended else 0.0,
            escalation_rate=(
                min(self._escalated_conversations / self._started, 1.0) if self._started else 0.0
            ),
        )

    def stop(self) -> None:
        if not self._subscriptions:
            return
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions.clear()
        logger.info("session_metrics_summary", **self.snapshot().model_dump())
