"""
Events — conversation_start / conversation_end / escalation notifications.
"""
from events.bus import (
    EventBus, EventKind, Subscription, SessionEvent,
    ConversationStartEvent, ConversationEndEvent, EscalationEvent,
)
from events.event_logger import EventLogger
from events.metrics import MetricsSnapshot, SessionMetrics

__all__ = [
    "EventBus", "EventKind", "Subscription", "SessionEvent",
    "ConversationStartEvent", "ConversationEndEvent", "EscalationEvent",
    "EventLogger", "MetricsSnapshot", "SessionMetrics",
]
