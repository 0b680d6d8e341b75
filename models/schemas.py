"""
Core data models for the session layer.
These are the universal types shared across all modules.

Persisted models use camelCase aliases so the on-disk envelope matches the
record layout shared by every store backend:

  context-{subjectId}.json
    { "subjectId": ..., "context": { ...CustomerContext, "sessionStartTime": ISO,
      "lastActiveAt": ISO }, "timestamp": epoch-ms }
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SubjectId = str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    SMS = "sms"
    VOICE = "voice"
    WEB = "web"


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    AWAITING_APPROVAL = "awaiting_approval"
    REJECTED = "rejected"
    ERROR = "error"


class SessionState(str, Enum):
    FRESH = "fresh"
    ACTIVE = "active"
    AWAITING_APPROVAL = "awaiting_approval"


# ──────────────────────────────────────────────────────────────
#  Customer Context — long-lived per-subject record
# ──────────────────────────────────────────────────────────────

class CustomerContext(BaseModel):
    """
    Conversation history and customer metadata for one subject.

    The in-memory copy held by the orchestrator is authoritative while a
    session is active; the context store is authoritative across restarts
    and idle periods.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    subject_id: SubjectId
    conversation_history: list[dict[str, Any]] = []
    session_start_time: datetime = Field(default_factory=_utcnow)
    last_active_at: datetime = Field(default_factory=_utcnow)
    escalation_level: int = 0
    resolved_issues: list[str] = []
    last_agent: Optional[str] = None
    metadata: dict[str, Any] = {}

    @field_validator("session_start_time", "last_active_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        # naive timestamps from older records are taken as UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @classmethod
    def new(cls, subject_id: SubjectId) -> CustomerContext:
        now = _utcnow()
        return cls(
            subject_id=subject_id,
            session_start_time=now,
            last_active_at=now,
            metadata={"subject_id": subject_id},
        )

    @property
    def message_count(self) -> int:
        return len(self.conversation_history)

    def touch(self) -> None:
        self.last_active_at = _utcnow()

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or _utcnow()
        return (now - self.last_active_at).total_seconds()


class SessionInfo(BaseModel):
    """Read-only projection of a CustomerContext for external inspection."""
    subject_id: SubjectId
    session_start_time: datetime
    last_active_at: datetime
    escalation_level: int
    message_count: int

    @classmethod
    def from_context(cls, context: CustomerContext) -> SessionInfo:
        return cls(
            subject_id=context.subject_id,
            session_start_time=context.session_start_time,
            last_active_at=context.last_active_at,
            escalation_level=context.escalation_level,
            message_count=context.message_count,
        )


# ──────────────────────────────────────────────────────────────
#  Approvals — human sign-off on pending side effects
# ──────────────────────────────────────────────────────────────

class ApprovalRequest(BaseModel):
    """A side-effecting action the engine paused on."""
    id: str
    tool_name: str = ""
    arguments: dict[str, Any] = {}


class ApprovalDecision(BaseModel):
    request_id: str
    approved: bool
    reason: str = ""


# ──────────────────────────────────────────────────────────────
#  Turn Result — what a channel adapter gets back
# ──────────────────────────────────────────────────────────────

class TurnResult(BaseModel):
    subject_id: SubjectId
    status: TurnStatus
    response: str = ""
    new_items: list[dict[str, Any]] = []
    final_agent: Optional[str] = None
    pending_approvals: list[ApprovalRequest] = []

    @property
    def awaiting_approval(self) -> bool:
        return self.status == TurnStatus.AWAITING_APPROVAL
