"""
Abstract Record Store — Interface for all persistence backends.

Two record kinds share one contract:
  - RunStateStore         payload: str              (opaque paused-execution blob)
  - CustomerContextStore  payload: CustomerContext  (history + customer metadata)

Implementations:
  - File*Store     (JSON files on disk, reference layout, default)
  - InMemory*Store (dict-based, single-process, no persistence)
  - Redis*Store    (keys with TTL + sorted-set index)
  - Sql*Store      (PostgreSQL / MySQL / SQLite via SQLAlchemy async)

Record envelope (identical for every backend):

  runstate  → {"subjectId": ..., "runState": "<blob>", "timestamp": epoch-ms}
  context   → {"subjectId": ..., "context": {...camelCase...}, "timestamp": epoch-ms}

Expiry is two independent policies sharing one comparison
(now_ms - timestamp > max_age_ms):
  load()            — lazy check, deletes the stale record it finds
  cleanup_expired() — index sweep, O(expired) record deletions
"""
from __future__ import annotations

import json
import time
import structlog
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from pydantic import ValidationError

from config.settings import DAY_S
from core.errors import CorruptedStateError
from models.schemas import CustomerContext, SubjectId

logger = structlog.get_logger()

T = TypeVar("T")

SLOW_OPERATION_MS = 200


def _now_ms() -> int:
    return int(time.time() * 1000)


@contextmanager
def track_operation(operation: str, kind: str, backend: str, subject_id: str = ""):
    """Warn when a persistence call takes longer than SLOW_OPERATION_MS."""
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning("slow_persistence_operation",
                           operation=operation, kind=kind, backend=backend,
                           subject_id=subject_id, duration_ms=round(duration_ms, 1))


# ──────────────────────────────────────────────────────────────
#  Codecs
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StoredRecord(Generic[T]):
    subject_id: SubjectId
    payload: T
    timestamp: int


def _parse_envelope(text: Any, payload_key: str) -> dict[str, Any]:
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptedStateError(f"Record is not valid UTF-8: {e}") from e
    if not isinstance(text, str) or not text.strip():
        raise CorruptedStateError("Empty record")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CorruptedStateError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise CorruptedStateError("Record is not an object")
    if payload_key not in data:
        raise CorruptedStateError(f"Record is missing '{payload_key}'")
    timestamp = data.get("timestamp")
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        raise CorruptedStateError("Record has no numeric timestamp")
    return data


class RunStateCodec:
    """Paused execution state: the engine's serialized blob, stored verbatim."""

    payload_key = "runState"

    @staticmethod
    def encode(subject_id: SubjectId, payload: str, timestamp: int) -> str:
        return json.dumps({
            "subjectId": subject_id,
            "runState": payload,
            "timestamp": timestamp,
        })

    @classmethod
    def decode(cls, text: Any) -> StoredRecord[str]:
        data = _parse_envelope(text, cls.payload_key)
        run_state = data["runState"]
        if not isinstance(run_state, str) or not run_state:
            raise CorruptedStateError("runState is not a non-empty string")
        return StoredRecord(str(data.get("subjectId", "")), run_state, int(data["timestamp"]))


class ContextCodec:
    """Customer context: camelCase JSON, ISO-8601 datetimes."""

    payload_key = "context"

    @staticmethod
    def encode(subject_id: SubjectId, payload: CustomerContext, timestamp: int) -> str:
        return json.dumps({
            "subjectId": subject_id,
            "context": payload.model_dump(mode="json", by_alias=True),
            "timestamp": timestamp,
        })

    @classmethod
    def decode(cls, text: Any) -> StoredRecord[CustomerContext]:
        data = _parse_envelope(text, cls.payload_key)
        try:
            context = CustomerContext.model_validate(data["context"])
        except ValidationError as e:
            raise CorruptedStateError(f"Invalid context: {e.error_count()} field error(s)") from e
        return StoredRecord(str(data.get("subjectId", context.subject_id)), context, int(data["timestamp"]))


# ──────────────────────────────────────────────────────────────
#  Store contract
# ──────────────────────────────────────────────────────────────

class RecordStore(ABC, Generic[T]):
    """Interface that all record store backends must implement."""

    kind: str = ""
    backend: str = ""
    default_max_age_s: int = DAY_S
    codec: Any = None

    def __init__(self, max_age_s: Optional[int] = None):
        self.max_age_s = self.default_max_age_s if max_age_s is None else max_age_s

    def _max_age_ms(self, max_age_s: Optional[int] = None) -> int:
        age = self.max_age_s if max_age_s is None else max_age_s
        return int(age * 1000)

    def _is_expired(self, timestamp: int, now_ms: Optional[int] = None) -> bool:
        now_ms = _now_ms() if now_ms is None else now_ms
        return now_ms - timestamp > self._max_age_ms()

    @abstractmethod
    async def init(self) -> None:
        """Idempotent; safe to call concurrently."""
        ...

    @abstractmethod
    async def save(self, subject_id: SubjectId, payload: T) -> None:
        ...

    @abstractmethod
    async def load(self, subject_id: SubjectId) -> Optional[T]:
        """Missing, expired, corrupted or unreachable → None."""
        ...

    @abstractmethod
    async def delete(self, subject_id: SubjectId) -> None:
        ...

    @abstractmethod
    async def cleanup_expired(self, max_age_s: Optional[int] = None) -> int:
        """Remove every record older than max_age_s; returns the count (0 on failure)."""
        ...

    async def close(self) -> None:
        pass

    async def exists(self, subject_id: SubjectId) -> bool:
        return await self.load(subject_id) is not None


class RunStateStore(RecordStore[str]):
    kind = "runstate"
    default_max_age_s = DAY_S
    codec = RunStateCodec


class CustomerContextStore(RecordStore[CustomerContext]):
    kind = "context"
    default_max_age_s = 7 * DAY_S
    codec = ContextCodec
