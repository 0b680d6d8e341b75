"""
In-memory stores — dict-backed, for development and testing.

Features:
  - Zero dependencies (no disk, no Redis, no database)
  - Same semantics as the file stores, including lazy expiry and sweeps
  - Records are kept in their encoded envelope form, so a loaded payload is
    never the same object the caller saved
  - All data lost on process restart
"""
from __future__ import annotations

import structlog
from typing import Optional

from core.errors import CorruptedStateError
from database.store_base import (
    CustomerContextStore, RecordStore, RunStateStore, T,
    _now_ms, track_operation,
)
from models.schemas import SubjectId

logger = structlog.get_logger()


class InMemoryRecordStore(RecordStore[T]):

    backend = "memory"

    def __init__(self, max_age_s: Optional[int] = None):
        super().__init__(max_age_s=max_age_s)
        self._records: dict[str, str] = {}     # subject_id → encoded envelope
        self._index: dict[str, int] = {}       # subject_id → epoch-ms

    def __len__(self) -> int:
        return len(self._records)

    async def init(self) -> None:
        logger.debug("inmemory_store_initialized", kind=self.kind)

    async def save(self, subject_id: SubjectId, payload: T) -> None:
        timestamp = _now_ms()
        with track_operation("save", self.kind, self.backend, subject_id):
            self._records[subject_id] = self.codec.encode(subject_id, payload, timestamp)
            self._index[subject_id] = timestamp

    async def load(self, subject_id: SubjectId) -> Optional[T]:
        text = self._records.get(subject_id)
        if text is None:
            return None
        try:
            record = self.codec.decode(text)
        except CorruptedStateError as e:
            logger.warning("corrupted_record_deleted", kind=self.kind, subject_id=subject_id, error=str(e))
            await self.delete(subject_id)
            return None
        if self._is_expired(record.timestamp):
            logger.info("expired_record_deleted", kind=self.kind, subject_id=subject_id)
            await self.delete(subject_id)
            return None
        return record.payload

    async def delete(self, subject_id: SubjectId) -> None:
        self._records.pop(subject_id, None)
        self._index.pop(subject_id, None)

    async def cleanup_expired(self, max_age_s: Optional[int] = None) -> int:
        max_age_ms = self._max_age_ms(max_age_s)
        now = _now_ms()
        expired = [sid for sid, ts in self._index.items() if now - ts > max_age_ms]
        for sid in expired:
            await self.delete(sid)
        if expired:
            logger.info("expired_records_cleaned", kind=self.kind, backend=self.backend, removed=len(expired))
        return len(expired)


class InMemoryRunStateStore(InMemoryRecordStore, RunStateStore):
    pass


class InMemoryContextStore(InMemoryRecordStore, CustomerContextStore):
    pass
