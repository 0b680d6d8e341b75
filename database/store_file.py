"""
File stores — JSON records on disk, one file per subject.

Data layout:
  {data_dir}/
    runstate-{subjectId}.json    paused execution state
    index.json                   {subjectId: epoch-ms} for run states
    context-{subjectId}.json     customer context
    context-index.json           {subjectId: epoch-ms} for contexts

Features:
  - Survives process restarts
  - No external dependencies (no database server, no Redis)
  - Atomic writes: temp file + rename
  - File I/O runs in a worker thread; an asyncio.Lock serializes index
    read-modify-write within one store instance
  - init() reconciles the index with the directory contents

Subject ids are percent-quoted for file names ("/" never reaches the path).
"""
from __future__ import annotations

import asyncio
import json
import os
import tempfile
import structlog
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote

from core.errors import CorruptedStateError, PersistenceIOError
from database.store_base import (
    CustomerContextStore, RecordStore, RunStateStore, T,
    _now_ms, track_operation,
)
from models.schemas import SubjectId

logger = structlog.get_logger()

_INDEX_FILES = {
    "runstate": "index.json",
    "context": "context-index.json",
}
_SAFE_CHARS = "+_-.@"


class FileRecordStore(RecordStore[T]):
    """Shared file-backed implementation; concrete classes pick the record kind."""

    backend = "file"

    def __init__(self, data_dir: str = "./data/conversation-states", max_age_s: Optional[int] = None):
        super().__init__(max_age_s=max_age_s)
        self._data_dir = Path(data_dir)
        self._index_path = self._data_dir / _INDEX_FILES[self.kind]
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def _record_path(self, subject_id: SubjectId) -> Path:
        return self._data_dir / f"{self.kind}-{quote(subject_id, safe=_SAFE_CHARS)}.json"

    def _subject_from_path(self, path: Path) -> SubjectId:
        return unquote(path.stem[len(self.kind) + 1:])

    # ── Sync helpers (run in a worker thread) ─────────────

    def _write_atomic(self, path: Path, text: str) -> None:
        self._data_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._data_dir, prefix=f".{path.stem}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_name, path)  # atomic on POSIX
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _read_bytes(path: Path) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _read_index(self) -> dict[str, int]:
        raw = self._read_bytes(self._index_path)
        if not raw or not raw.strip():
            return {}
        try:
            data = json.loads(raw.decode("utf-8"))
        except ValueError:
            # bad UTF-8 or bad JSON; the index is rebuilt from records on init
            logger.warning("file_store_index_corrupted", kind=self.kind, path=str(self._index_path))
            return {}
        if not isinstance(data, dict):
            return {}
        return {
            str(k): int(v) for k, v in data.items()
            if isinstance(v, (int, float)) and not isinstance(v, bool)
        }

    def _write_index(self, index: dict[str, int]) -> None:
        self._write_atomic(self._index_path, json.dumps(index, indent=2))

    def _set_index_entry(self, subject_id: SubjectId, timestamp: Optional[int]) -> None:
        index = self._read_index()
        if timestamp is None:
            if subject_id not in index:
                return
            index.pop(subject_id)
        else:
            index[subject_id] = timestamp
        self._write_index(index)

    def _reconcile(self) -> tuple[int, int, int]:
        """Drop index entries without a record, index records without an entry."""
        self._data_dir.mkdir(parents=True, exist_ok=True)
        index = self._read_index()
        records = {
            self._subject_from_path(p): p
            for p in self._data_dir.glob(f"{self.kind}-*.json")
            if p != self._index_path
        }

        dropped = [sid for sid in index if sid not in records]
        for sid in dropped:
            index.pop(sid)

        adopted = corrupted = 0
        for sid, path in records.items():
            if sid in index:
                continue
            try:
                record = self.codec.decode(self._read_bytes(path))
            except CorruptedStateError:
                path.unlink(missing_ok=True)
                corrupted += 1
                continue
            index[sid] = record.timestamp
            adopted += 1

        if dropped or adopted:
            self._write_index(index)
        return len(dropped), adopted, corrupted

    def _sweep(self, now_ms: int, max_age_ms: int) -> int:
        index = self._read_index()
        survivors: dict[str, int] = {}
        removed = 0
        for sid, timestamp in index.items():
            if now_ms - timestamp > max_age_ms:
                # orphan entries (record already gone) count as removed
                self._record_path(sid).unlink(missing_ok=True)
                removed += 1
            else:
                survivors[sid] = timestamp
        if removed:
            self._write_index(survivors)
        return removed

    # ── RecordStore interface ─────────────────────────────

    async def init(self) -> None:
        async with self._lock:
            try:
                dropped, adopted, corrupted = await asyncio.to_thread(self._reconcile)
            except OSError as e:
                raise PersistenceIOError(f"Failed to initialize {self.kind} store: {e}",
                                         backend=self.backend) from e
            self._initialized = True
        logger.info("file_store_initialized",
                    kind=self.kind, data_dir=str(self._data_dir),
                    orphan_entries_dropped=dropped, orphan_records_indexed=adopted,
                    corrupted_records_removed=corrupted)

    async def save(self, subject_id: SubjectId, payload: T) -> None:
        if not self._initialized:
            await self.init()
        timestamp = _now_ms()
        text = self.codec.encode(subject_id, payload, timestamp)
        path = self._record_path(subject_id)

        with track_operation("save", self.kind, self.backend, subject_id):
            try:
                await asyncio.to_thread(self._write_atomic, path, text)
            except OSError as e:
                logger.error("file_store_save_failed", kind=self.kind, subject_id=subject_id, error=str(e))
                raise PersistenceIOError(f"Failed to save {self.kind}: {e}",
                                         subject_id=subject_id, backend=self.backend) from e
            try:
                async with self._lock:
                    await asyncio.to_thread(self._set_index_entry, subject_id, timestamp)
            except OSError as e:
                # record is durable; reconcile on next init picks it up
                logger.warning("file_store_index_update_failed",
                               kind=self.kind, subject_id=subject_id, error=str(e))

        logger.debug("record_saved", kind=self.kind, subject_id=subject_id)

    async def load(self, subject_id: SubjectId) -> Optional[T]:
        path = self._record_path(subject_id)
        with track_operation("load", self.kind, self.backend, subject_id):
            try:
                raw = await asyncio.to_thread(self._read_bytes, path)
            except OSError as e:
                logger.error("file_store_load_failed", kind=self.kind, subject_id=subject_id, error=str(e))
                return None

        if raw is None:
            return None

        try:
            record = self.codec.decode(raw)
        except CorruptedStateError as e:
            logger.warning("corrupted_record_deleted", kind=self.kind, subject_id=subject_id, error=str(e))
            await self._discard(subject_id)
            return None

        if self._is_expired(record.timestamp):
            logger.info("expired_record_deleted", kind=self.kind, subject_id=subject_id,
                        age_ms=_now_ms() - record.timestamp)
            await self._discard(subject_id)
            return None

        return record.payload

    async def delete(self, subject_id: SubjectId) -> None:
        path = self._record_path(subject_id)
        with track_operation("delete", self.kind, self.backend, subject_id):
            try:
                await asyncio.to_thread(path.unlink, missing_ok=True)
            except OSError as e:
                raise PersistenceIOError(f"Failed to delete {self.kind}: {e}",
                                         subject_id=subject_id, backend=self.backend) from e
            try:
                async with self._lock:
                    await asyncio.to_thread(self._set_index_entry, subject_id, None)
            except OSError as e:
                logger.warning("file_store_index_update_failed",
                               kind=self.kind, subject_id=subject_id, error=str(e))

    async def _discard(self, subject_id: SubjectId) -> None:
        try:
            await self.delete(subject_id)
        except PersistenceIOError as e:
            logger.error("record_discard_failed", kind=self.kind, subject_id=subject_id, error=str(e))

    async def cleanup_expired(self, max_age_s: Optional[int] = None) -> int:
        max_age_ms = self._max_age_ms(max_age_s)
        with track_operation("cleanup_expired", self.kind, self.backend):
            try:
                async with self._lock:
                    removed = await asyncio.to_thread(self._sweep, _now_ms(), max_age_ms)
            except OSError as e:
                logger.error("cleanup_expired_failed", kind=self.kind, backend=self.backend, error=str(e))
                return 0

        if removed:
            logger.info("expired_records_cleaned", kind=self.kind, backend=self.backend, removed=removed)
        return removed


class FileRunStateStore(FileRecordStore, RunStateStore):
    pass


class FileContextStore(FileRecordStore, CustomerContextStore):
    pass
