"""
SQL stores — Portable queries for PostgreSQL, MySQL, SQLite.

One row per subject; the `updated_at` column doubles as the expiry index:

  save              → upsert (get + update / add)
  load              → primary-key get, lazy expiry
  cleanup_expired   → DELETE ... WHERE updated_at < cutoff
"""
from __future__ import annotations

import structlog
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from core.errors import CorruptedStateError, PersistenceIOError
from database.models import ContextRow, RunStateRow
from database.session import create_engine, create_session_factory, init_db, session_scope
from database.store_base import (
    CustomerContextStore, RecordStore, RunStateStore, T,
    _now_ms, track_operation,
)
from models.schemas import SubjectId

logger = structlog.get_logger()


class SqlRecordStore(RecordStore[T]):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    backend = "sql"
    row_model: type = None

    def __init__(
        self,
        database_url: str = "sqlite:///./session_relay.db",
        max_age_s: Optional[int] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        super().__init__(max_age_s=max_age_s)
        self._owns_engine = engine is None
        self._engine = engine or create_engine(database_url)
        self._session_factory = create_session_factory(self._engine)

    async def init(self) -> None:
        try:
            await init_db(self._engine, tables=[self.row_model.__table__])
        except SQLAlchemyError as e:
            raise PersistenceIOError(f"Failed to initialize {self.kind} table: {e}",
                                     backend=self.backend) from e

    async def close(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()
            logger.info("database_closed", kind=self.kind)

    async def save(self, subject_id: SubjectId, payload: T) -> None:
        timestamp = _now_ms()
        text = self.codec.encode(subject_id, payload, timestamp)

        with track_operation("save", self.kind, self.backend, subject_id):
            try:
                async with session_scope(self._session_factory) as db:
                    row = await db.get(self.row_model, subject_id)
                    if row:
                        row.payload = text
                        row.updated_at = timestamp
                    else:
                        db.add(self.row_model(subject_id=subject_id, payload=text, updated_at=timestamp))
            except SQLAlchemyError as e:
                logger.error("sql_store_save_failed", kind=self.kind, subject_id=subject_id, error=str(e))
                raise PersistenceIOError(f"Failed to save {self.kind}: {e}",
                                         subject_id=subject_id, backend=self.backend) from e

    async def load(self, subject_id: SubjectId) -> Optional[T]:
        with track_operation("load", self.kind, self.backend, subject_id):
            try:
                async with session_scope(self._session_factory) as db:
                    row = await db.get(self.row_model, subject_id)
                    text = row.payload if row else None
            except SQLAlchemyError as e:
                logger.error("sql_store_load_failed", kind=self.kind, subject_id=subject_id, error=str(e))
                return None

        if text is None:
            return None

        try:
            record = self.codec.decode(text)
        except CorruptedStateError as e:
            logger.warning("corrupted_record_deleted", kind=self.kind, subject_id=subject_id, error=str(e))
            await self._discard(subject_id)
            return None

        if self._is_expired(record.timestamp):
            logger.info("expired_record_deleted", kind=self.kind, subject_id=subject_id)
            await self._discard(subject_id)
            return None

        return record.payload

    async def delete(self, subject_id: SubjectId) -> None:
        with track_operation("delete", self.kind, self.backend, subject_id):
            try:
                async with session_scope(self._session_factory) as db:
                    await db.execute(delete(self.row_model).where(self.row_model.subject_id == subject_id))
            except SQLAlchemyError as e:
                raise PersistenceIOError(f"Failed to delete {self.kind}: {e}",
                                         subject_id=subject_id, backend=self.backend) from e

    async def _discard(self, subject_id: SubjectId) -> None:
        try:
            await self.delete(subject_id)
        except PersistenceIOError as e:
            logger.error("record_discard_failed", kind=self.kind, subject_id=subject_id, error=str(e))

    async def cleanup_expired(self, max_age_s: Optional[int] = None) -> int:
        cutoff = _now_ms() - self._max_age_ms(max_age_s)

        with track_operation("cleanup_expired", self.kind, self.backend):
            try:
                async with session_scope(self._session_factory) as db:
                    result = await db.execute(
                        delete(self.row_model).where(self.row_model.updated_at < cutoff)
                    )
                    removed = result.rowcount or 0
            except SQLAlchemyError as e:
                logger.error("cleanup_expired_failed", kind=self.kind, backend=self.backend, error=str(e))
                return 0

        if removed:
            logger.info("expired_records_cleaned", kind=self.kind, backend=self.backend, removed=removed)
        return removed


class SqlRunStateStore(SqlRecordStore, RunStateStore):
    row_model = RunStateRow


class SqlContextStore(SqlRecordStore, CustomerContextStore):
    row_model = ContextRow
