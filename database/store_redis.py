"""
Redis stores — records as string keys with a TTL, index as a sorted set.

Key layout ({prefix} defaults to "relay:"):
  {prefix}runstate:{subjectId}    envelope JSON, EXPIRE = max_age
  {prefix}runstate:index          ZSET member=subjectId score=epoch-ms
  {prefix}context:{subjectId}
  {prefix}context:index

Redis evicts records on its own once the TTL lapses; the sorted set is what
cleanup_expired() sweeps (ZRANGEBYSCORE up to the cutoff), which also clears
index members whose keys Redis already dropped.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.errors import CorruptedStateError, PersistenceIOError
from database.store_base import (
    CustomerContextStore, RecordStore, RunStateStore, T,
    _now_ms, track_operation,
)
from models.schemas import SubjectId

logger = structlog.get_logger()


class RedisRecordStore(RecordStore[T]):

    backend = "redis"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "relay:",
        max_age_s: Optional[int] = None,
        client: Any = None,
    ):
        super().__init__(max_age_s=max_age_s)
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._redis = client
        self._owns_client = client is None

    @property
    def index_key(self) -> str:
        return f"{self._prefix}{self.kind}:index"

    def _key(self, subject_id: SubjectId) -> str:
        return f"{self._prefix}{self.kind}:{subject_id}"

    def _client(self):
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
        return self._redis

    async def init(self) -> None:
        try:
            await self._client().ping()
        except RedisError as e:
            raise PersistenceIOError(f"Redis unreachable: {e}", backend=self.backend) from e
        logger.info("redis_store_connected", kind=self.kind, index_key=self.index_key)

    async def close(self) -> None:
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None

    async def save(self, subject_id: SubjectId, payload: T) -> None:
        timestamp = _now_ms()
        text = self.codec.encode(subject_id, payload, timestamp)
        client = self._client()

        with track_operation("save", self.kind, self.backend, subject_id):
            try:
                await client.set(self._key(subject_id), text, ex=max(1, int(self.max_age_s)))
            except RedisError as e:
                logger.error("redis_store_save_failed", kind=self.kind, subject_id=subject_id, error=str(e))
                raise PersistenceIOError(f"Failed to save {self.kind}: {e}",
                                         subject_id=subject_id, backend=self.backend) from e
            try:
                await client.zadd(self.index_key, {subject_id: timestamp})
            except RedisError as e:
                # the key TTL still bounds the record's lifetime
                logger.warning("redis_store_index_update_failed",
                               kind=self.kind, subject_id=subject_id, error=str(e))

    async def load(self, subject_id: SubjectId) -> Optional[T]:
        with track_operation("load", self.kind, self.backend, subject_id):
            try:
                text = await self._client().get(self._key(subject_id))
            except RedisError as e:
                logger.error("redis_store_load_failed", kind=self.kind, subject_id=subject_id, error=str(e))
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
        client = self._client()
        with track_operation("delete", self.kind, self.backend, subject_id):
            try:
                await client.delete(self._key(subject_id))
                await client.zrem(self.index_key, subject_id)
            except RedisError as e:
                raise PersistenceIOError(f"Failed to delete {self.kind}: {e}",
                                         subject_id=subject_id, backend=self.backend) from e

    async def _discard(self, subject_id: SubjectId) -> None:
        try:
            await self.delete(subject_id)
        except PersistenceIOError as e:
            logger.error("record_discard_failed", kind=self.kind, subject_id=subject_id, error=str(e))

    async def cleanup_expired(self, max_age_s: Optional[int] = None) -> int:
        cutoff = _now_ms() - self._max_age_ms(max_age_s)
        client = self._client()

        with track_operation("cleanup_expired", self.kind, self.backend):
            try:
                # exclusive bound: now - ts > max_age  ⇔  ts < cutoff
                expired = await client.zrangebyscore(self.index_key, "-inf", f"({cutoff}")
                if not expired:
                    return 0
                await client.delete(*[self._key(sid) for sid in expired])
                await client.zrem(self.index_key, *expired)
            except RedisError as e:
                logger.error("cleanup_expired_failed", kind=self.kind, backend=self.backend, error=str(e))
                return 0

        logger.info("expired_records_cleaned", kind=self.kind, backend=self.backend, removed=len(expired))
        return len(expired)


class RedisRunStateStore(RedisRecordStore, RunStateStore):
    pass


class RedisContextStore(RedisRecordStore, CustomerContextStore):
    pass
