"""
Store Factory — Create the run-state and context stores from configuration.

Configuration in settings.yaml:
    persistence:
      # "file"   — JSON files on disk (default, reference layout)
      # "memory" — in-memory dicts (development, testing)
      # "redis"  — keys with TTL + sorted-set index
      # "sql"    — PostgreSQL / MySQL / SQLite tables
      backend: "file"
      data_dir: "./data/conversation-states"

      # Independent windows: approvals pending vs. customer continuity
      run_state_max_age_s: 86400
      context_max_age_s: 604800

      redis_url: "redis://localhost:6379"
      key_prefix: "relay:"
      database_url: "sqlite:///./session_relay.db"

Usage:
    from database.store_factory import create_stores
    run_states, contexts = create_stores(get_settings().persistence)
"""
from __future__ import annotations

import structlog

from config.settings import PersistenceConfig
from database.store_base import CustomerContextStore, RunStateStore

logger = structlog.get_logger()

BACKENDS = ("file", "memory", "redis", "sql")


def create_stores(config: PersistenceConfig = None) -> tuple[RunStateStore, CustomerContextStore]:
    """Factory: create the (run-state, context) store pair for the configured backend."""
    config = config or PersistenceConfig()
    backend = config.backend
    run_age = config.run_state_max_age_s
    ctx_age = config.context_max_age_s

    if backend not in BACKENDS:
        logger.warning("unknown_store_backend", backend=backend, fallback="file")
        backend = "file"

    if backend == "memory":
        from database.store_memory import InMemoryContextStore, InMemoryRunStateStore
        stores = (InMemoryRunStateStore(max_age_s=run_age), InMemoryContextStore(max_age_s=ctx_age))

    elif backend == "redis":
        from database.store_redis import RedisContextStore, RedisRunStateStore
        stores = (
            RedisRunStateStore(redis_url=config.redis_url, key_prefix=config.key_prefix, max_age_s=run_age),
            RedisContextStore(redis_url=config.redis_url, key_prefix=config.key_prefix, max_age_s=ctx_age),
        )

    elif backend == "sql":
        from database.store import SqlContextStore, SqlRunStateStore
        stores = (
            SqlRunStateStore(database_url=config.database_url, max_age_s=run_age),
            SqlContextStore(database_url=config.database_url, max_age_s=ctx_age),
        )

    else:
        from database.store_file import FileContextStore, FileRunStateStore
        stores = (
            FileRunStateStore(data_dir=config.data_dir, max_age_s=run_age),
            FileContextStore(data_dir=config.data_dir, max_age_s=ctx_age),
        )

    logger.info("stores_created", backend=backend,
                run_state_max_age_s=run_age, context_max_age_s=ctx_age)
    return stores
