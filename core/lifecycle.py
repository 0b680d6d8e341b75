"""
Lifecycle Scheduler — periodic expiry of sessions, engine handles and records.

Runs as a background task inside the FastAPI lifespan (or any event loop).

Each tick, in order:
    1. in-memory sessions idle > in_memory_max_age_s → end_session()
       (contexts are persisted before they leave memory)
    2. engine handle cache above its limit → cleared
    3. run-state store sweep   (approval-pending window, default 24 h)
    4. context store sweep     (customer-continuity window, default 7 d)
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from pydantic import BaseModel

from config.settings import DAY_S, HOUR_S
from core.orchestrator import SessionOrchestrator

logger = structlog.get_logger()


class SweepStats(BaseModel):
    sessions_expired: int = 0
    handles_pruned: int = 0
    run_states_removed: int = 0
    contexts_removed: int = 0

    @property
    def total(self) -> int:
        return self.sessions_expired + self.run_states_removed + self.contexts_removed


class LifecycleScheduler:

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        interval_s: float = HOUR_S,
        in_memory_max_age_s: int = 4 * HOUR_S,
        run_state_max_age_s: int = DAY_S,
        context_max_age_s: int = 7 * DAY_S,
    ):
        self.orchestrator = orchestrator
        self.interval_s = interval_s
        self.in_memory_max_age_s = in_memory_max_age_s
        self.run_state_max_age_s = run_state_max_age_s
        self.context_max_age_s = context_max_age_s
        self._running = False
        self._task: Optional[asyncio.Task] = None

        if not (in_memory_max_age_s <= run_state_max_age_s <= context_max_age_s):
            logger.warning("lifecycle_thresholds_unordered",
                           in_memory_max_age_s=in_memory_max_age_s,
                           run_state_max_age_s=run_state_max_age_s,
                           context_max_age_s=context_max_age_s)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep loop as a background task."""
        if self.running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="lifecycle_scheduler")
        logger.info("lifecycle_scheduler_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        """Gracefully stop the scheduler."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("lifecycle_scheduler_stopped")

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_s)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("lifecycle_sweep_error", error=str(e))

    async def sweep(self) -> SweepStats:
        """Single tick. Store sweeps report 0 on their own failures."""
        orch = self.orchestrator
        stats = SweepStats(
            sessions_expired=await orch.expire_idle_sessions(self.in_memory_max_age_s),
            handles_pruned=orch.prune_handles(),
        )
        stats.run_states_removed = await orch.run_states.cleanup_expired(self.run_state_max_age_s)
        stats.contexts_removed = await orch.context_store.cleanup_expired(self.context_max_age_s)

        if stats.total or stats.handles_pruned:
            logger.info("lifecycle_sweep_completed", **stats.model_dump())
        return stats
