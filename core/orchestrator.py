"""
Session Orchestrator — the per-subject conversation lifecycle.

Architecture:
  Turn:       channel adapter → SubjectResolver → process_turn(agent, subject, text)
              → context (memory → store → new) → hints + user message
              → paused state? restore + continue : history (+ profile summary)
              → ExecutionEngine.run (timeout-bounded)
              → Completed:        delete paused state, persist context
                AwaitingApproval: save paused state, persist context

  Approvals:  resolve_approvals(subject, decisions)
              → any rejection: discard paused state, engine untouched
              → all approved: restore + resume, interpreted like a turn

  Lifecycle:  end_session / expire_idle_sessions / prune_handles, driven by
              callers and core.lifecycle.LifecycleScheduler

Per subject:
  FRESH → ACTIVE → AWAITING_APPROVAL → ACTIVE ... (EXPIRED from any state)

The in-memory context is authoritative while a session is live; the context
store is authoritative across restarts and idle periods. Turns for the same
subject are not serialized here; channel adapters deliver them one at a time.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Optional

from context.enrichment import (
    eligible_history, enrich_with_profile, extract_customer_info, merge_hints,
)
from core.engine import AwaitingApproval, Completed, EngineResult, ExecutionEngine, Failed
from core.errors import (
    EngineFailureError, EngineTimeoutError, NoPendingStateError,
    PersistenceIOError, SessionRelayError,
)
from database.store_base import CustomerContextStore, RunStateStore
from events.bus import ConversationEndEvent, ConversationStartEvent, EscalationEvent, EventBus
from models.schemas import (
    ApprovalDecision, CustomerContext, SessionInfo, SessionState,
    SubjectId, TurnResult, TurnStatus, _utcnow,
)

logger = structlog.get_logger()

REJECTION_MESSAGE = "I understand you don't want me to proceed with those actions. How else can I help you?"
APPROVAL_ERROR_MESSAGE = (
    "I encountered an error while processing the approved actions. Please try your request again."
)


class SessionOrchestrator:
    """
    Owns every piece of per-subject runtime state: the in-memory context
    cache and the engine handle cache. Nothing here is module-global.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        run_states: RunStateStore,
        contexts: CustomerContextStore,
        events: EventBus = None,
        turn_timeout_s: float = 30.0,
        handle_cache_limit: int = 100,
        default_agent: Any = "customer_support",
    ):
        self.engine = engine
        self.run_states = run_states
        self.context_store = contexts
        self.events = events or EventBus()
        self.turn_timeout_s = turn_timeout_s
        self.handle_cache_limit = handle_cache_limit
        self.default_agent = default_agent

        self._contexts: dict[SubjectId, CustomerContext] = {}
        self._handles: dict[SubjectId, Any] = {}

    async def start(self) -> None:
        await asyncio.gather(self.run_states.init(), self.context_store.init())
        logger.info("session_orchestrator_started",
                    run_state_backend=self.run_states.backend,
                    context_backend=self.context_store.backend)

    async def shutdown(self) -> None:
        """End every live session (contexts persisted), then release the stores."""
        live = list(self._contexts)
        for subject_id in live:
            await self.end_session(subject_id)
        await asyncio.gather(self.run_states.close(), self.context_store.close())
        logger.info("session_orchestrator_stopped", sessions_ended=len(live))

    # ══════════════════════════════════════════════════════════
    #  TURN — one user message through the engine
    # ══════════════════════════════════════════════════════════

    async def process_turn(
        self,
        agent: Any,
        subject_id: SubjectId,
        text: str,
        metadata: dict[str, Any] = None,
    ) -> TurnResult:
        """
        Main entry point for ALL inbound messages across ALL channels.

        Raises EngineTimeoutError / EngineFailureError after ending the
        session; a corrupted paused state is recovered silently.
        """
        agent_name = self.engine.agent_name(agent)
        logger.info("conversation_turn_started",
                    subject_id=subject_id, agent_name=agent_name, message_length=len(text))

        try:
            context = await self._get_or_create_context(subject_id, agent_name)
            self._absorb_channel_metadata(context, metadata or {})
            updated = merge_hints(context.metadata, extract_customer_info(text))
            if updated:
                logger.debug("customer_hints_extracted", subject_id=subject_id, keys=updated)

            context.conversation_history.append({"role": "user", "content": text})

            run_input = await self._prepare_input(agent, subject_id, context)
            handle = self._get_handle(subject_id)
            result = await self._run_engine(subject_id, self.engine.run(agent, run_input, handle))
            return await self._apply_result(subject_id, context, result, agent_name)

        except Exception as e:
            logger.error("conversation_turn_failed",
                         subject_id=subject_id, agent_name=agent_name,
                         error_type=type(e).__name__, error=str(e))
            await self.end_session(subject_id)
            raise

    def _absorb_channel_metadata(self, context: CustomerContext, metadata: dict[str, Any]) -> None:
        profile = metadata.get("customer_profile")
        if isinstance(profile, dict) and profile:
            context.metadata["customer_profile"] = profile
        channel = metadata.get("channel")
        if channel:
            context.metadata["last_channel"] = getattr(channel, "value", channel)

    async def _prepare_input(self, agent: Any, subject_id: SubjectId, context: CustomerContext) -> Any:
        serialized = await self.run_states.load(subject_id)
        if serialized:
            try:
                state = await self.engine.restore_state(agent, serialized)
                logger.info("resuming_from_saved_state", subject_id=subject_id)
                return state
            except Exception as e:
                # engines raise their own error types for unreadable blobs
                logger.warning("corrupted_run_state_discarded", subject_id=subject_id, error=str(e))
                await self._delete_run_state(subject_id)

        return enrich_with_profile(eligible_history(context.conversation_history), context)

    async def _run_engine(self, subject_id: SubjectId, call: Awaitable[EngineResult]) -> EngineResult:
        try:
            return await asyncio.wait_for(call, timeout=self.turn_timeout_s)
        except asyncio.TimeoutError as e:
            raise EngineTimeoutError(subject_id, self.turn_timeout_s) from e
        except SessionRelayError:
            raise
        except Exception as e:
            raise EngineFailureError(f"Execution engine raised: {e}", subject_id) from e

    async def _apply_result(
        self,
        subject_id: SubjectId,
        context: CustomerContext,
        result: EngineResult,
        agent_name: str,
    ) -> TurnResult:
        if isinstance(result, Failed):
            raise EngineFailureError(result.error, subject_id)

        if isinstance(result, AwaitingApproval):
            await self.run_states.save(subject_id, self.engine.serialize_state(result.opaque_state))
            context.conversation_history.extend(result.new_items)
            await self._save_context(context)
            logger.info("interruptions_detected_state_saved",
                        subject_id=subject_id, agent_name=agent_name,
                        pending_count=len(result.pending_requests))
            return TurnResult(
                subject_id=subject_id,
                status=TurnStatus.AWAITING_APPROVAL,
                new_items=list(result.new_items),
                final_agent=agent_name,
                pending_approvals=list(result.pending_requests),
            )

        if not isinstance(result, Completed):
            raise EngineFailureError(f"Unexpected engine result: {type(result).__name__}", subject_id)

        # a finished run must never be resumed again
        await self._delete_run_state(subject_id)
        context.conversation_history.extend(result.new_items)
        final_agent = result.final_agent or agent_name
        context.last_agent = final_agent
        await self._save_context(context)

        logger.info("conversation_turn_completed",
                    subject_id=subject_id, final_agent=final_agent,
                    new_items_count=len(result.new_items))
        return TurnResult(
            subject_id=subject_id,
            status=TurnStatus.COMPLETED,
            response=result.output,
            new_items=list(result.new_items),
            final_agent=final_agent,
        )

    # ══════════════════════════════════════════════════════════
    #  APPROVALS — human decisions on a paused run
    # ══════════════════════════════════════════════════════════

    async def resolve_approvals(
        self,
        subject_id: SubjectId,
        decisions: list[ApprovalDecision],
        agent: Any = None,
    ) -> TurnResult:
        agent = agent if agent is not None else self.default_agent
        agent_name = self.engine.agent_name(agent)

        serialized = await self.run_states.load(subject_id)
        if serialized is None:
            raise NoPendingStateError(subject_id)

        rejected = [d for d in decisions if not d.approved]
        if rejected:
            await self._delete_run_state(subject_id)
            logger.info("tool_approvals_rejected",
                        subject_id=subject_id, rejected_count=len(rejected))
            return TurnResult(
                subject_id=subject_id,
                status=TurnStatus.REJECTED,
                response=REJECTION_MESSAGE,
                final_agent=agent_name,
            )

        try:
            context = await self._get_or_create_context(subject_id, agent_name)
            state = await self.engine.restore_state(agent, serialized)
            handle = self._get_handle(subject_id)
            result = await self._run_engine(
                subject_id, self.engine.resume(agent, state, decisions, handle),
            )
            turn = await self._apply_result(subject_id, context, result, agent_name)
        except Exception as e:
            logger.error("tool_approvals_failed",
                         subject_id=subject_id, error_type=type(e).__name__, error=str(e))
            await self._delete_run_state(subject_id)
            return TurnResult(
                subject_id=subject_id,
                status=TurnStatus.ERROR,
                response=APPROVAL_ERROR_MESSAGE,
                final_agent=agent_name,
            )

        logger.info("tool_approvals_processed",
                    subject_id=subject_id, approved_count=len(decisions), status=turn.status.value)
        return turn

    # ══════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def end_session(self, subject_id: SubjectId) -> bool:
        """
        Persist the context, drop runtime state, discard any paused run and
        publish conversation_end. A context only in storage is recovered and
        flushed. Returns False when neither memory nor storage holds anything.
        """
        context = self._contexts.get(subject_id)
        if context is None:
            # not touched by this process: flush whatever storage still holds
            context = await self.context_store.load(subject_id)
            if context is not None:
                logger.info("context_recovered_for_session_end", subject_id=subject_id)
            elif await self.run_states.load(subject_id) is None:
                logger.debug("session_end_noop", subject_id=subject_id)
                return False

        duration_ms = 0
        message_count = 0
        if context is not None:
            duration_ms = int((_utcnow() - context.session_start_time).total_seconds() * 1000)
            message_count = context.message_count
            try:
                await self.context_store.save(subject_id, context)
            except PersistenceIOError as e:
                logger.error("session_end_context_save_failed", subject_id=subject_id, error=str(e))

        self._contexts.pop(subject_id, None)
        self._handles.pop(subject_id, None)
        await self._delete_run_state(subject_id)

        logger.info("session_ended",
                    subject_id=subject_id, duration_ms=duration_ms,
                    message_count=message_count, context_persisted=context is not None)
        await self.events.publish(ConversationEndEvent(
            subject_id=subject_id, duration_ms=duration_ms, message_count=message_count,
        ))
        return True

    async def update_escalation_level(self, subject_id: SubjectId, level: int) -> bool:
        """Ratchet: only a strictly greater level is stored and published."""
        context = await self._get_or_create_context(subject_id, self.engine.agent_name(self.default_agent))
        previous = context.escalation_level
        if level <= previous:
            return False

        context.escalation_level = level
        await self._save_context(context)
        logger.info("escalation_level_increased",
                    subject_id=subject_id, previous_level=previous, new_level=level)
        await self.events.publish(EscalationEvent(
            subject_id=subject_id, level=level, previous_level=previous,
        ))
        return True

    async def expire_idle_sessions(self, max_age_s: float) -> int:
        now = _utcnow()
        idle = [sid for sid, ctx in self._contexts.items() if ctx.idle_seconds(now) > max_age_s]
        for subject_id in idle:
            await self.end_session(subject_id)
        if idle:
            logger.info("idle_sessions_expired", count=len(idle), max_age_s=max_age_s)
        return len(idle)

    def prune_handles(self) -> int:
        """Clear the whole handle cache once it grows past the limit."""
        size = len(self._handles)
        if size <= self.handle_cache_limit:
            return 0
        self._handles.clear()
        logger.info("engine_handles_pruned", previous_size=size, limit=self.handle_cache_limit)
        return size

    # ── Queries ───────────────────────────────────────────

    def get_session_info(self, subject_id: SubjectId) -> Optional[SessionInfo]:
        context = self._contexts.get(subject_id)
        return SessionInfo.from_context(context) if context else None

    async def get_context(self, subject_id: SubjectId) -> Optional[CustomerContext]:
        context = self._contexts.get(subject_id)
        if context is not None:
            return context
        return await self.context_store.load(subject_id)

    async def session_state(self, subject_id: SubjectId) -> SessionState:
        if await self.run_states.load(subject_id) is not None:
            return SessionState.AWAITING_APPROVAL
        if subject_id in self._contexts:
            return SessionState.ACTIVE
        return SessionState.FRESH

    def active_subjects(self) -> list[SubjectId]:
        return list(self._contexts)

    @property
    def handle_count(self) -> int:
        return len(self._handles)

    # ── Internals ─────────────────────────────────────────

    async def _get_or_create_context(self, subject_id: SubjectId, agent_name: str) -> CustomerContext:
        context = self._contexts.get(subject_id)
        if context is not None:
            return context

        context = await self.context_store.load(subject_id)
        if context is not None:
            context.touch()
            logger.info("context_loaded",
                        subject_id=subject_id, history_length=context.message_count,
                        escalation_level=context.escalation_level)
            self._contexts[subject_id] = context
            return context

        context = CustomerContext.new(subject_id)
        self._contexts[subject_id] = context
        logger.info("context_created", subject_id=subject_id, agent_name=agent_name)
        await self.events.publish(ConversationStartEvent(subject_id=subject_id, agent_name=agent_name))
        return context

    async def _save_context(self, context: CustomerContext) -> None:
        context.touch()
        self._contexts[context.subject_id] = context
        await self.context_store.save(context.subject_id, context)

    async def _delete_run_state(self, subject_id: SubjectId) -> None:
        try:
            await self.run_states.delete(subject_id)
        except PersistenceIOError as e:
            logger.error("run_state_delete_failed", subject_id=subject_id, error=str(e))

    def _get_handle(self, subject_id: SubjectId) -> Any:
        if subject_id not in self._handles:
            self._handles[subject_id] = self.engine.create_handle(subject_id)
            logger.debug("engine_handle_created", subject_id=subject_id)
        return self._handles[subject_id]
