"""
FastAPI Application — the channel-adapter boundary.

Channel adapters (SMS webhooks, voice bridges, web chat) post
`{metadata, text}`; the API resolves the subject and hands the turn to the
SessionOrchestrator. Wire protocols stay in the adapters.

Provides:
- POST   /turns                              one user message
- POST   /sessions/{subject_id}/approvals    human decisions on a paused run
- GET    /sessions/{subject_id}              live session info
- DELETE /sessions/{subject_id}              end a session
- POST   /maintenance/sweep                  one lifecycle tick
- GET    /metrics                            conversation totals
- GET    /health

Run with:
    uvicorn api.main:create_app --factory
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config.settings import Settings, get_settings
from core.engine import load_engine
from core.errors import (
    EngineFailureError, EngineTimeoutError, NoPendingStateError, ResolutionError,
)
from core.lifecycle import LifecycleScheduler
from core.orchestrator import SessionOrchestrator
from database.store_factory import create_stores
from events.bus import EventBus
from events.event_logger import EventLogger
from events.metrics import SessionMetrics
from identity.registry import create_resolver
from identity.resolver import PhoneSubjectResolver, SubjectResolver
from models.schemas import ApprovalDecision
from utils.logging import setup_logging

logger = structlog.get_logger()

HANDOFF_MESSAGE = "I'm sorry, I'm having trouble right now. Let me transfer you to a human agent."


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class TurnRequest(BaseModel):
    text: str
    metadata: dict[str, Any] = {}
    agent: Optional[str] = None


class ApprovalsRequest(BaseModel):
    decisions: list[ApprovalDecision]
    agent: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def bootstrap(settings: Settings) -> tuple[SessionOrchestrator, SubjectResolver, LifecycleScheduler]:
    """Wire the production object graph from settings."""
    if not settings.engine.factory:
        raise RuntimeError("engine.factory is not configured (expected 'package.module:callable')")

    engine = load_engine(settings.engine.factory)
    run_states, contexts = create_stores(settings.persistence)
    bus = EventBus()
    EventLogger(bus)

    orchestrator = SessionOrchestrator(
        engine=engine,
        run_states=run_states,
        contexts=contexts,
        events=bus,
        turn_timeout_s=settings.engine.turn_timeout_s,
        handle_cache_limit=settings.lifecycle.handle_cache_limit,
        default_agent=settings.engine.default_agent,
    )
    scheduler = LifecycleScheduler(
        orchestrator,
        interval_s=settings.lifecycle.sweep_interval_s,
        in_memory_max_age_s=settings.lifecycle.in_memory_max_age_s,
        run_state_max_age_s=settings.persistence.run_state_max_age_s,
        context_max_age_s=settings.persistence.context_max_age_s,
    )
    return orchestrator, create_resolver(settings.identity), scheduler


def create_app(
    orchestrator: SessionOrchestrator = None,
    resolver: SubjectResolver = None,
    scheduler: LifecycleScheduler = None,
) -> FastAPI:
    settings = get_settings()
    if orchestrator is None:
        setup_logging(settings.logging.level, settings.logging.format, settings.logging.redact_pii)
        orchestrator, resolver, scheduler = bootstrap(settings)
    resolver = resolver or PhoneSubjectResolver()
    scheduler = scheduler or LifecycleScheduler(orchestrator)
    metrics = SessionMetrics(orchestrator.events)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await orchestrator.start()
        await scheduler.start()
        logger.info("session_relay_started",
                    app_name=settings.app_name, resolver=resolver.name,
                    backend=orchestrator.run_states.backend)
        yield

        await scheduler.stop()
        await orchestrator.shutdown()
        metrics.stop()
        await resolver.close()
        logger.info("session_relay_stopped")

    app = FastAPI(
        title="SessionRelay API",
        description="Channel-independent conversation sessions for customer-support agents",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.resolver = resolver
    app.state.scheduler = scheduler
    app.state.metrics = metrics

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "active_sessions": len(orchestrator.active_subjects()),
            "scheduler_running": scheduler.running,
            "run_state_backend": orchestrator.run_states.backend,
            "context_backend": orchestrator.context_store.backend,
        }

    @app.get("/metrics")
    async def get_metrics():
        return metrics.snapshot().model_dump()

    # ══════════════════════════════════════════════════════════
    #  TURNS
    # ══════════════════════════════════════════════════════════

    @app.post("/turns")
    async def post_turn(req: TurnRequest):
        metadata = dict(req.metadata)
        try:
            subject_id = await resolver.resolve(metadata)
        except ResolutionError as e:
            raise HTTPException(422, str(e))

        agent = req.agent or orchestrator.default_agent
        try:
            result = await orchestrator.process_turn(agent, subject_id, req.text, metadata)
        except (EngineTimeoutError, EngineFailureError) as e:
            return JSONResponse(status_code=503, content={
                "subject_id": subject_id,
                "detail": str(e),
                "response": HANDOFF_MESSAGE,
            })
        return result.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  SESSIONS
    # ══════════════════════════════════════════════════════════

    @app.post("/sessions/{subject_id}/approvals")
    async def post_approvals(subject_id: str, req: ApprovalsRequest):
        try:
            result = await orchestrator.resolve_approvals(subject_id, req.decisions, req.agent)
        except NoPendingStateError as e:
            raise HTTPException(409, str(e))
        return result.model_dump(mode="json")

    @app.get("/sessions/{subject_id}")
    async def get_session(subject_id: str):
        info = orchestrator.get_session_info(subject_id)
        if not info:
            raise HTTPException(404, "Session not found")
        return info.model_dump(mode="json")

    @app.delete("/sessions/{subject_id}", status_code=204)
    async def delete_session(subject_id: str):
        await orchestrator.end_session(subject_id)
        return Response(status_code=204)

    # ══════════════════════════════════════════════════════════
    #  MAINTENANCE
    # ══════════════════════════════════════════════════════════

    @app.post("/maintenance/sweep")
    async def sweep():
        stats = await scheduler.sweep()
        return stats.model_dump()

    return app
