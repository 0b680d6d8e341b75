"""Shared test fixtures for SessionRelay."""
import asyncio
import json
import shutil
import tempfile
from typing import Any

import pytest
import pytest_asyncio

from core.engine import AwaitingApproval, Completed, ExecutionEngine
from core.orchestrator import SessionOrchestrator
from database.store_memory import InMemoryContextStore, InMemoryRunStateStore
from events.bus import EventBus, EventKind
from models.schemas import ApprovalRequest


# ──────────────────────────────────────────────────────────────
#  Scripted engine
# ──────────────────────────────────────────────────────────────

class FakeEngine(ExecutionEngine):
    """
    Pops scripted results in order. An Exception in the script is raised;
    an empty script completes with "ok". States serialize as JSON.
    """

    def __init__(self, results: list = None, resume_results: list = None, delay_s: float = 0.0):
        self.results = list(results or [])
        self.resume_results = list(resume_results or [])
        self.delay_s = delay_s
        self.fail_restore = False
        self.run_calls: list[dict[str, Any]] = []
        self.resume_calls: list[dict[str, Any]] = []
        self.restored: list[Any] = []
        self.handles_created = 0

    def create_handle(self, subject_id):
        self.handles_created += 1
        return f"handle:{subject_id}"

    def agent_name(self, agent):
        return str(agent)

    @staticmethod
    def _next(script: list):
        item = script.pop(0) if script else Completed(output="ok")
        if isinstance(item, Exception):
            raise item
        return item

    async def run(self, agent, run_input, handle=None):
        self.run_calls.append({"agent": agent, "input": run_input, "handle": handle})
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        return self._next(self.results)

    async def resume(self, agent, state, decisions, handle=None):
        self.resume_calls.append({"agent": agent, "state": state, "decisions": decisions, "handle": handle})
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        return self._next(self.resume_results)

    def serialize_state(self, state):
        return json.dumps(state)

    async def restore_state(self, agent, serialized):
        if self.fail_restore:
            raise ValueError("run state is unreadable")
        state = json.loads(serialized)
        self.restored.append(state)
        return state


def paused(step: int = 1, tool_name: str = "refund_order", new_items: list = None) -> AwaitingApproval:
    return AwaitingApproval(
        pending_requests=[ApprovalRequest(id=f"call_{step}", tool_name=tool_name, arguments={"order": "AB12345"})],
        opaque_state={"step": step},
        new_items=new_items or [{"type": "tool_call", "name": tool_name}],
    )


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

SUBJECT = "phone_+14155550100"


@pytest.fixture
def data_dir():
    tmpdir = tempfile.mkdtemp()
    yield tmpdir
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorded_events(bus):
    """Every published event, in order."""
    events = []
    for kind in EventKind:
        bus.subscribe(kind, events.append)
    return events


@pytest_asyncio.fixture
async def orchestrator(engine, bus):
    orch = SessionOrchestrator(
        engine=engine,
        run_states=InMemoryRunStateStore(),
        contexts=InMemoryContextStore(),
        events=bus,
        turn_timeout_s=1.0,
        handle_cache_limit=3,
        default_agent="customer_support",
    )
    await orch.start()
    return orch
