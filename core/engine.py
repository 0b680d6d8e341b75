"""
Execution Engine contract — the external agent runtime the session layer drives.

The engine owns reasoning, tool calls and hand-offs between agents. This
layer only needs to:

  run(agent, input)                → Completed | AwaitingApproval | Failed
  resume(agent, state, decisions)  → Completed | AwaitingApproval | Failed
  serialize_state(state)           → str   (opaque, stored by RunStateStore)
  restore_state(agent, blob)       → state (raises on corrupt data)

`input` is either a list of {"role", "content"} messages or a state
previously returned by restore_state(). Engines are plugged in through the
`engine.factory` setting ("package.module:callable").
"""
from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from models.schemas import ApprovalDecision, ApprovalRequest, SubjectId


# ──────────────────────────────────────────────────────────────
#  Result union
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Completed:
    output: str
    new_items: list[dict[str, Any]] = field(default_factory=list)
    final_agent: Optional[str] = None


@dataclass(frozen=True)
class AwaitingApproval:
    pending_requests: list[ApprovalRequest]
    opaque_state: Any
    new_items: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class Failed:
    error: str


EngineResult = Union[Completed, AwaitingApproval, Failed]


# ──────────────────────────────────────────────────────────────
#  Contract
# ──────────────────────────────────────────────────────────────

class ExecutionEngine(ABC):

    def create_handle(self, subject_id: SubjectId) -> Any:
        """Per-subject runner; engines without one return None."""
        return None

    def agent_name(self, agent: Any) -> str:
        return getattr(agent, "name", None) or str(agent)

    @abstractmethod
    async def run(self, agent: Any, run_input: Any, handle: Any = None) -> EngineResult:
        ...

    @abstractmethod
    async def resume(
        self,
        agent: Any,
        state: Any,
        decisions: list[ApprovalDecision],
        handle: Any = None,
    ) -> EngineResult:
        ...

    @abstractmethod
    def serialize_state(self, state: Any) -> str:
        ...

    @abstractmethod
    async def restore_state(self, agent: Any, serialized: str) -> Any:
        """Raises on corrupt or incompatible data."""
        ...


def load_engine(factory_path: str) -> ExecutionEngine:
    """Build an engine from a "package.module:callable" path."""
    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Engine factory must look like 'package.module:callable', got '{factory_path}'")
    factory = getattr(importlib.import_module(module_name), attr)
    engine = factory()
    if not isinstance(engine, ExecutionEngine):
        raise TypeError(f"{factory_path} returned {type(engine).__name__}, not an ExecutionEngine")
    return engine
