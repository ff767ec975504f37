from dataclasses import dataclass, field
from typing import Any, Protocol

from csvagent.agent.chat import ChatMessage
from csvagent.agent.dataset import ColumnProfile
from csvagent.agent.types import (
    ActionTrace,
    ClarificationRequest,
    DetectedIntent,
    Observation,
    PlanState,
    UIState,
)


@dataclass(frozen=True)
class ContextBundle:
    """Everything the model responder sees for one turn."""
    user_message: str
    turn_index: int
    chat_history: tuple[ChatMessage, ...] = ()
    plan_state: PlanState | None = None
    open_clarifications: tuple[ClarificationRequest, ...] = ()
    observations: tuple[Observation, ...] = ()
    traces: tuple[ActionTrace, ...] = ()
    detected_intent: DetectedIntent | None = None
    columns: tuple[ColumnProfile, ...] = ()
    sample_rows: tuple[dict[str, Any], ...] = ()
    ui_state: UIState = field(default_factory=UIState)
    # Corrective instructions and system notes gathered during the run.
    notes: tuple[str, ...] = ()
    pending_transform: str | None = None


@dataclass(frozen=True)
class ResponderReply:
    actions: list[Any]
    raw: str | None = None


class ModelResponder(Protocol):
    """External model: one call per turn, the only suspension point besides tool execution."""
    async def respond(self, bundle: ContextBundle) -> ResponderReply: ...
