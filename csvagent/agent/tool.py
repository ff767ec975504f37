"""Contract between the planner workflow and the external tool-execution layer.

The workflow handles plan updates, replies, clarifications and data
transforms itself. UI actions, filters, chart creation and the hand-off to
analysis are dispatched to a :class:`ToolExecutor`, which reports back with a
:data:`ToolOutput`.
"""

import logging
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from typing_extensions import Annotated, Literal

from csvagent.agent.types import Action, ActionType, dump_action

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tool output types
# ---------------------------------------------------------------------------


class ToolOutputType(str, Enum):
    OUTPUT = "output"
    ERROR = "error"


class ToolOutputBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Annotated[ToolOutputType, Field(description="Type of the output")]


class ToolError(ToolOutputBase):
    """The tool ran but could not do what the action asked."""
    type: Literal[ToolOutputType.ERROR] = ToolOutputType.ERROR  # type: ignore
    error_message: Annotated[str, Field(description="Error message shown to the model and the user")]
    error_code: Annotated[str, Field(default="TOOL_FAILED")]


class ToolResult(ToolOutputBase):
    type: Literal[ToolOutputType.OUTPUT] = ToolOutputType.OUTPUT  # type: ignore
    outputs: Annotated[dict[str, Any], Field(
        default_factory=dict,
        description="Machine-readable summary, e.g. row deltas for data-mutating tools",
    )]
    message: Annotated[str | None, Field(default=None, description="Optional text for the chat")]


ToolOutput = Annotated[
    ToolResult | ToolError,
    Field(discriminator='type')
]


def validate_tool_output(data: dict) -> ToolOutput:
    """Validate and return a ToolOutput instance from raw data."""
    return TypeAdapter(ToolOutput).validate_python(data)


class ToolExecutor(Protocol):
    async def execute(self, action: Action) -> ToolOutput: ...


class LoggingToolExecutor(ToolExecutor):
    """Executor for shells without a UI: reports every tool action as done and logs it."""

    def __init__(self, logger: logging.Logger = logger) -> None:
        self.logger = logger
        self.executed: list[Action] = []

    async def execute(self, action: Action) -> ToolOutput:
        self.executed.append(action)
        self.logger.info(f"[{action.response_type.value}] {dump_action(action)}")
        if action.response_type == ActionType.FILTER_SPREADSHEET:
            return ToolResult(outputs={'query': action.query}, message=f"Filter applied: {action.query}")
        return ToolResult(outputs={'action': action.response_type.value})
