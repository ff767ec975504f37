from pydantic import BaseModel, Field
from typing_extensions import Annotated


class OrchestratorConfig(BaseModel):
    """Limits applied by the turn orchestrator and the planner workflow."""

    max_turns_per_run: Annotated[int, Field(
        description="Hard ceiling on model turns within one run. Needing more ends the run as failed.",
        default=8,
        ge=1,
    )]
    max_validation_retries: Annotated[int, Field(
        description="Re-prompts allowed after rejected batches before a safe fallback reply is delivered",
        default=2,
        ge=0,
    )]
    max_auto_retries: Annotated[int, Field(
        description="Automatic retry turns after a failed tool execution",
        default=1,
        ge=0,
    )]
    turn_action_budget: Annotated[int, Field(
        description="Maximum actions per turn: one plan update plus the atomic actions",
        default=2,
        ge=2,
    )]
    min_filter_query_length: Annotated[int, Field(
        description="Shortest accepted natural-language filter query",
        default=3,
    )]
    max_filter_query_length: Annotated[int, Field(
        description="Longest accepted natural-language filter query",
        default=200,
    )]
    min_code_explanation_length: Annotated[int, Field(
        description="Shortest accepted explanation attached to a data transform",
        default=10,
    )]
    context_chat_messages: Annotated[int, Field(
        description="Chat messages forwarded to the model each turn",
        default=8,
    )]
    context_observations: Annotated[int, Field(
        description="Observations forwarded to the model each turn",
        default=6,
    )]
    context_traces: Annotated[int, Field(
        description="Action traces forwarded to the model each turn",
        default=6,
    )]
