"""Turn orchestration for the CSV analysis assistant.

Core components:
- PlannerWorkflow: Session state machine running planner turns for each user message
- TurnOrchestrator: Parses, repairs, guards and validates one proposed action batch
- ActionValidator: Per-kind validation and auto-repair rules
- enforce_turn_guards: Structural checks over a batch (budget, plan first, tags, awaiting user)

Session state:
- PlanStateStore / ContinuationPolicy: The plan tracker and the decision to run another turn
- ClarificationRegistry: Pause and resume protocol for multi-option questions
- ActionLedger: Append-only traces and observations
- DatasetWorkspace: Working rows plus at most one staged transform
"""

from .clarification import ClarificationRegistry
from .context import ContextBundle, ModelResponder, ResponderReply
from .dataset import DatasetWorkspace, TransformRunner
from .guards import GuardResult, GuardViolationCode, create_guard_state, enforce_turn_guards
from .intent import IntentClassifier, RegexIntentClassifier
from .ledger import ActionLedger
from .orchestrator import TurnInput, TurnOrchestrator, TurnResult
from .plan_store import ContinuationDecision, ContinuationPolicy, PlanStateStore
from .state_tag import StateTagFactory
from .tool import LoggingToolExecutor, ToolError, ToolExecutor, ToolResult
from .types import Action, ActionType, DetectedIntent, GuardState, PlanState, UIState, parse_action
from .validation import ActionValidator, ValidationContext, ValidationResult
from .workflow import PlannerWorkflow, RunOutcome, WorkflowState

__all__ = [
    "PlannerWorkflow",
    "RunOutcome",
    "WorkflowState",
    "TurnOrchestrator",
    "TurnInput",
    "TurnResult",
    "ActionValidator",
    "ValidationContext",
    "ValidationResult",
    "enforce_turn_guards",
    "create_guard_state",
    "GuardResult",
    "GuardViolationCode",
    "PlanStateStore",
    "ContinuationPolicy",
    "ContinuationDecision",
    "ClarificationRegistry",
    "ActionLedger",
    "DatasetWorkspace",
    "TransformRunner",
    "IntentClassifier",
    "RegexIntentClassifier",
    "StateTagFactory",
    "ContextBundle",
    "ModelResponder",
    "ResponderReply",
    "ToolExecutor",
    "ToolResult",
    "ToolError",
    "LoggingToolExecutor",
    "Action",
    "ActionType",
    "DetectedIntent",
    "GuardState",
    "PlanState",
    "UIState",
    "parse_action",
]
