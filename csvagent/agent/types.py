"""Typed model of everything that flows through a planner turn.

Actions arrive from the model as loose JSON objects. ``parse_action`` turns
each one into exactly one variant of the closed :data:`Action` union, keyed by
``responseType``. The remaining types are the bookkeeping records owned by the
orchestrator: guard state, traces, observations, clarifications, validation
events and the classifier's detected intent.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from csvagent.exceptions import ActionParseError


def short_id(prefix: str = '') -> str:
    """Return a short random identifier, optionally prefixed."""
    value = uuid.uuid4().hex[:12]
    return f"{prefix}-{value}" if prefix else value


class ActionType(str, Enum):
    PLAN_STATE_UPDATE = "plan_state_update"
    TEXT_RESPONSE = "text_response"
    AWAIT_USER = "await_user"
    DOM_ACTION = "dom_action"
    EXECUTE_JS_CODE = "execute_js_code"
    FILTER_SPREADSHEET = "filter_spreadsheet"
    CLARIFICATION_REQUEST = "clarification_request"
    PLAN_CREATION = "plan_creation"
    PROCEED_TO_ANALYSIS = "proceed_to_analysis"


ATOMIC_ACTION_TYPES = frozenset(t for t in ActionType if t is not ActionType.PLAN_STATE_UPDATE)

# Kinds handled by the external tool-execution layer.
TOOL_ACTION_TYPES = frozenset({
    ActionType.DOM_ACTION,
    ActionType.FILTER_SPREADSHEET,
    ActionType.PLAN_CREATION,
    ActionType.PROCEED_TO_ANALYSIS,
})

# Kinds that change the dataset or the UI and therefore stop at a halting plan.
SIDE_EFFECT_ACTION_TYPES = TOOL_ACTION_TYPES | {ActionType.EXECUTE_JS_CODE}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')


# ---------------------------------------------------------------------------
# Plan tracker
# ---------------------------------------------------------------------------


class StepStatus(str, Enum):
    READY = "ready"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class PlanStep(_CamelModel):
    id: Annotated[str, Field(description="Kebab-case step identifier, at least 3 characters")]
    label: Annotated[str, Field(description="Short human-readable description of the step")]
    intent: Annotated[str | None, Field(default=None)]
    status: Annotated[StepStatus, Field(default=StepStatus.READY)]

    @field_validator('status', mode='before')
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        if isinstance(value, StepStatus):
            return value
        normalized = str(value or '').strip().lower().replace('-', '_').replace(' ', '_')
        if normalized in ('done', 'complete', 'completed'):
            return StepStatus.DONE
        if normalized in ('in_progress', 'active', 'running'):
            return StepStatus.IN_PROGRESS
        return StepStatus.READY


class PlanState(_CamelModel):
    """The single goal tracker of a chat session.

    Every field is optional at parse time so that incomplete trackers reach the
    validator, which decides whether to repair or reject them.
    """

    plan_id: Annotated[str | None, Field(default=None)]
    goal: Annotated[str | None, Field(default=None)]
    context_summary: Annotated[str | None, Field(default=None)]
    progress: Annotated[str | None, Field(default=None)]
    next_steps: Annotated[list[PlanStep], Field(default_factory=list)]
    steps: Annotated[list[PlanStep], Field(default_factory=list)]
    current_step_id: Annotated[str | None, Field(default=None)]
    blocked_by: Annotated[str | None, Field(default=None)]
    observation_ids: Annotated[list[str], Field(default_factory=list)]
    confidence: Annotated[float | None, Field(default=None)]
    updated_at: Annotated[str | None, Field(default=None)]
    state_tag: Annotated[str | None, Field(default=None)]

    @field_validator('next_steps', 'steps', mode='before')
    @classmethod
    def _drop_malformed_steps(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        steps = []
        for item in value:
            if isinstance(item, PlanStep):
                steps.append(item)
                continue
            if isinstance(item, str):
                item = {'id': item, 'label': item}
            if isinstance(item, dict) and item.get('id') and item.get('label'):
                steps.append(item)
        return steps

    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]

    @property
    def is_complete(self) -> bool:
        return not self.next_steps and all(step.status == StepStatus.DONE for step in self.steps)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class ActionMeta(_CamelModel):
    await_user: Annotated[bool, Field(default=False, description="The agent cannot proceed without a reply")]
    halt_after: Annotated[bool, Field(default=False, description="Stop auto-continuation after this turn")]
    resume_planner: Annotated[bool, Field(default=False)]
    prompt_id: Annotated[str | None, Field(default=None)]
    auto_inserted: Annotated[bool, Field(default=False, description="Inserted by the orchestrator, not the model")]


class _ActionBase(_CamelModel):
    step_id: Annotated[str | None, Field(default=None)]
    state_tag: Annotated[str | None, Field(default=None)]
    reason: Annotated[str | None, Field(default=None)]
    thought: Annotated[str | None, Field(default=None)]
    meta: Annotated[ActionMeta, Field(default_factory=ActionMeta)]


class PlanStateUpdateAction(_ActionBase):
    response_type: Literal[ActionType.PLAN_STATE_UPDATE] = ActionType.PLAN_STATE_UPDATE
    plan_state: Annotated[PlanState | None, Field(default=None)]


class TextResponseAction(_ActionBase):
    response_type: Literal[ActionType.TEXT_RESPONSE] = ActionType.TEXT_RESPONSE
    text: Annotated[str | None, Field(default=None)]


class AwaitUserAction(_ActionBase):
    response_type: Literal[ActionType.AWAIT_USER] = ActionType.AWAIT_USER
    prompt: Annotated[str | None, Field(default=None)]
    options: Annotated[list[str], Field(default_factory=list)]


class DomTarget(_CamelModel):
    by_id: Annotated[str | None, Field(default=None)]
    by_title: Annotated[str | None, Field(default=None)]
    selector: Annotated[str | None, Field(default=None)]

    @property
    def is_empty(self) -> bool:
        return not (self.by_id or self.by_title or self.selector)


class DomToolCall(_CamelModel):
    tool_name: Annotated[str, Field(description="UI tool, e.g. removeCard or changeCardChartType")]
    target: Annotated[DomTarget, Field(default_factory=DomTarget)]
    args: Annotated[dict[str, Any], Field(default_factory=dict)]


class DomAction(_ActionBase):
    response_type: Literal[ActionType.DOM_ACTION] = ActionType.DOM_ACTION
    dom_action: Annotated[DomToolCall | None, Field(default=None)]


class JsCode(_CamelModel):
    explanation: Annotated[str | None, Field(default=None)]
    js_function_body: Annotated[str | None, Field(default=None)]


class ExecuteJsCodeAction(_ActionBase):
    response_type: Literal[ActionType.EXECUTE_JS_CODE] = ActionType.EXECUTE_JS_CODE
    code: Annotated[JsCode | None, Field(default=None)]


class FilterSpreadsheetAction(_ActionBase):
    response_type: Literal[ActionType.FILTER_SPREADSHEET] = ActionType.FILTER_SPREADSHEET
    query: Annotated[str | None, Field(default=None)]


class ClarificationOption(_CamelModel):
    label: str
    value: Any


class ClarificationRequestAction(_ActionBase):
    response_type: Literal[ActionType.CLARIFICATION_REQUEST] = ActionType.CLARIFICATION_REQUEST
    question: Annotated[str | None, Field(default=None)]
    options: Annotated[list[ClarificationOption], Field(default_factory=list)]
    pending_plan: Annotated[dict[str, Any] | None, Field(default=None)]
    target_property: Annotated[str | None, Field(default=None)]


class PlanCreationAction(_ActionBase):
    response_type: Literal[ActionType.PLAN_CREATION] = ActionType.PLAN_CREATION
    chart_plan: Annotated[dict[str, Any] | None, Field(
        default=None,
        description="Chart specification: chartType, title, groupByColumn, valueColumn, aggregation",
    )]


class ProceedToAnalysisAction(_ActionBase):
    response_type: Literal[ActionType.PROCEED_TO_ANALYSIS] = ActionType.PROCEED_TO_ANALYSIS
    text: Annotated[str | None, Field(default=None)]


Action = Annotated[
    Union[
        PlanStateUpdateAction,
        TextResponseAction,
        AwaitUserAction,
        DomAction,
        ExecuteJsCodeAction,
        FilterSpreadsheetAction,
        ClarificationRequestAction,
        PlanCreationAction,
        ProceedToAnalysisAction,
    ],
    Field(discriminator='response_type'),
]

_action_adapter: TypeAdapter[Action] = TypeAdapter(Action)

ACTION_TYPE_ALIASES: dict[str, ActionType] = {
    'plan_update': ActionType.PLAN_STATE_UPDATE,
    'planstate': ActionType.PLAN_STATE_UPDATE,
    'plan_state': ActionType.PLAN_STATE_UPDATE,
    'state_update': ActionType.PLAN_STATE_UPDATE,
    'text': ActionType.TEXT_RESPONSE,
    'message': ActionType.TEXT_RESPONSE,
    'respond': ActionType.TEXT_RESPONSE,
    'response': ActionType.TEXT_RESPONSE,
    'reply': ActionType.TEXT_RESPONSE,
    'ask_user': ActionType.AWAIT_USER,
    'wait_for_user': ActionType.AWAIT_USER,
    'domaction': ActionType.DOM_ACTION,
    'dom': ActionType.DOM_ACTION,
    'ui_action': ActionType.DOM_ACTION,
    'js': ActionType.EXECUTE_JS_CODE,
    'code': ActionType.EXECUTE_JS_CODE,
    'execute_code': ActionType.EXECUTE_JS_CODE,
    'transform': ActionType.EXECUTE_JS_CODE,
    'filter': ActionType.FILTER_SPREADSHEET,
    'filter_rows': ActionType.FILTER_SPREADSHEET,
    'clarify': ActionType.CLARIFICATION_REQUEST,
    'clarification': ActionType.CLARIFICATION_REQUEST,
    'create_chart': ActionType.PLAN_CREATION,
    'chart': ActionType.PLAN_CREATION,
    'proceed': ActionType.PROCEED_TO_ANALYSIS,
}


def canonical_action_type(value: Any) -> ActionType | None:
    """Map a loose type name (``planUpdate``, ``dom-action``, ``js``) to an ActionType."""
    if not isinstance(value, str) or not value.strip():
        return None
    snake = re.sub(r'(?<=[a-z0-9])([A-Z])', r'_\1', value.strip())
    key = re.sub(r'[\s\-]+', '_', snake).lower()
    try:
        return ActionType(key)
    except ValueError:
        return ACTION_TYPE_ALIASES.get(key) or ACTION_TYPE_ALIASES.get(key.replace('_', ''))


def _infer_action_type(raw: dict[str, Any]) -> ActionType | None:
    if 'planState' in raw or 'plan_state' in raw:
        return ActionType.PLAN_STATE_UPDATE
    if 'domAction' in raw or 'dom_action' in raw:
        return ActionType.DOM_ACTION
    if 'code' in raw or 'jsFunctionBody' in raw:
        return ActionType.EXECUTE_JS_CODE
    if 'question' in raw and 'options' in raw:
        return ActionType.CLARIFICATION_REQUEST
    if 'query' in raw or isinstance(raw.get('args'), dict) and 'query' in raw['args']:
        return ActionType.FILTER_SPREADSHEET
    if 'chartPlan' in raw or 'chart_plan' in raw or 'plan' in raw:
        return ActionType.PLAN_CREATION
    if 'text' in raw:
        return ActionType.TEXT_RESPONSE
    return None


def parse_action(raw: Any) -> Action:
    """Build a typed action from a raw model object.

    Raises:
        ActionParseError: when the object is not a mapping, names no known kind
            and none can be inferred, or its payload has the wrong shape.
    """
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(by_alias=True)
    if not isinstance(raw, dict):
        raise ActionParseError("action must be a JSON object", raw)
    data = dict(raw)
    declared = data.pop('responseType', None) or data.pop('response_type', None) or data.pop('type', None)
    action_type = canonical_action_type(declared) or _infer_action_type(data)
    if action_type is None:
        raise ActionParseError(f"unknown action type {declared!r}", raw)
    data['responseType'] = action_type.value

    args = data.get('args') if isinstance(data.get('args'), dict) else {}
    if action_type is ActionType.FILTER_SPREADSHEET and not data.get('query') and args.get('query'):
        data['query'] = args['query']
    if action_type is ActionType.EXECUTE_JS_CODE and 'jsFunctionBody' in data and 'code' not in data:
        data['code'] = {'explanation': data.get('explanation'), 'jsFunctionBody': data['jsFunctionBody']}
    if action_type is ActionType.PLAN_CREATION and 'plan' in data and 'chartPlan' not in data:
        data['chartPlan'] = data.pop('plan')
    if action_type is ActionType.TEXT_RESPONSE and not data.get('text') and isinstance(data.get('message'), str):
        data['text'] = data['message']

    try:
        return _action_adapter.validate_python(data)
    except ValidationError as e:
        raise ActionParseError(f"malformed {action_type.value} payload: {e.errors()[0]['msg']}", raw) from e


def dump_action(action: Action) -> dict[str, Any]:
    """Serialize an action the way the model is expected to write it."""
    return action.model_dump(by_alias=True, exclude_none=True, mode='json')


# ---------------------------------------------------------------------------
# Guard state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GuardState:
    """Per-run safety ledger. Replaced, never mutated, by the guard functions."""
    session_id: str
    plan_id: str | None = None
    state_tag_seq: str | None = None
    awaiting_user: bool = False
    blocked_by: str | None = None
    turn_count: int = 0


# ---------------------------------------------------------------------------
# Ledger records
# ---------------------------------------------------------------------------


class TraceStatus(str, Enum):
    OBSERVING = "observing"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ActionTrace:
    """One attempted action. Begins when the action starts and is updated in place."""
    id: str
    action_type: ActionType
    status: TraceStatus
    summary: str
    timestamp: datetime = field(default_factory=datetime.now)
    source: str = "planner"
    metadata: dict[str, Any] = field(default_factory=dict)


class ObservationStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    PENDING = "pending"


@dataclass(frozen=True)
class Observation:
    """Outcome of one executed action, replayed into the next turn's context."""
    id: str
    action_id: str
    response_type: ActionType
    status: ObservationStatus
    timestamp: datetime = field(default_factory=datetime.now)
    outputs: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None


class ActionErrorCode(str, Enum):
    MISSING_TEXT = "MISSING_TEXT"
    DOM_PAYLOAD_MISSING = "DOM_PAYLOAD_MISSING"
    DATASET_UNAVAILABLE = "DATASET_UNAVAILABLE"
    MISSING_JS_CODE = "MISSING_JS_CODE"
    TRANSFORM_PENDING = "TRANSFORM_PENDING"
    TRANSFORM_FAILED = "TRANSFORM_FAILED"
    TRANSFORM_NO_CHANGE = "TRANSFORM_NO_CHANGE"
    FILTER_QUERY_MISSING = "FILTER_QUERY_MISSING"
    CLARIFICATION_PAYLOAD_MISSING = "CLARIFICATION_PAYLOAD_MISSING"
    TOOL_FAILED = "TOOL_FAILED"


# ---------------------------------------------------------------------------
# Clarifications
# ---------------------------------------------------------------------------


class ClarificationStatus(str, Enum):
    PENDING = "pending"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    SKIPPED = "skipped"


@dataclass
class ClarificationRequest:
    id: str
    question: str
    options: list[ClarificationOption]
    pending_plan: dict[str, Any]
    target_property: str
    status: ClarificationStatus = ClarificationStatus.PENDING
    step_id: str | None = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ClarificationResolution:
    """What the workflow needs to finish the plan that asked the question."""
    request_id: str
    target_property: str
    value: Any
    label: str
    completed_plan: dict[str, Any]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationEvent:
    """Diagnostic record of an auto-repaired (``auto_*`` reason) or rejected action."""
    action_type: str
    reason: str
    action_index: int
    retry_instruction: str | None = None
    id: str = field(default_factory=short_id)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_repair(self) -> bool:
        return self.reason.startswith('auto_')


# ---------------------------------------------------------------------------
# Intent and UI state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequiredTool:
    response_type: ActionType
    tool_name: str | None = None
    payload_hints: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        if self.tool_name:
            return f"{self.response_type.value}:{self.tool_name}"
        return self.response_type.value


@dataclass(frozen=True)
class DetectedIntent:
    intent: str
    confidence: float
    required_tool: RequiredTool | None = None
    payload_hints: dict[str, Any] = field(default_factory=dict)


GREETING_INTENTS = frozenset({'greeting', 'smalltalk', 'ask_user_choice'})


@dataclass(frozen=True)
class CardRef:
    """An analysis card currently shown in the UI."""
    id: str
    title: str


@dataclass(frozen=True)
class UIState:
    cards: tuple[CardRef, ...] = ()

    def find_card_by_title(self, title: str) -> CardRef | None:
        wanted = title.strip().lower()
        for card in self.cards:
            if card.title.strip().lower() == wanted:
                return card
        return None

    def find_card_by_id(self, card_id: str) -> CardRef | None:
        for card in self.cards:
            if card.id == card_id:
                return card
        return None
