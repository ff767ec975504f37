"""Per-kind structural and semantic checks for model-proposed actions.

Each action gets exactly one of three outcomes:

* **accepted** - returned unchanged;
* **repaired** - a corrected copy is returned together with one or more
  :class:`ValidationEvent` records whose reason starts with ``auto_``;
* **rejected** - no action is returned and the event carries a
  ``retry_instruction`` that is fed back to the model.

The validator is stateless. Everything it needs to know about the session
(the current plan, the UI cards, the detected intent) arrives in a
:class:`ValidationContext`.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from csvagent.agent.types import (
    GREETING_INTENTS,
    Action,
    ActionType,
    AwaitUserAction,
    ClarificationRequestAction,
    DetectedIntent,
    DomAction,
    ExecuteJsCodeAction,
    FilterSpreadsheetAction,
    PlanCreationAction,
    PlanState,
    PlanStateUpdateAction,
    PlanStep,
    ProceedToAnalysisAction,
    StepStatus,
    TextResponseAction,
    UIState,
    ValidationEvent,
    short_id,
)

logger = logging.getLogger(__name__)

DOM_TARGET_NOT_FOUND_TEXT = "Target not found, please select."
FALLBACK_STEP_ID = "ad-hoc-response"

# Kinds whose target step cannot be guessed safely.
AMBIGUOUS_STEP_KINDS = frozenset({ActionType.EXECUTE_JS_CODE, ActionType.PLAN_CREATION})

GREETING_PATTERN = re.compile(
    r'^(hi|hello|hey|hola|ciao|salut|嗨+|哈囉|你好|您好|早上好|晚上好|早安|晚安)([!.?\s]|$)',
    re.IGNORECASE,
)
_KEBAB_PATTERN = re.compile(r'^[a-z0-9]+(?:-[a-z0-9]+)*$')
# A return that hands back a value, not a bare ``return;`` or null/undefined.
_RETURN_VALUE_PATTERN = re.compile(r'\breturn\s+(?!(?:null|undefined)\s*;?\s*(?:$|[}\n]))[^\s;}]')
_RETURN_SCAN_PATTERN = re.compile(r'[{}]|\breturn\b')
# Text right before a ``{`` that opens a nested function body.
_FUNCTION_HEAD_PATTERN = re.compile(r'(?:=>|\bfunction\b[^{};]*\))\s*$')
_LITERAL_PATTERN = re.compile(r'//[^\n]*|/\*.*?\*/|"(?:\\.|[^"\\\n])*"|\'(?:\\.|[^\'\\\n])*\'|`(?:\\.|[^`\\])*`', re.DOTALL)
_ALNUM_PATTERN = re.compile(r'\w', re.UNICODE)
# Scripts written without spaces between words (Han, kana).
_UNSPACED_SCRIPT_PATTERN = re.compile(r'[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]')

# Required ``args`` per dom tool. Checks return an error message or None.
DOM_TOOL_ARG_RULES: dict[str, Callable[[dict[str, Any]], str | None]] = {
    'removeCard': lambda args: None,
    'changeCardChartType': lambda args: None if args.get('newType') else "changeCardChartType needs args.newType.",
    'filterCard': lambda args: (
        None if args.get('column') and isinstance(args.get('values'), list) and args['values']
        else "filterCard needs args.column and a non-empty args.values list."
    ),
    'setTopN': lambda args: (
        None if args.get('topN') == 'all' or (isinstance(args.get('topN'), int) and args['topN'] > 0)
        else "setTopN needs args.topN as a positive integer or \"all\"."
    ),
    'toggleLegendLabel': lambda args: None if args.get('label') else "toggleLegendLabel needs args.label.",
    'exportCard': lambda args: None if args.get('format') else "exportCard needs args.format.",
    'highlightCard': lambda args: None,
}


class ValidationOutcome(str, Enum):
    ACCEPTED = "accepted"
    REPAIRED = "repaired"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ValidationResult:
    outcome: ValidationOutcome
    action: Action | None
    events: tuple[ValidationEvent, ...] = ()

    @property
    def rejected(self) -> bool:
        return self.outcome == ValidationOutcome.REJECTED

    @property
    def retry_instruction(self) -> str | None:
        instructions = [e.retry_instruction for e in self.events if not e.is_repair and e.retry_instruction]
        return ' '.join(instructions) or None


@dataclass
class ValidationContext:
    plan_state: PlanState | None = None
    ui_state: UIState = field(default_factory=UIState)
    detected_intent: DetectedIntent | None = None
    user_message: str = ''
    min_filter_query_length: int = 3
    max_filter_query_length: int = 200
    min_code_explanation_length: int = 10

    @property
    def current_step_id(self) -> str | None:
        if self.plan_state is None:
            return None
        if self.plan_state.current_step_id:
            return self.plan_state.current_step_id
        if self.plan_state.next_steps:
            return self.plan_state.next_steps[0].id
        return None


class _Rejected(Exception):
    """Internal signal carrying the rejection reason out of a rule."""
    def __init__(self, reason: str, instruction: str):
        super().__init__(reason)
        self.reason = reason
        self.instruction = instruction


def normalize_step_id(value: str) -> str:
    """``Load_Data Step`` -> ``load-data-step``."""
    snake = re.sub(r'(?<=[a-z0-9])([A-Z])', r'-\1', value.strip())
    kebab = re.sub(r'[^a-z0-9]+', '-', snake.lower())
    return kebab.strip('-')


def is_kebab_step_id(value: str | None) -> bool:
    return bool(value) and len(value) >= 3 and _KEBAB_PATTERN.match(value) is not None


def is_meaningful_filter_query(query: str, min_length: int = 3) -> bool:
    trimmed = query.strip()
    if len(trimmed) < min_length:
        return False
    if GREETING_PATTERN.match(trimmed):
        return False
    return _ALNUM_PATTERN.search(trimmed) is not None


def is_filter_phrase(query: str) -> bool:
    """More than a single word, counting words only where the script separates them with spaces."""
    if _UNSPACED_SCRIPT_PATTERN.search(query):
        return True
    return len(query.split()) >= 2


def _mask_literals(body: str) -> str:
    return _LITERAL_PATTERN.sub(lambda m: ' ' if m.group(0).startswith('/') else '""', body)


def has_return_value(body: str) -> bool:
    """True when the body itself returns a value, ignoring returns inside nested callbacks."""
    code = _mask_literals(body)
    # One entry per open brace: True when the brace opens a nested function.
    braces: list[bool] = []
    for match in _RETURN_SCAN_PATTERN.finditer(code):
        token = match.group(0)
        if token == '{':
            head = code[max(0, match.start() - 200):match.start()]
            braces.append(_FUNCTION_HEAD_PATTERN.search(head) is not None)
        elif token == '}':
            if braces:
                braces.pop()
        elif not any(braces) and _RETURN_VALUE_PATTERN.match(code, match.start()):
            return True
    return False


def normalize_plan_steps(steps: list[PlanStep]) -> list[PlanStep]:
    """Kebab-case ids, drop ids or labels shorter than 3 characters, de-duplicate."""
    seen: set[str] = set()
    normalized = []
    for step in steps:
        step_id = normalize_step_id(step.id)
        label = step.label.strip()
        if len(step_id) < 3 or len(label) < 3 or step_id in seen:
            continue
        seen.add(step_id)
        normalized.append(step.model_copy(update={'id': step_id, 'label': label}))
    return normalized


class _Repairs:
    """Collects the ``auto_*`` events produced while repairing one action."""
    def __init__(self, action_type: ActionType, index: int):
        self.action_type = action_type
        self.index = index
        self.events: list[ValidationEvent] = []

    def note(self, reason: str, detail: str) -> None:
        logger.info(f"Auto-repaired {self.action_type.value} action {self.index}: {reason}")
        self.events.append(ValidationEvent(
            action_type=self.action_type.value,
            reason=reason,
            action_index=self.index,
            retry_instruction=detail,
        ))


class ActionValidator:
    """Stateless rule set with one rule per action kind."""

    def __init__(self) -> None:
        self._rules: dict[ActionType, Callable[[Any, ValidationContext, _Repairs], Action]] = {
            ActionType.PLAN_STATE_UPDATE: self._validate_plan_state_update,
            ActionType.TEXT_RESPONSE: self._validate_text_response,
            ActionType.AWAIT_USER: self._validate_await_user,
            ActionType.DOM_ACTION: self._validate_dom_action,
            ActionType.EXECUTE_JS_CODE: self._validate_execute_js_code,
            ActionType.FILTER_SPREADSHEET: self._validate_filter_spreadsheet,
            ActionType.CLARIFICATION_REQUEST: self._validate_clarification_request,
            ActionType.PLAN_CREATION: self._validate_plan_creation,
            ActionType.PROCEED_TO_ANALYSIS: self._validate_proceed_to_analysis,
        }
        missing = set(ActionType) - set(self._rules)
        if missing:
            raise TypeError(f"No validation rule for {sorted(t.value for t in missing)}")

    def validate(self, action: Action, index: int, context: ValidationContext) -> ValidationResult:
        repairs = _Repairs(action.response_type, index)
        try:
            repaired = self._check_step_id(action, context, repairs)
            repaired = self._rules[action.response_type](repaired, context, repairs)
        except _Rejected as rejection:
            logger.warning(f"Rejected {action.response_type.value} action {index}: {rejection.reason}")
            event = ValidationEvent(
                action_type=action.response_type.value,
                reason=rejection.reason,
                action_index=index,
                retry_instruction=rejection.instruction,
            )
            return ValidationResult(ValidationOutcome.REJECTED, None, tuple(repairs.events) + (event,))
        if repairs.events:
            return ValidationResult(ValidationOutcome.REPAIRED, repaired, tuple(repairs.events))
        return ValidationResult(ValidationOutcome.ACCEPTED, repaired)

    # ------------------------------------------------------------------
    # Rules shared by every kind
    # ------------------------------------------------------------------

    def _check_step_id(self, action: Action, context: ValidationContext, repairs: _Repairs) -> Action:
        step_id = (action.step_id or '').strip()
        if not step_id:
            if action.response_type in AMBIGUOUS_STEP_KINDS:
                raise _Rejected(
                    "step_id_missing",
                    f"Set stepId on the {action.response_type.value} action to the plan step it carries out.",
                )
            assigned = context.current_step_id or self._plan_step_of(action) or FALLBACK_STEP_ID
            repairs.note("auto_step_id_assigned", f"stepId was missing and set to '{assigned}'.")
            return action.model_copy(update={'step_id': assigned})
        if is_kebab_step_id(step_id):
            return action if step_id == action.step_id else action.model_copy(update={'step_id': step_id})
        normalized = normalize_step_id(step_id)
        if len(normalized) < 3:
            raise _Rejected(
                "step_id_invalid",
                f"stepId '{step_id}' is not a kebab-case id of at least 3 characters.",
            )
        repairs.note("auto_step_id_normalized", f"stepId '{step_id}' was rewritten as '{normalized}'.")
        return action.model_copy(update={'step_id': normalized})

    @staticmethod
    def _plan_step_of(action: Action) -> str | None:
        if isinstance(action, PlanStateUpdateAction) and action.plan_state is not None:
            plan = action.plan_state
            if plan.current_step_id:
                return normalize_step_id(plan.current_step_id)
            if plan.next_steps:
                return normalize_step_id(plan.next_steps[0].id)
        return None

    # ------------------------------------------------------------------
    # Per-kind rules
    # ------------------------------------------------------------------

    def _validate_plan_state_update(
            self, action: PlanStateUpdateAction, context: ValidationContext, repairs: _Repairs,
    ) -> Action:
        plan = action.plan_state
        if plan is None:
            raise _Rejected(
                "plan_state_payload_missing",
                "Include a planState object with goal, progress, nextSteps, steps and currentStepId.",
            )
        if not (plan.goal or '').strip():
            raise _Rejected("plan_goal_missing", "planState.goal must describe what the user wants to achieve.")

        updates: dict[str, Any] = {}
        next_steps = normalize_plan_steps(plan.next_steps)
        steps = normalize_plan_steps(plan.steps)
        if len(next_steps) != len(plan.next_steps) or len(steps) != len(plan.steps):
            repairs.note("auto_plan_steps_normalized", "Malformed or duplicate plan steps were dropped.")

        if not steps and next_steps:
            steps = list(next_steps)
            repairs.note("auto_plan_steps_backfilled", "planState.steps was empty and was copied from nextSteps.")
        known = {step.id for step in steps}
        for step in next_steps:
            if step.id not in known:
                steps.append(step)
                known.add(step.id)
        if not next_steps and not plan.blocked_by:
            pending = [step for step in steps if step.status != StepStatus.DONE]
            if pending:
                next_steps = pending
                repairs.note("auto_plan_next_steps_backfilled",
                             "planState.nextSteps was empty and was rebuilt from unfinished steps.")
            elif not steps:
                raise _Rejected(
                    "plan_steps_missing",
                    "planState.nextSteps must list at least one step with a kebab-case id and a label.",
                )
        updates['next_steps'] = next_steps
        updates['steps'] = steps

        current = normalize_step_id(plan.current_step_id) if plan.current_step_id else None
        if current not in known:
            fallback = next_steps[0].id if next_steps else (steps[-1].id if steps else None)
            if plan.current_step_id:
                repairs.note("auto_current_step_fixed",
                             f"currentStepId '{plan.current_step_id}' is not a plan step; using '{fallback}'.")
            current = fallback
        updates['current_step_id'] = current

        if not (plan.progress or '').strip():
            updates['progress'] = "Plan updated."
            repairs.note("auto_plan_progress_filled", "planState.progress was empty.")
        if not plan.plan_id:
            updates['plan_id'] = (context.plan_state.plan_id if context.plan_state else None) or short_id('plan')
        if plan.confidence is not None and not 0.0 <= plan.confidence <= 1.0:
            updates['confidence'] = min(1.0, max(0.0, plan.confidence))
            repairs.note("auto_plan_confidence_clamped", "planState.confidence must lie in [0, 1].")
        if not plan.state_tag:
            updates['state_tag'] = action.state_tag
        updates['updated_at'] = plan.updated_at or datetime.now().isoformat()

        return action.model_copy(update={'plan_state': plan.model_copy(update=updates)})

    def _validate_text_response(
            self, action: TextResponseAction, context: ValidationContext, repairs: _Repairs,
    ) -> Action:
        if not (action.text or '').strip():
            raise _Rejected("missing_text", "text_response actions must include non-empty text.")
        return action

    def _validate_await_user(
            self, action: AwaitUserAction, context: ValidationContext, repairs: _Repairs,
    ) -> Action:
        if not (action.prompt or '').strip():
            raise _Rejected("await_prompt_missing", "await_user actions must include the prompt shown to the user.")
        return action

    def _validate_dom_action(
            self, action: DomAction, context: ValidationContext, repairs: _Repairs,
    ) -> Action:
        call = action.dom_action
        if call is None or not call.tool_name:
            raise _Rejected("dom_payload_missing", "dom_action needs a domAction object with toolName and target.")
        rule = DOM_TOOL_ARG_RULES.get(call.tool_name)
        if rule is None:
            raise _Rejected(
                "dom_tool_unknown",
                f"Unknown dom tool '{call.tool_name}'. Use one of: {', '.join(DOM_TOOL_ARG_RULES)}.",
            )

        args = dict(call.args)
        hint = context.detected_intent.required_tool if context.detected_intent else None
        if hint and hint.response_type == ActionType.DOM_ACTION and hint.tool_name in (None, call.tool_name):
            filled = False
            for key in ('cardId', 'cardTitle'):
                hinted = hint.payload_hints.get(key)
                if not args.get(key) and isinstance(hinted, str) and hinted.strip():
                    args[key] = hinted.strip()
                    filled = True
            if filled:
                repairs.note("auto_dom_payload_filled", "DOM payload fields were filled from the user intent.")

        target = call.target
        by_id = target.by_id or args.get('cardId')
        by_title = target.by_title or args.get('cardTitle')
        cards = context.ui_state
        if by_id and cards.cards and cards.find_card_by_id(by_id) is None:
            by_id = None
        if not by_id and by_title:
            card = cards.find_card_by_title(by_title)
            if card is not None:
                by_id = card.id
                repairs.note("auto_dom_target_resolved", f"Card id '{card.id}' was resolved from title '{by_title}'.")
        if not by_id and not target.selector:
            repairs.note("auto_dom_downgraded", "No card matched the dom_action target; asked the user instead.")
            return TextResponseAction(
                step_id=action.step_id,
                state_tag=action.state_tag,
                reason=action.reason,
                thought=action.thought,
                meta=action.meta,
                text=DOM_TARGET_NOT_FOUND_TEXT,
            )
        if by_id:
            args['cardId'] = by_id
        problem = rule(args)
        if problem:
            raise _Rejected("dom_args_invalid", problem)

        new_target = target.model_copy(update={'by_id': by_id or target.by_id, 'by_title': by_title})
        new_call = call.model_copy(update={'target': new_target, 'args': args})
        if new_call == call:
            return action
        return action.model_copy(update={'dom_action': new_call})

    def _validate_execute_js_code(
            self, action: ExecuteJsCodeAction, context: ValidationContext, repairs: _Repairs,
    ) -> Action:
        code = action.code
        body = (code.js_function_body or '') if code else ''
        if not body.strip():
            raise _Rejected("missing_js_code", "execute_js_code needs code.jsFunctionBody.")
        explanation = (code.explanation or '').strip()
        if len(explanation) < context.min_code_explanation_length:
            raise _Rejected(
                "js_explanation_missing",
                f"Explain the transform in code.explanation (at least {context.min_code_explanation_length} characters).",
            )
        if not has_return_value(body):
            raise _Rejected(
                "js_return_missing",
                "The transform body must end with an explicit `return <rows>` of the transformed array.",
            )
        return action

    def _validate_filter_spreadsheet(
            self, action: FilterSpreadsheetAction, context: ValidationContext, repairs: _Repairs,
    ) -> Action:
        query = (action.query or '').strip()
        if not query:
            hinted = self._filter_hint(context)
            if hinted is None:
                raise _Rejected("filter_query_missing", "filter_spreadsheet needs a natural-language query.")
            repairs.note("auto_filter_query_filled", "Filter query was filled from the user's request.")
            action = action.model_copy(update={'query': hinted})
            query = hinted
        if not is_meaningful_filter_query(query, context.min_filter_query_length) or not is_filter_phrase(query):
            raise _Rejected(
                "filter_query_too_short",
                "Describe the filter as a full phrase, e.g. 'rows where region is West'.",
            )
        if len(query) > context.max_filter_query_length:
            raise _Rejected(
                "filter_query_too_long",
                f"Keep the filter query under {context.max_filter_query_length} characters.",
            )
        return action

    @staticmethod
    def _filter_hint(context: ValidationContext) -> str | None:
        candidates = []
        intent = context.detected_intent
        if intent is not None:
            if intent.required_tool is not None:
                candidates.append(intent.required_tool.payload_hints.get('query'))
            candidates.append(intent.payload_hints.get('query'))
            if intent.intent not in GREETING_INTENTS:
                candidates.append(context.user_message)
        for candidate in candidates:
            if isinstance(candidate, str) and is_meaningful_filter_query(candidate, context.min_filter_query_length):
                return candidate.strip()
        return None

    def _validate_clarification_request(
            self, action: ClarificationRequestAction, context: ValidationContext, repairs: _Repairs,
    ) -> Action:
        if not (action.question or '').strip():
            raise _Rejected("clarification_question_missing", "clarification_request needs a question.")
        options = [o for o in action.options if str(o.label).strip() and o.value not in (None, '')]
        if not options:
            raise _Rejected("clarification_no_options", "clarification_request needs at least one option.")
        if not (action.target_property or '').strip():
            raise _Rejected(
                "clarification_target_missing",
                "clarification_request needs targetProperty naming the plan field the answer fills.",
            )
        if action.pending_plan is None:
            raise _Rejected(
                "clarification_pending_plan_missing",
                "clarification_request needs pendingPlan holding the partial plan to complete.",
            )
        if len(options) != len(action.options):
            repairs.note("auto_clarification_options_pruned", "Options without a label or value were dropped.")
            return action.model_copy(update={'options': options})
        return action

    def _validate_plan_creation(
            self, action: PlanCreationAction, context: ValidationContext, repairs: _Repairs,
    ) -> Action:
        plan = action.chart_plan or {}
        if not plan.get('title') or not plan.get('chartType'):
            raise _Rejected("chart_plan_incomplete", "plan_creation needs chartPlan.title and chartPlan.chartType.")
        return action

    def _validate_proceed_to_analysis(
            self, action: ProceedToAnalysisAction, context: ValidationContext, repairs: _Repairs,
    ) -> Action:
        return action
