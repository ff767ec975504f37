"""Turns one model-proposed batch into an executable action list, or a rejection.

``TurnOrchestrator.process`` runs these stages in order:

1. parse every raw object into a typed action;
2. structural pre-pass: empty batches get a fallback reply, the plan update is
   moved to the front, and when the session has no plan tracker yet a seed plan
   is inserted and oversized batches are clipped;
3. required-tool insertion when the detected intent demands a tool the batch
   does not contain;
4. progress tags are stamped on actions that lack one;
5. turn guards, then per-action validation and auto-repair.

Any failure that survives the repairs produces a rejected :class:`TurnResult`
with a corrective instruction for the model. Nothing here executes actions or
touches session state other than the tag factory.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from csvagent.agent.guards import (
    GuardViolation,
    describe_violations,
    enforce_turn_guards,
)
from csvagent.agent.state_tag import CONTEXT_READY, StateTagFactory, is_halting_state_tag
from csvagent.agent.types import (
    GREETING_INTENTS,
    Action,
    ActionMeta,
    ActionType,
    AwaitUserAction,
    ClarificationRequestAction,
    DetectedIntent,
    DomAction,
    DomTarget,
    DomToolCall,
    ExecuteJsCodeAction,
    FilterSpreadsheetAction,
    GuardState,
    JsCode,
    PlanState,
    PlanStateUpdateAction,
    PlanStep,
    RequiredTool,
    TextResponseAction,
    UIState,
    ValidationEvent,
    parse_action,
    short_id,
)
from csvagent.agent.validation import (
    FALLBACK_STEP_ID,
    ActionValidator,
    ValidationContext,
    is_filter_phrase,
    is_meaningful_filter_query,
)
from csvagent.config.orchestrator import OrchestratorConfig
from csvagent.exceptions import ActionParseError

logger = logging.getLogger(__name__)

EMPTY_BATCH_TEXT = "I am ready to help. Let me know what to analyze or adjust."
GREETING_STEP_ID = "acknowledge-user-greeting"
BOOTSTRAP_STEP_ID = "address-user-request"

FALLBACK_REASONS: dict[ActionType, str] = {
    ActionType.PLAN_STATE_UPDATE: "Keep the shared plan tracker in sync.",
    ActionType.TEXT_RESPONSE: "Reply to the user.",
    ActionType.AWAIT_USER: "Need the user's input before continuing.",
    ActionType.DOM_ACTION: "Adjust the analysis cards the user is looking at.",
    ActionType.EXECUTE_JS_CODE: "Transform the dataset as requested.",
    ActionType.FILTER_SPREADSHEET: "Filter the spreadsheet to the rows the user asked for.",
    ActionType.CLARIFICATION_REQUEST: "The request is ambiguous; ask the user to choose.",
    ActionType.PLAN_CREATION: "Create the chart the user asked for.",
    ActionType.PROCEED_TO_ANALYSIS: "Move on to the analysis.",
}


@dataclass(frozen=True)
class TurnInput:
    """Read-only view of the session handed to the orchestrator for one turn."""
    guard_state: GuardState
    plan_state: PlanState | None = None
    ui_state: UIState = field(default_factory=UIState)
    detected_intent: DetectedIntent | None = None
    user_message: str = ''
    required_tool_satisfied: bool = False
    dataset_columns: tuple[str, ...] = ()


@dataclass(frozen=True)
class TurnResult:
    accepted: bool
    actions: tuple[Action, ...]
    guard_state: GuardState
    events: tuple[ValidationEvent, ...] = ()
    violations: tuple[GuardViolation, ...] = ()
    retry_instruction: str | None = None
    auto_inserted: Action | None = None

    @property
    def repairs(self) -> list[ValidationEvent]:
        return [e for e in self.events if e.is_repair]


def matches_required_tool(action: Action, hint: RequiredTool) -> bool:
    if action.response_type != hint.response_type:
        return False
    if isinstance(action, DomAction) and hint.tool_name:
        return action.dom_action is not None and action.dom_action.tool_name == hint.tool_name
    return True


def has_plan_payload(plan: PlanState | None) -> bool:
    """True when a tracker has at least a goal and a step to work on."""
    return plan is not None and bool((plan.goal or '').strip()) and bool(plan.steps or plan.next_steps)


def build_seed_plan(intent: DetectedIntent | None, user_message: str) -> PlanState:
    """Minimal plan tracker for a session that has none yet."""
    if intent is not None and intent.intent in GREETING_INTENTS:
        step = PlanStep(id=GREETING_STEP_ID, label="Acknowledge the user and ask what to analyze")
        return PlanState(
            plan_id=short_id('plan'),
            goal="Acknowledge the user and gather their request.",
            context_summary="User greeted the assistant; no task specified yet.",
            progress="Greeting acknowledged.",
            next_steps=[step],
            steps=[step],
            current_step_id=step.id,
            confidence=0.5,
            state_tag=CONTEXT_READY,
        )
    message = ' '.join(user_message.split())
    goal = (f"Address user intent: {message[:160]}" if message
            else "Acknowledge the user and clarify analysis goals.")
    step = PlanStep(id=BOOTSTRAP_STEP_ID, label="Respond to the user's latest request")
    return PlanState(
        plan_id=short_id('plan'),
        goal=goal,
        progress="Plan scaffold created.",
        next_steps=[step],
        steps=[step],
        current_step_id=step.id,
        confidence=0.6,
        state_tag=CONTEXT_READY,
    )


def _event(action_type: ActionType | str, reason: str, index: int, instruction: str | None) -> ValidationEvent:
    value = action_type.value if isinstance(action_type, ActionType) else action_type
    return ValidationEvent(action_type=value, reason=reason, action_index=index, retry_instruction=instruction)


class TurnOrchestrator:
    def __init__(
            self,
            config: OrchestratorConfig | None = None,
            tag_factory: StateTagFactory | None = None,
            validator: ActionValidator | None = None,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self.tag_factory = tag_factory or StateTagFactory()
        self.validator = validator or ActionValidator()

    def process(self, raw_actions: Sequence[Any], turn: TurnInput) -> TurnResult:
        events: list[ValidationEvent] = []

        actions: list[Action] = []
        for index, raw in enumerate(raw_actions):
            try:
                actions.append(parse_action(raw))
            except ActionParseError as e:
                events.append(_event('unknown', 'action_parse_failed', index,
                                     f"Action {index} could not be read ({e.reason}). "
                                     f"Every action needs a known responseType."))
                return self._reject(turn, events)

        actions = self._prepare_structure(actions, turn, events)

        auto_inserted = None
        hint = turn.detected_intent.required_tool if turn.detected_intent else None
        if hint is not None and not turn.required_tool_satisfied and self._expects_tool(actions):
            if not any(matches_required_tool(a, hint) for a in actions):
                auto_inserted = self._build_required_tool_action(hint, actions, turn)
                if auto_inserted is None:
                    events.append(_event(hint.response_type, 'required_tool_missing', len(actions),
                                         f"Required tool {hint.describe()} missing. "
                                         f"Include a {hint.describe()} action for the user's request."))
                    return self._reject(turn, events)
                dropped = [a.response_type.value for a in actions[1:]]
                actions = actions[:1] + [auto_inserted]
                events.append(_event(hint.response_type, 'auto_insert_required_tool', 1,
                                     f"Inserted a {hint.describe()} action the user's request requires."))
                logger.warning(f"Auto-inserted required tool {hint.describe()}, dropped {dropped}")

        actions = self._stamp_state_tags(actions, turn, events)

        guard_result = enforce_turn_guards(
            turn.guard_state, actions, turn_action_budget=self.config.turn_action_budget)
        if not guard_result.ok:
            return self._reject(turn, events, guard_result.violations, describe_violations(guard_result))

        validated: list[Action] = []
        rejected = False
        context = ValidationContext(
            plan_state=turn.plan_state,
            ui_state=turn.ui_state,
            detected_intent=turn.detected_intent,
            user_message=turn.user_message,
            min_filter_query_length=self.config.min_filter_query_length,
            max_filter_query_length=self.config.max_filter_query_length,
            min_code_explanation_length=self.config.min_code_explanation_length,
        )
        for index, action in enumerate(actions):
            result = self.validator.validate(action, index, context)
            events.extend(result.events)
            if result.rejected:
                rejected = True
                continue
            validated.append(result.action)
            if isinstance(result.action, PlanStateUpdateAction):
                context.plan_state = result.action.plan_state
        if rejected:
            return self._reject(turn, events)

        final = enforce_turn_guards(turn.guard_state, validated, turn_action_budget=self.config.turn_action_budget)
        if not final.ok:
            return self._reject(turn, events, final.violations, describe_violations(final))
        self.tag_factory.advance_past(final.next_state.state_tag_seq)
        logger.info(f"Turn accepted: {[a.response_type.value for a in validated]}"
                    f" ({len([e for e in events if e.is_repair])} repairs)")
        return TurnResult(
            accepted=True,
            actions=tuple(validated),
            guard_state=final.next_state,
            events=tuple(events),
            auto_inserted=auto_inserted,
        )

    # ------------------------------------------------------------------
    # Pre-pass
    # ------------------------------------------------------------------

    def _prepare_structure(self, actions: list[Action], turn: TurnInput, events: list[ValidationEvent]) -> list[Action]:
        if not actions:
            actions = [TextResponseAction(text=EMPTY_BATCH_TEXT, meta=ActionMeta(auto_inserted=True))]
            events.append(_event(ActionType.TEXT_RESPONSE, 'auto_empty_batch_filled', 0,
                                 "The response had no actions; a default reply was used."))

        actions = [
            a if (a.reason or '').strip() else a.model_copy(update={'reason': FALLBACK_REASONS[a.response_type]})
            for a in actions
        ]

        plan_index = next((i for i, a in enumerate(actions) if isinstance(a, PlanStateUpdateAction)), None)
        if plan_index is not None and plan_index > 0:
            actions.insert(0, actions.pop(plan_index))
            events.append(_event(ActionType.PLAN_STATE_UPDATE, 'auto_plan_moved_first', 0,
                                 "plan_state_update must be the first action."))

        if turn.plan_state is not None:
            return actions

        if plan_index is None:
            seed = build_seed_plan(turn.detected_intent, turn.user_message)
            actions.insert(0, PlanStateUpdateAction(
                step_id=seed.current_step_id,
                state_tag=CONTEXT_READY,
                reason=FALLBACK_REASONS[ActionType.PLAN_STATE_UPDATE],
                meta=ActionMeta(auto_inserted=True),
                plan_state=seed,
            ))
            events.append(_event(ActionType.PLAN_STATE_UPDATE, 'auto_plan_seeded', 0,
                                 "No plan tracker existed; a seed plan was inserted."))
            logger.warning("No plan tracker yet, seeded a bootstrap plan")
        elif actions[0].plan_state is None:
            seed = build_seed_plan(turn.detected_intent, turn.user_message)
            actions[0] = actions[0].model_copy(update={'plan_state': seed})
            events.append(_event(ActionType.PLAN_STATE_UPDATE, 'auto_plan_seeded', 0,
                                 "plan_state_update had no planState; a seed plan was used."))
        elif self._is_greeting(turn) and not has_plan_payload(actions[0].plan_state):
            seed = build_seed_plan(turn.detected_intent, turn.user_message)
            actions[0] = actions[0].model_copy(update={'plan_state': seed})
            events.append(_event(ActionType.PLAN_STATE_UPDATE, 'auto_plan_seeded', 0,
                                 "planState lacked a goal or steps; the greeting plan was used."))

        budget = self.config.turn_action_budget
        if len(actions) > budget:
            atomic = [a for a in actions[1:] if not isinstance(a, PlanStateUpdateAction)]
            actions = [actions[0]] + atomic[:budget - 1]
            events.append(_event(ActionType.PLAN_STATE_UPDATE, 'auto_batch_clipped', 0,
                                 f"Only {budget} actions are allowed per turn; the rest were dropped."))
        return actions

    @staticmethod
    def _is_greeting(turn: TurnInput) -> bool:
        return turn.detected_intent is not None and turn.detected_intent.intent in GREETING_INTENTS

    @staticmethod
    def _expects_tool(actions: list[Action]) -> bool:
        """False when the batch pauses for the user, so no tool should be forced in."""
        for action in actions:
            if isinstance(action, (ClarificationRequestAction, AwaitUserAction)) or action.meta.await_user:
                return False
            if isinstance(action, PlanStateUpdateAction):
                tag = action.plan_state.state_tag if action.plan_state else None
                if is_halting_state_tag(tag) or is_halting_state_tag(action.state_tag):
                    return False
        return True

    def _stamp_state_tags(self, actions: list[Action], turn: TurnInput, events: list[ValidationEvent]) -> list[Action]:
        self.tag_factory.advance_past(turn.guard_state.state_tag_seq)
        stamped = []
        for index, action in enumerate(actions):
            if (action.state_tag or '').strip():
                self.tag_factory.advance_past(action.state_tag)
                stamped.append(action)
                continue
            tag = self.tag_factory.mint()
            stamped.append(action.model_copy(update={'state_tag': tag}))
            events.append(_event(action.response_type, 'auto_state_tag_assigned', index,
                                 f"stateTag was missing and set to {tag}."))
        return stamped

    # ------------------------------------------------------------------
    # Required tool fallback
    # ------------------------------------------------------------------

    def _build_required_tool_action(
            self, hint: RequiredTool, actions: list[Action], turn: TurnInput,
    ) -> Action | None:
        step_id = self._auto_step_id(actions, turn)
        meta = ActionMeta(auto_inserted=True)
        if hint.response_type == ActionType.DOM_ACTION:
            if not hint.tool_name:
                return None
            card_id = hint.payload_hints.get('cardId')
            card_title = hint.payload_hints.get('cardTitle')
            if card_id and turn.ui_state.cards and turn.ui_state.find_card_by_id(card_id) is None:
                card_id = None
            if not card_id and card_title:
                card = turn.ui_state.find_card_by_title(card_title)
                card_id = card.id if card is not None else None
            if not card_id:
                return None
            args = {'cardId': card_id}
            if card_title:
                args['cardTitle'] = card_title
            return DomAction(
                step_id=step_id,
                reason="Auto-inserted UI action to satisfy the user's request.",
                meta=meta,
                dom_action=DomToolCall(
                    tool_name=hint.tool_name,
                    target=DomTarget(by_id=card_id, by_title=card_title),
                    args=args,
                ),
            )
        if hint.response_type == ActionType.FILTER_SPREADSHEET:
            for candidate in (hint.payload_hints.get('query'), turn.user_message):
                if (isinstance(candidate, str)
                        and is_meaningful_filter_query(candidate, self.config.min_filter_query_length)
                        and is_filter_phrase(candidate)):
                    return FilterSpreadsheetAction(
                        step_id=step_id,
                        reason="Auto-inserted filter to satisfy the user's request.",
                        meta=meta,
                        query=candidate.strip()[:self.config.max_filter_query_length],
                    )
            return None
        if hint.response_type == ActionType.EXECUTE_JS_CODE:
            column = hint.payload_hints.get('column') or self._mentioned_column(turn)
            if not column:
                return None
            safe = column.replace('\\', '\\\\').replace('"', '\\"')
            body = (
                "const result = data.map(row => {\n"
                "    const next = { ...row };\n"
                f"    delete next[\"{safe}\"];\n"
                "    return next;\n"
                "});\n"
                "return result;"
            )
            return ExecuteJsCodeAction(
                step_id=step_id,
                reason=f"Auto-inserted transform to remove the column \"{column}\".",
                meta=meta,
                code=JsCode(
                    explanation=f"Removes the column \"{column}\" from every row of the dataset.",
                    js_function_body=body,
                ),
            )
        return None

    @staticmethod
    def _mentioned_column(turn: TurnInput) -> str | None:
        message = turn.user_message.lower()
        for name in sorted(turn.dataset_columns, key=len, reverse=True):
            if name and re.search(rf'(?<!\w){re.escape(name.lower())}(?!\w)', message):
                return name
        return None

    @staticmethod
    def _auto_step_id(actions: list[Action], turn: TurnInput) -> str:
        plan = actions[0].plan_state if actions and isinstance(actions[0], PlanStateUpdateAction) else None
        for candidate in (plan, turn.plan_state):
            if candidate is None:
                continue
            if candidate.current_step_id:
                return candidate.current_step_id
            if candidate.next_steps:
                return candidate.next_steps[0].id
        return FALLBACK_STEP_ID

    @staticmethod
    def _reject(
            turn: TurnInput,
            events: list[ValidationEvent],
            violations: tuple[GuardViolation, ...] = (),
            guard_instruction: str | None = None,
    ) -> TurnResult:
        instructions = [e.retry_instruction for e in events if not e.is_repair and e.retry_instruction]
        if guard_instruction:
            instructions.insert(0, guard_instruction)
        return TurnResult(
            accepted=False,
            actions=(),
            guard_state=turn.guard_state,
            events=tuple(events),
            violations=violations,
            retry_instruction=' '.join(instructions) or "Return a valid plan_state_update and one action.",
        )
