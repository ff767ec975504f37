"""Top-level planner state machine.

One :class:`PlannerWorkflow` owns a session: the chat history, the plan
tracker, the clarification registry, the action ledger and the dataset
workspace. Each user message starts a *run*; a run loops over turns
(planning, validating, executing) until the plan is finished, the user is
needed, or a bound is hit. Only one run may be active per session, and the
cancellation flag of a run is checked before every turn and again after the
model call, never in the middle of executing a batch.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from csvagent.agent.chat import ChatHistory
from csvagent.agent.clarification import ClarificationRegistry, match_option
from csvagent.agent.context import ContextBundle, ModelResponder, ResponderReply
from csvagent.agent.dataset import DatasetWorkspace, TransformRunner
from csvagent.agent.guards import create_guard_state
from csvagent.agent.intent import IntentClassifier, RegexIntentClassifier
from csvagent.agent.ledger import ActionLedger
from csvagent.agent.orchestrator import TurnInput, TurnOrchestrator, matches_required_tool
from csvagent.agent.plan_store import ContinuationDecision, ContinuationPolicy, PlanStateStore
from csvagent.agent.state_tag import HALTING_STATE_TAGS, StateTagFactory
from csvagent.agent.tool import ToolError, ToolExecutor
from csvagent.agent.types import (
    ATOMIC_ACTION_TYPES,
    SIDE_EFFECT_ACTION_TYPES,
    Action,
    ActionErrorCode,
    ActionTrace,
    ActionType,
    AwaitUserAction,
    ClarificationRequest,
    ClarificationRequestAction,
    ClarificationResolution,
    DetectedIntent,
    ExecuteJsCodeAction,
    GuardState,
    ObservationStatus,
    PlanState,
    PlanStateUpdateAction,
    TextResponseAction,
    TraceStatus,
    UIState,
    ValidationEvent,
    short_id,
)
from csvagent.config.orchestrator import OrchestratorConfig
from csvagent.exceptions import ResponderError, RunAlreadyActiveError, RunNotFoundError, TransformError
from csvagent.tracer import SpanKind, get_current_span, trace_run, traced

logger = logging.getLogger(__name__)

VALIDATION_FALLBACK_TEXT = (
    "Sorry, I could not establish a valid plan update. Please try again or rephrase your question."
)
CEILING_TEXT = "I stopped because this request took too many steps. Nothing was changed; please narrow it down."
RESPONDER_FAILED_TEXT = "Sorry, I could not reach the planning model. Please try again."


class WorkflowState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    VALIDATING = "validating"
    EXECUTING = "executing"
    CONTINUING = "continuing"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    WorkflowState.COMPLETED,
    WorkflowState.FAILED,
    WorkflowState.CANCELLED,
})


class DispatchKind(str, Enum):
    COMPLETE = "complete"
    RETRY = "retry"
    STOP = "stop"
    AWAIT_USER = "await_user"
    AWAIT_APPROVAL = "await_approval"


@dataclass(frozen=True)
class _ActionOutcome:
    kind: DispatchKind
    status: ObservationStatus
    outputs: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None
    completes_step: bool = False

    @classmethod
    def success(cls, outputs: dict[str, Any] | None = None, *, completes_step: bool = True,
                kind: DispatchKind = DispatchKind.COMPLETE) -> '_ActionOutcome':
        return cls(kind, ObservationStatus.SUCCESS, outputs, completes_step=completes_step)

    @classmethod
    def failure(cls, code: ActionErrorCode | str, message: str, *, retry: bool) -> '_ActionOutcome':
        code_value = code.value if isinstance(code, ActionErrorCode) else code
        return cls(
            DispatchKind.RETRY if retry else DispatchKind.STOP,
            ObservationStatus.ERROR,
            error_code=code_value,
            error_message=message,
        )


@dataclass
class WorkflowRun:
    """Bookkeeping for one run. Lives until the run ends, then stays as ``last_run``."""
    run_id: str
    user_message: str
    detected_intent: DetectedIntent
    guard_state: GuardState
    plan_snapshot: PlanState | None
    state: WorkflowState = WorkflowState.IDLE
    turns: int = 0
    validation_retries: int = 0
    auto_retries: int = 0
    tool_executions: int = 0
    required_tool_satisfied: bool = False
    cancel_requested: bool = False
    clarification_id: str | None = None
    notes: list[str] = field(default_factory=list)
    events: list[ValidationEvent] = field(default_factory=list)


@dataclass(frozen=True)
class RunOutcome:
    run_id: str
    state: WorkflowState
    turns: int
    tool_executions: int = 0
    events: tuple[ValidationEvent, ...] = ()
    clarification_id: str | None = None

    @property
    def finished(self) -> bool:
        """False while the run waits on a clarification or a transform approval."""
        return self.state in TERMINAL_STATES


class PlannerWorkflow:
    def __init__(
            self,
            responder: ModelResponder,
            tool_executor: ToolExecutor,
            *,
            dataset: DatasetWorkspace | None = None,
            transform_runner: TransformRunner | None = None,
            intent_classifier: IntentClassifier | None = None,
            config: OrchestratorConfig | None = None,
            orchestrator: TurnOrchestrator | None = None,
            chat: ChatHistory | None = None,
            session_id: str | None = None,
    ) -> None:
        self.responder = responder
        self.tool_executor = tool_executor
        self.dataset = dataset or DatasetWorkspace()
        self.transform_runner = transform_runner
        self.intent_classifier = intent_classifier or RegexIntentClassifier()
        self.config = config or OrchestratorConfig()
        self.orchestrator = orchestrator or TurnOrchestrator(self.config, StateTagFactory())
        self.session_id = session_id or str(uuid.uuid4())

        self.chat = chat or ChatHistory.empty()
        self.plan_store = PlanStateStore()
        self.clarifications = ClarificationRegistry(self.chat)
        self.ledger = ActionLedger()
        self.continuation = ContinuationPolicy(self.config.max_turns_per_run)
        self.ui_state = UIState()
        self.state = WorkflowState.IDLE
        self.events: list[ValidationEvent] = []

        self._active: WorkflowRun | None = None
        self._last_run: WorkflowRun | None = None
        self._handlers: dict[ActionType, Callable[[WorkflowRun, Any, ActionTrace], Awaitable[_ActionOutcome]]] = {
            ActionType.PLAN_STATE_UPDATE: self._apply_plan_update,
            ActionType.TEXT_RESPONSE: self._deliver_text,
            ActionType.AWAIT_USER: self._await_user,
            ActionType.CLARIFICATION_REQUEST: self._request_clarification,
            ActionType.EXECUTE_JS_CODE: self._run_transform,
            ActionType.DOM_ACTION: self._execute_tool,
            ActionType.FILTER_SPREADSHEET: self._execute_tool,
            ActionType.PLAN_CREATION: self._execute_tool,
            ActionType.PROCEED_TO_ANALYSIS: self._execute_tool,
        }
        missing = set(ActionType) - set(self._handlers)
        if missing:
            raise TypeError(f"No execution handler for {sorted(t.value for t in missing)}")

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    @property
    def active_run(self) -> WorkflowRun | None:
        return self._active

    @property
    def last_run(self) -> WorkflowRun | None:
        return self._last_run

    async def handle_message(self, message: str, ui_state: UIState | None = None) -> RunOutcome:
        """Start a run for a new user message."""
        self._ensure_idle()
        if ui_state is not None:
            self.ui_state = ui_state
        notes: list[str] = []

        if self.dataset.pending_transform is not None:
            pending = self.dataset.discard_transform()
            self.chat.add_system(f"Discarded the pending transform ({pending.summary.describe()}).")
            notes.append(f"SYSTEM NOTE: The staged transform ({pending.summary.describe()}) was discarded "
                         f"because the user sent a new message. The dataset is unchanged.")

        answered = False
        if self.clarifications.has_pending():
            answered, clarification_notes = self._absorb_pending_clarifications(message)
            notes.extend(clarification_notes)
        if not answered:
            self.chat.add_user(message)

        intent = self.intent_classifier.classify(message, self.ui_state)
        logger.info(f"Detected intent {intent.intent} ({intent.confidence:.2f}) for: {message}")
        run = self._start_run(message, intent, notes)
        return await self._run(run)

    async def answer_clarification(self, request_id: str, choice: Any) -> RunOutcome:
        """Resolve a pending clarification and resume planning with the completed plan."""
        self._ensure_idle()
        resolution = self.clarifications.resolve(request_id, choice)
        previous = self._last_run
        intent = previous.detected_intent if previous else DetectedIntent('clarification', 0.6)
        message = previous.user_message if previous else resolution.label
        run = self._start_run(message, intent, [self._resolution_note(resolution)])
        if previous is not None:
            run.required_tool_satisfied = previous.required_tool_satisfied
        return await self._run(run)

    def skip_clarification(self, request_id: str) -> ClarificationRequest:
        self._ensure_idle()
        return self.clarifications.skip(request_id)

    async def resolve_transform(self, approve: bool) -> RunOutcome:
        """Approve or discard the staged transform, then let the plan carry on."""
        self._ensure_idle()
        if approve:
            pending = self.dataset.approve_transform()
            self.chat.add_system(f"Transform applied: {pending.summary.describe()}.")
            note = (f"SYSTEM NOTE: The user approved the transform ({pending.summary.describe()}). "
                    f"Continue the plan using the updated data.")
        else:
            pending = self.dataset.discard_transform()
            self.chat.add_system(f"Transform discarded: {pending.summary.describe()}.")
            note = ("SYSTEM NOTE: The user discarded the transform. The dataset is unchanged. "
                    "Continue the plan using the original data.")

        previous = self._last_run
        intent = previous.detected_intent if previous else DetectedIntent('data_transform', 0.7)
        message = previous.user_message if previous else pending.explanation
        run = self._start_run(message, intent, [note])
        if previous is not None:
            run.required_tool_satisfied = previous.required_tool_satisfied

        decision = self.continuation.decide(
            self.plan_store.current,
            turns_taken=0,
            pending_clarification=self.clarifications.has_pending(),
        )
        if decision is not ContinuationDecision.CONTINUE:
            return self._finish(run, WorkflowState.COMPLETED)
        return await self._run(run)

    def cancel(self, run_id: str) -> None:
        """Ask the active run to stop before its next turn."""
        if self._active is None or self._active.run_id != run_id:
            raise RunNotFoundError(run_id)
        logger.info(f"Cancellation requested for run {run_id}")
        self._active.cancel_requested = True

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def _ensure_idle(self) -> None:
        if self._active is not None:
            raise RunAlreadyActiveError(self.session_id, self._active.run_id)

    def _start_run(self, message: str, intent: DetectedIntent, notes: list[str]) -> WorkflowRun:
        run = WorkflowRun(
            run_id=short_id('run'),
            user_message=message,
            detected_intent=intent,
            guard_state=create_guard_state(self.session_id),
            plan_snapshot=self.plan_store.snapshot(),
            notes=list(notes),
        )
        self._active = run
        return run

    @trace_run("planner_run")
    async def _run(self, run: WorkflowRun) -> RunOutcome:
        max_turns = self.config.max_turns_per_run
        while True:
            if run.cancel_requested:
                return self._finish(run, WorkflowState.CANCELLED)
            if run.turns >= max_turns:
                return self._fail_ceiling(run)

            async with traced(SpanKind.TURN, f"turn_{run.turns + 1}", {'run_id': run.run_id}) as turn_span:
                self._transition(run, WorkflowState.PLANNING)
                try:
                    reply = await self._request_actions(run)
                except ResponderError as e:
                    logger.error(f"Responder failed in run {run.run_id}: {e}")
                    self.chat.add_assistant(RESPONDER_FAILED_TEXT, is_error=True)
                    return self._finish(run, WorkflowState.FAILED)
                run.turns += 1
                if run.cancel_requested:
                    return self._finish(run, WorkflowState.CANCELLED)

                self._transition(run, WorkflowState.VALIDATING)
                result = self.orchestrator.process(reply.actions, self._turn_input(run))
                run.events.extend(result.events)
                self.events.extend(result.events)
                if turn_span is not None:
                    for event in result.events:
                        turn_span.add_event(event.reason, action_type=event.action_type,
                                            action_index=event.action_index,
                                            retry_instruction=event.retry_instruction)
                if not result.accepted:
                    run.validation_retries += 1
                    if run.validation_retries > self.config.max_validation_retries:
                        return self._fall_back(run)
                    logger.info(f"Turn {run.turns} rejected, re-prompting: {result.retry_instruction}")
                    run.notes.append(f"SYSTEM NOTE: {result.retry_instruction}")
                    continue
                run.validation_retries = 0
                run.guard_state = result.guard_state

                self._transition(run, WorkflowState.EXECUTING)
                dispatch = await self._dispatch(run, list(result.actions))

            if dispatch is DispatchKind.RETRY:
                if run.auto_retries >= self.config.max_auto_retries:
                    return self._finish(run, WorkflowState.COMPLETED)
                run.auto_retries += 1
                self._transition(run, WorkflowState.CONTINUING)
                continue
            if dispatch is DispatchKind.AWAIT_USER:
                return self._finish(run, WorkflowState.AWAITING_CLARIFICATION)
            if dispatch is DispatchKind.AWAIT_APPROVAL:
                return self._finish(run, WorkflowState.AWAITING_APPROVAL)
            if dispatch is DispatchKind.STOP:
                return self._finish(run, WorkflowState.COMPLETED)

            decision = self.continuation.decide(
                self.plan_store.current,
                turns_taken=run.turns,
                pending_clarification=self.clarifications.has_pending(),
                awaiting_user=run.guard_state.awaiting_user,
            )
            logger.debug(f"Run {run.run_id} turn {run.turns}: continuation {decision.value}")
            if decision is ContinuationDecision.CONTINUE:
                self._transition(run, WorkflowState.CONTINUING)
                run.notes.append(self._continuation_note(self.plan_store.current))
                continue
            if decision is ContinuationDecision.AWAIT_USER:
                return self._finish(run, WorkflowState.AWAITING_CLARIFICATION)
            if decision is ContinuationDecision.CEILING_REACHED:
                return self._fail_ceiling(run)
            return self._finish(run, WorkflowState.COMPLETED)

    async def _request_actions(self, run: WorkflowRun) -> ResponderReply:
        bundle = self._build_context(run)
        reply = await self.responder.respond(bundle)
        logger.debug(f"Responder proposed {len(reply.actions)} action(s) for turn {run.turns + 1}")
        return reply

    def _build_context(self, run: WorkflowRun) -> ContextBundle:
        pending = self.dataset.pending_transform
        return ContextBundle(
            user_message=run.user_message,
            turn_index=run.turns,
            chat_history=tuple(self.chat.recent(self.config.context_chat_messages)),
            plan_state=self.plan_store.current,
            open_clarifications=tuple(self.clarifications.pending()),
            observations=tuple(self.ledger.recent_observations(self.config.context_observations)),
            traces=tuple(self.ledger.recent_traces(self.config.context_traces)),
            detected_intent=run.detected_intent,
            columns=tuple(self.dataset.columns()),
            sample_rows=tuple(self.dataset.sample()),
            ui_state=self.ui_state,
            notes=tuple(run.notes),
            pending_transform=pending.summary.describe() if pending else None,
        )

    def _turn_input(self, run: WorkflowRun) -> TurnInput:
        return TurnInput(
            guard_state=run.guard_state,
            plan_state=self.plan_store.current,
            ui_state=self.ui_state,
            detected_intent=run.detected_intent,
            user_message=run.user_message,
            required_tool_satisfied=run.required_tool_satisfied,
            dataset_columns=tuple(c.name for c in self.dataset.columns()),
        )

    def _transition(self, run: WorkflowRun, state: WorkflowState) -> None:
        logger.debug(f"Run {run.run_id}: {run.state.value} -> {state.value}")
        span = get_current_span()
        if span is not None:
            span.add_event("state", previous=run.state.value, to=state.value)
        run.state = state
        self.state = state

    def _finish(self, run: WorkflowRun, state: WorkflowState) -> RunOutcome:
        if state is WorkflowState.FAILED:
            self.plan_store.restore(run.plan_snapshot)
            pending = self.dataset.pending_transform
            if pending is not None and pending.run_id == run.run_id:
                self.dataset.discard_transform()
        self._transition(run, state)
        self._active = None
        self._last_run = run
        logger.info(f"Run {run.run_id} ended {state.value} after {run.turns} turn(s), "
                    f"{run.tool_executions} tool execution(s)")
        return RunOutcome(
            run_id=run.run_id,
            state=state,
            turns=run.turns,
            tool_executions=run.tool_executions,
            events=tuple(run.events),
            clarification_id=run.clarification_id,
        )

    def _fall_back(self, run: WorkflowRun) -> RunOutcome:
        logger.warning(f"Run {run.run_id}: validation retries exhausted, replying with the fallback text")
        self.chat.add_assistant(VALIDATION_FALLBACK_TEXT, is_error=True)
        if self.plan_store.current is None:
            return self._finish(run, WorkflowState.FAILED)
        return self._finish(run, WorkflowState.COMPLETED)

    def _fail_ceiling(self, run: WorkflowRun) -> RunOutcome:
        logger.error(f"Run {run.run_id} hit the turn ceiling ({self.config.max_turns_per_run})")
        self.chat.add_assistant(CEILING_TEXT, is_error=True)
        return self._finish(run, WorkflowState.FAILED)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _dispatch(self, run: WorkflowRun, actions: list[Action]) -> DispatchKind:
        plan_update = actions[0] if actions and isinstance(actions[0], PlanStateUpdateAction) else None
        halting = (plan_update is not None and plan_update.plan_state is not None
                   and plan_update.plan_state.state_tag in HALTING_STATE_TAGS)
        for action in actions:
            if halting and action.response_type in SIDE_EFFECT_ACTION_TYPES:
                logger.info(f"Plan is waiting on the user, skipping {action.response_type.value}")
                continue
            kind = await self._execute_action(run, action)
            if kind is not DispatchKind.COMPLETE:
                return kind
        if any(a.meta.halt_after for a in actions):
            return DispatchKind.STOP
        return DispatchKind.COMPLETE

    async def _execute_action(self, run: WorkflowRun, action: Action) -> DispatchKind:
        trace = self.ledger.begin(
            action.response_type,
            self._summarize(action),
            source="orchestrator" if action.meta.auto_inserted else "planner",
            metadata={'run_id': run.run_id, 'step_id': action.step_id, 'state_tag': action.state_tag},
        )
        async with traced(SpanKind.ACTION, action.response_type.value, {'trace_id': trace.id}):
            try:
                outcome = await self._handlers[action.response_type](run, action, trace)
            except Exception as e:
                logger.exception(f"Action {action.response_type.value} raised")
                outcome = _ActionOutcome.failure(ActionErrorCode.TOOL_FAILED, str(e), retry=True)

        succeeded = outcome.status is not ObservationStatus.ERROR
        self.ledger.resolve(trace.id, TraceStatus.SUCCEEDED if succeeded else TraceStatus.FAILED)
        self.ledger.observe(
            trace,
            outcome.status,
            outputs=outcome.outputs,
            error_code=outcome.error_code,
            error_message=outcome.error_message,
        )
        if not succeeded:
            self.chat.add_assistant(self._failure_text(action, outcome), is_error=True)
            if outcome.kind is DispatchKind.RETRY:
                run.notes.append(
                    f"SYSTEM NOTE: The previous {action.response_type.value} action failed "
                    f"({outcome.error_code}: {outcome.error_message}). Adjust the action and try again.")
            return outcome.kind

        if outcome.completes_step and action.response_type in ATOMIC_ACTION_TYPES:
            self.plan_store.complete_step(action.step_id)
        hint = run.detected_intent.required_tool
        if hint is not None and matches_required_tool(action, hint):
            run.required_tool_satisfied = True
        return outcome.kind

    async def _apply_plan_update(self, run: WorkflowRun, action: PlanStateUpdateAction,
                                 trace: ActionTrace) -> _ActionOutcome:
        plan = self.plan_store.replace(action.plan_state)
        return _ActionOutcome.success({
            'plan_id': plan.plan_id,
            'state_tag': plan.state_tag,
            'next_steps': [step.id for step in plan.next_steps],
        }, completes_step=False)

    async def _deliver_text(self, run: WorkflowRun, action: TextResponseAction, trace: ActionTrace) -> _ActionOutcome:
        self.chat.add_assistant(action.text)
        return _ActionOutcome.success()

    async def _await_user(self, run: WorkflowRun, action: AwaitUserAction, trace: ActionTrace) -> _ActionOutcome:
        text = action.prompt
        if action.options:
            text += '\n' + '\n'.join(f"{i}. {option}" for i, option in enumerate(action.options, 1))
        self.chat.add_assistant(text)
        return _ActionOutcome(DispatchKind.AWAIT_USER, ObservationStatus.PENDING)

    async def _request_clarification(self, run: WorkflowRun, action: ClarificationRequestAction,
                                     trace: ActionTrace) -> _ActionOutcome:
        if len(action.options) == 1:
            resolution = self.clarifications.auto_resolve(action)
            run.notes.append(self._resolution_note(resolution))
            self.plan_store.release_user_block()
            return _ActionOutcome.success({'auto_resolved': True, 'value': resolution.value})
        request = self.clarifications.register(action)
        run.clarification_id = request.id
        self.ledger.annotate(trace.id, clarification_id=request.id)
        options = '\n'.join(f"{i}. {option.label}" for i, option in enumerate(request.options, 1))
        self.chat.add_assistant(f"{request.question}\n{options}")
        return _ActionOutcome(DispatchKind.AWAIT_USER, ObservationStatus.PENDING,
                              {'clarification_id': request.id})

    async def _run_transform(self, run: WorkflowRun, action: ExecuteJsCodeAction,
                             trace: ActionTrace) -> _ActionOutcome:
        if not self.dataset.loaded:
            return _ActionOutcome.failure(
                ActionErrorCode.DATASET_UNAVAILABLE, "No dataset is loaded.", retry=False)
        if self.dataset.pending_transform is not None:
            return _ActionOutcome.failure(
                ActionErrorCode.TRANSFORM_PENDING,
                "A transform is already waiting for approval.", retry=False)
        if self.transform_runner is None:
            return _ActionOutcome.failure(
                ActionErrorCode.TRANSFORM_FAILED, "No transform runner is configured.", retry=False)

        code = action.code
        try:
            result = await self.transform_runner.run(code.js_function_body, self.dataset.snapshot())
        except TransformError as e:
            return _ActionOutcome.failure(ActionErrorCode.TRANSFORM_FAILED, str(e), retry=True)
        if not isinstance(result, list) or not all(isinstance(row, dict) for row in result):
            return _ActionOutcome.failure(
                ActionErrorCode.TRANSFORM_FAILED,
                "The transform must return an array of row objects.", retry=True)
        if result == self.dataset.rows:
            return _ActionOutcome.failure(
                ActionErrorCode.TRANSFORM_NO_CHANGE,
                "The transform produced no observable changes.", retry=True)

        pending = self.dataset.stage_transform(result, code.explanation, run.run_id)
        self.chat.add_assistant(
            f"Transform ready for review ({pending.summary.describe()}): {code.explanation}\n"
            f"Approve to apply it, or discard to keep the current data.")
        run.tool_executions += 1
        return _ActionOutcome.success(pending.summary.as_outputs(), kind=DispatchKind.AWAIT_APPROVAL)

    async def _execute_tool(self, run: WorkflowRun, action: Action, trace: ActionTrace) -> _ActionOutcome:
        output = await self.tool_executor.execute(action)
        run.tool_executions += 1
        if isinstance(output, ToolError):
            return _ActionOutcome.failure(output.error_code, output.error_message, retry=True)
        if output.message:
            self.chat.add_assistant(output.message)
        return _ActionOutcome.success(output.outputs)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _absorb_pending_clarifications(self, message: str) -> tuple[bool, list[str]]:
        """Answer pending requests from a free-form message, skipping the ones it does not answer."""
        answered = False
        notes = []
        for request in self.clarifications.pending():
            option = match_option(request.options, message)
            if option is None:
                self.clarifications.skip(request.id)
                continue
            resolution = self.clarifications.resolve(request.id, option.value)
            notes.append(self._resolution_note(resolution))
            answered = True
        return answered, notes

    @staticmethod
    def _resolution_note(resolution: ClarificationResolution) -> str:
        completed = json.dumps(resolution.completed_plan, ensure_ascii=False, default=str)
        return (f"SYSTEM NOTE: The user chose \"{resolution.label}\" for {resolution.target_property}. "
                f"Continue with the completed plan: {completed}")

    @staticmethod
    def _continuation_note(plan: PlanState | None) -> str:
        if plan is None:
            return "SYSTEM NOTE: Continue with the user's request."
        steps = ', '.join(f"[{step.id}] {step.label}" for step in plan.next_steps)
        return f"SYSTEM NOTE: Continue executing the plan. Goal: {plan.goal}. Remaining steps: {steps}"

    @staticmethod
    def _summarize(action: Action) -> str:
        if isinstance(action, PlanStateUpdateAction) and action.plan_state is not None:
            return f"Plan: {action.plan_state.goal}"
        if isinstance(action, TextResponseAction):
            return (action.text or '')[:80]
        if isinstance(action, ExecuteJsCodeAction) and action.code is not None:
            return action.code.explanation
        if isinstance(action, ClarificationRequestAction):
            return action.question or ''
        return action.reason or action.response_type.value

    @staticmethod
    def _failure_text(action: Action, outcome: _ActionOutcome) -> str:
        return f"The {action.response_type.value} step failed: {outcome.error_message}"
