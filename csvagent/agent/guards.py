"""Structural safety checks applied to every batch before anything executes.

The guards look only at the shape of a batch (its length, ordering, kinds and
progress tags) and at the per-run :class:`GuardState`. They never inspect an
action's semantic payload; that is the validator's job.
"""

import dataclasses
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from csvagent.agent.state_tag import (
    USER_BLOCKING_STATE_TAGS,
    is_valid_state_tag,
    parse_state_tag,
)
from csvagent.agent.types import (
    ATOMIC_ACTION_TYPES,
    Action,
    AwaitUserAction,
    ClarificationRequestAction,
    GuardState,
    PlanStateUpdateAction,
)

logger = logging.getLogger(__name__)

DEFAULT_TURN_ACTION_BUDGET = 2
AWAITING_USER_CHOICE = "awaiting_user_choice"


class GuardViolationCode(str, Enum):
    AWAITING_USER = "awaiting_user"
    TURN_BUDGET_EXCEEDED = "turn_budget_exceeded"
    FIRST_ACTION_PLAN_REQUIRED = "first_action_plan_required"
    INVALID_STATE_TAG = "invalid_state_tag"
    MISSING_PLAN_STATE = "missing_plan_state"
    ATOMIC_TYPE_INVALID = "atomic_type_invalid"


# Violations the orchestrator may fix itself when no plan tracker exists yet.
STRUCTURAL_VIOLATIONS = frozenset({
    GuardViolationCode.TURN_BUDGET_EXCEEDED,
    GuardViolationCode.FIRST_ACTION_PLAN_REQUIRED,
    GuardViolationCode.MISSING_PLAN_STATE,
})


@dataclass(frozen=True)
class GuardViolation:
    code: GuardViolationCode
    message: str
    action_index: int | None = None


@dataclass(frozen=True)
class GuardResult:
    ok: bool
    next_state: GuardState | None = None
    violations: tuple[GuardViolation, ...] = ()

    def has(self, code: GuardViolationCode) -> bool:
        return any(v.code == code for v in self.violations)


def create_guard_state(session_id: str | None = None) -> GuardState:
    return GuardState(session_id=session_id or uuid.uuid4().hex)


def resume_guard_state(state: GuardState) -> GuardState:
    """Clear the awaiting-user latch once the outstanding input has been supplied."""
    return dataclasses.replace(state, awaiting_user=False, blocked_by=None)


def _reject(code: GuardViolationCode, message: str, index: int | None = None) -> GuardResult:
    logger.warning(f"Turn guard violation {code.value}: {message}")
    return GuardResult(ok=False, violations=(GuardViolation(code, message, index),))


def _blocks_on_user(action: Action) -> str | None:
    """Return the ``blockedBy`` reason when ``action`` needs a user reply."""
    if action.meta.await_user:
        return AWAITING_USER_CHOICE
    if isinstance(action, AwaitUserAction):
        return AWAITING_USER_CHOICE
    if isinstance(action, ClarificationRequestAction) and len(action.options) > 1:
        return AWAITING_USER_CHOICE
    if isinstance(action, PlanStateUpdateAction) and action.plan_state is not None:
        plan = action.plan_state
        if plan.blocked_by == AWAITING_USER_CHOICE:
            return AWAITING_USER_CHOICE
        tag = plan.state_tag or action.state_tag
        if tag in USER_BLOCKING_STATE_TAGS:
            return plan.blocked_by or tag
    return None


def enforce_turn_guards(
        state: GuardState,
        actions: Sequence[Action],
        *,
        turn_action_budget: int = DEFAULT_TURN_ACTION_BUDGET,
) -> GuardResult:
    """Check one batch against the run's guard state.

    Checks run in a fixed order and the first failure is returned:
    outstanding user input, batch size, plan-first ordering, progress tags
    (format and strict monotonicity), plan payload presence, atomic kinds.
    An empty batch passes and leaves the state untouched.
    """
    if state.awaiting_user:
        return _reject(GuardViolationCode.AWAITING_USER,
                       f"Waiting for the user to answer ({state.blocked_by or 'pending input'}).")
    if not actions:
        return GuardResult(ok=True, next_state=state)
    if len(actions) > turn_action_budget:
        return _reject(GuardViolationCode.TURN_BUDGET_EXCEEDED,
                       f"A turn may carry at most {turn_action_budget} actions, got {len(actions)}.")

    first = actions[0]
    if not isinstance(first, PlanStateUpdateAction):
        return _reject(GuardViolationCode.FIRST_ACTION_PLAN_REQUIRED,
                       f"The first action must be plan_state_update, got {first.response_type.value}.", 0)

    last_tag = parse_state_tag(state.state_tag_seq)
    for index, action in enumerate(actions):
        if not is_valid_state_tag(action.state_tag):
            return _reject(GuardViolationCode.INVALID_STATE_TAG,
                           f"Action {index} has an invalid stateTag {action.state_tag!r}.", index)
        parsed = parse_state_tag(action.state_tag)
        if parsed is None:
            continue
        if last_tag is not None and parsed <= last_tag:
            return _reject(GuardViolationCode.INVALID_STATE_TAG,
                           f"Action {index} stateTag {action.state_tag} does not advance past {last_tag}.", index)
        last_tag = parsed

    if first.plan_state is None:
        return _reject(GuardViolationCode.MISSING_PLAN_STATE,
                       "The plan_state_update action carries no planState.", 0)

    for index, action in enumerate(actions[1:], start=1):
        if action.response_type not in ATOMIC_ACTION_TYPES:
            return _reject(GuardViolationCode.ATOMIC_TYPE_INVALID,
                           f"Action {index} must be an atomic action, got {action.response_type.value}.", index)

    plan_id = first.plan_state.plan_id or state.plan_id
    # A single-option clarification is applied without asking, so the plan's waiting tag does not hold.
    auto_resolved = any(isinstance(a, ClarificationRequestAction) and len(a.options) == 1 for a in actions)
    awaiting_user = False
    blocked_by = None
    for action in actions:
        if auto_resolved and isinstance(action, PlanStateUpdateAction) and not action.meta.await_user:
            continue
        reason = _blocks_on_user(action)
        if reason is not None:
            awaiting_user = True
            blocked_by = reason

    next_state = dataclasses.replace(
        state,
        plan_id=plan_id,
        state_tag_seq=str(last_tag) if last_tag is not None else state.state_tag_seq,
        awaiting_user=awaiting_user,
        blocked_by=blocked_by,
        turn_count=state.turn_count + 1,
    )
    return GuardResult(ok=True, next_state=next_state)


def describe_violations(result: GuardResult) -> str:
    """Corrective instruction text for the model."""
    lines = []
    for violation in result.violations:
        if violation.code == GuardViolationCode.TURN_BUDGET_EXCEEDED:
            lines.append("Return exactly one plan_state_update followed by at most one other action.")
        elif violation.code == GuardViolationCode.FIRST_ACTION_PLAN_REQUIRED:
            lines.append("Start every response with a plan_state_update action.")
        elif violation.code == GuardViolationCode.INVALID_STATE_TAG:
            lines.append("Omit stateTag or use a fresh '<epoch>-<seq>' tag newer than every tag used so far.")
        elif violation.code == GuardViolationCode.MISSING_PLAN_STATE:
            lines.append("The plan_state_update action must include a complete planState object.")
        elif violation.code == GuardViolationCode.ATOMIC_TYPE_INVALID:
            lines.append("The second action must be a single atomic action such as text_response or dom_action.")
        elif violation.code == GuardViolationCode.AWAITING_USER:
            lines.append("Wait for the user's answer before taking further actions.")
        lines.append(f"({violation.message})")
    return ' '.join(lines)
