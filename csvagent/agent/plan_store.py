import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from csvagent.agent.guards import AWAITING_USER_CHOICE
from csvagent.agent.state_tag import CONTEXT_READY, HALTING_STATE_TAGS, USER_BLOCKING_STATE_TAGS
from csvagent.agent.types import PlanState, StepStatus

logger = logging.getLogger(__name__)


class PlanStateStore:
    """Single slot holding the session's live plan tracker.

    ``replace`` swaps the whole record; fields are never merged. The only
    in-place bookkeeping is ``complete_step``, used once an action for a step
    has executed successfully.
    """

    def __init__(self, plan_state: PlanState | None = None) -> None:
        self._plan_state = plan_state

    @property
    def current(self) -> PlanState | None:
        return self._plan_state

    def replace(self, plan_state: PlanState) -> PlanState:
        previous = self._plan_state
        self._plan_state = plan_state.model_copy(deep=True)
        if previous is None or previous.plan_id != plan_state.plan_id:
            logger.info(f"Plan tracker {plan_state.plan_id} set: {plan_state.goal}")
        return self._plan_state

    def complete_step(self, step_id: str | None) -> bool:
        """Mark ``step_id`` done and drop it from ``next_steps``. Returns False when unknown."""
        plan = self._plan_state
        if plan is None or not step_id:
            return False
        if not any(step.id == step_id for step in plan.next_steps):
            return False
        next_steps = [step for step in plan.next_steps if step.id != step_id]
        steps = [
            step.model_copy(update={'status': StepStatus.DONE}) if step.id == step_id else step
            for step in plan.steps
        ]
        current = next_steps[0].id if next_steps else plan.current_step_id
        self._plan_state = plan.model_copy(update={
            'next_steps': next_steps,
            'steps': steps,
            'current_step_id': current,
            'updated_at': datetime.now().isoformat(),
        })
        logger.debug(f"Plan step {step_id} done, {len(next_steps)} remaining")
        return True

    def release_user_block(self) -> bool:
        """Clear a wait-for-the-user tag once the question it waited on has been answered."""
        plan = self._plan_state
        if plan is None:
            return False
        if plan.state_tag not in USER_BLOCKING_STATE_TAGS and plan.blocked_by != AWAITING_USER_CHOICE:
            return False
        self._plan_state = plan.model_copy(update={
            'state_tag': CONTEXT_READY,
            'blocked_by': None,
            'updated_at': datetime.now().isoformat(),
        })
        logger.debug(f"Plan tracker {plan.plan_id} no longer waits on the user")
        return True

    def snapshot(self) -> PlanState | None:
        return self._plan_state.model_copy(deep=True) if self._plan_state else None

    def restore(self, snapshot: PlanState | None) -> None:
        self._plan_state = snapshot


class ContinuationDecision(str, Enum):
    CONTINUE = "continue"
    AWAIT_USER = "await_user"
    COMPLETE = "complete"
    CEILING_REACHED = "ceiling_reached"


@dataclass(frozen=True)
class ContinuationPolicy:
    """Decides, after every executed turn, whether another turn is requested."""
    max_turns: int

    def decide(
            self,
            plan_state: PlanState | None,
            *,
            turns_taken: int,
            pending_clarification: bool = False,
            awaiting_user: bool = False,
    ) -> ContinuationDecision:
        if pending_clarification or awaiting_user:
            return ContinuationDecision.AWAIT_USER
        if plan_state is None:
            return ContinuationDecision.COMPLETE
        if plan_state.state_tag in HALTING_STATE_TAGS:
            return ContinuationDecision.AWAIT_USER
        if not plan_state.next_steps:
            return ContinuationDecision.COMPLETE
        if turns_taken >= self.max_turns:
            return ContinuationDecision.CEILING_REACHED
        return ContinuationDecision.CONTINUE
