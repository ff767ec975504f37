from csvagent.agent.guards import (
    GuardViolationCode,
    create_guard_state,
    describe_violations,
    enforce_turn_guards,
    resume_guard_state,
)
from csvagent.agent.types import PlanStateUpdateAction, parse_action

from .helpers import clarification_action, plan_action, text_action


def _batch(*raw, tags=None):
    actions = [parse_action(r) for r in raw]
    if tags is not None:
        actions = [a.model_copy(update={'state_tag': t}) for a, t in zip(actions, tags)]
    return actions


# ---------------------------------------------------------------------------
# Acceptance
# ---------------------------------------------------------------------------


class TestAcceptedBatches:
    def test_plan_and_text_accepted(self):
        state = create_guard_state("s1")
        result = enforce_turn_guards(
            state, _batch(plan_action(), text_action("Hi"), tags=["1700000000000-0", "1700000000000-1"]))
        assert result.ok
        assert result.next_state.plan_id == "plan-1"
        assert result.next_state.state_tag_seq == "1700000000000-1"
        assert result.next_state.turn_count == 1
        assert not result.next_state.awaiting_user

    def test_empty_batch_leaves_state_untouched(self):
        state = create_guard_state("s1")
        result = enforce_turn_guards(state, [])
        assert result.ok
        assert result.next_state is state

    def test_sentinel_tags_skip_monotonic_check(self):
        state = create_guard_state("s1")
        result = enforce_turn_guards(
            state, _batch(plan_action(), text_action("Hi"), tags=["context_ready", "1700000000000-0"]))
        assert result.ok

    def test_multi_option_clarification_sets_latch(self):
        state = create_guard_state("s1")
        result = enforce_turn_guards(state, _batch(
            plan_action(), clarification_action([("Revenue", "revenue"), ("Units", "units")]),
            tags=["1700000000000-0", "1700000000000-1"]))
        assert result.next_state.awaiting_user
        assert result.next_state.blocked_by == "awaiting_user_choice"

    def test_single_option_clarification_does_not_set_latch(self):
        state = create_guard_state("s1")
        result = enforce_turn_guards(state, _batch(
            plan_action(), clarification_action([("Revenue", "revenue")]),
            tags=["1700000000000-0", "1700000000000-1"]))
        assert result.ok
        assert not result.next_state.awaiting_user

    def test_single_option_clarification_overrides_waiting_plan_tag(self):
        state = create_guard_state("s1")
        result = enforce_turn_guards(state, _batch(
            plan_action(state_tag="awaiting_clarification"), clarification_action([("Revenue", "revenue")]),
            tags=["1700000000000-0", "1700000000000-1"]))
        assert result.ok
        assert not result.next_state.awaiting_user
        assert result.next_state.blocked_by is None

    def test_halting_plan_tag_sets_latch(self):
        state = create_guard_state("s1")
        result = enforce_turn_guards(state, _batch(
            plan_action(state_tag="awaiting_clarification"), tags=["1700000000000-0"]))
        assert result.next_state.awaiting_user
        assert result.next_state.blocked_by == "awaiting_clarification"


# ---------------------------------------------------------------------------
# Violations
# ---------------------------------------------------------------------------


class TestViolations:
    def test_awaiting_user_rejects_every_batch_until_resumed(self):
        state = create_guard_state("s1")
        first = enforce_turn_guards(state, _batch(
            plan_action(state_tag="awaiting_clarification"), tags=["1700000000000-0"]))
        blocked = first.next_state
        again = enforce_turn_guards(blocked, _batch(plan_action(), tags=["1700000000000-5"]))
        assert again.has(GuardViolationCode.AWAITING_USER)
        assert enforce_turn_guards(blocked, []).has(GuardViolationCode.AWAITING_USER)

        resumed = enforce_turn_guards(resume_guard_state(blocked), _batch(plan_action(), tags=["1700000000000-5"]))
        assert resumed.ok

    def test_budget_exceeded(self):
        result = enforce_turn_guards(create_guard_state(), _batch(
            plan_action(), text_action("a"), text_action("b"),
            tags=["1700000000000-0", "1700000000000-1", "1700000000000-2"]))
        assert result.has(GuardViolationCode.TURN_BUDGET_EXCEEDED)

    def test_first_action_must_be_plan(self):
        result = enforce_turn_guards(create_guard_state(), _batch(
            text_action("a"), plan_action(), tags=["1700000000000-0", "1700000000000-1"]))
        assert result.has(GuardViolationCode.FIRST_ACTION_PLAN_REQUIRED)
        assert result.violations[0].action_index == 0

    def test_missing_tag_invalid(self):
        result = enforce_turn_guards(create_guard_state(), _batch(plan_action(), text_action("a")))
        assert result.has(GuardViolationCode.INVALID_STATE_TAG)

    def test_stale_tag_rejected(self):
        state = create_guard_state()
        ok = enforce_turn_guards(state, _batch(plan_action(), tags=["1700000000000-4"]))
        stale = enforce_turn_guards(ok.next_state, _batch(plan_action(), tags=["1700000000000-4"]))
        assert stale.has(GuardViolationCode.INVALID_STATE_TAG)

    def test_tags_must_increase_within_batch(self):
        result = enforce_turn_guards(create_guard_state(), _batch(
            plan_action(), text_action("a"), tags=["1700000000000-3", "1700000000000-1"]))
        assert result.has(GuardViolationCode.INVALID_STATE_TAG)
        assert result.violations[0].action_index == 1

    def test_missing_plan_state(self):
        bare = PlanStateUpdateAction(step_id="review-sales", state_tag="1700000000000-0")
        result = enforce_turn_guards(create_guard_state(), [bare])
        assert result.has(GuardViolationCode.MISSING_PLAN_STATE)

    def test_second_plan_update_is_not_atomic(self):
        result = enforce_turn_guards(create_guard_state(), _batch(
            plan_action(), plan_action(), tags=["1700000000000-0", "1700000000000-1"]))
        assert result.has(GuardViolationCode.ATOMIC_TYPE_INVALID)

    def test_describe_violations_gives_instruction(self):
        result = enforce_turn_guards(create_guard_state(), _batch(
            text_action("a"), tags=["1700000000000-0"]))
        assert "plan_state_update" in describe_violations(result)
