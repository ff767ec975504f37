import dataclasses

import pytest

from csvagent.agent.guards import GuardViolationCode, create_guard_state
from csvagent.agent.orchestrator import (
    BOOTSTRAP_STEP_ID,
    EMPTY_BATCH_TEXT,
    GREETING_STEP_ID,
    TurnInput,
    TurnOrchestrator,
    build_seed_plan,
    matches_required_tool,
)
from csvagent.agent.state_tag import CONTEXT_READY, StateTagFactory, parse_state_tag
from csvagent.agent.types import (
    ActionType,
    CardRef,
    DetectedIntent,
    DomAction,
    ExecuteJsCodeAction,
    PlanStateUpdateAction,
    RequiredTool,
    TextResponseAction,
    UIState,
    parse_action,
)
from csvagent.config.orchestrator import OrchestratorConfig

from .helpers import js_action, plan_action, text_action

CARDS = UIState(cards=(CardRef('card-1', 'Sales by Region'),))
REMOVE_CARD = DetectedIntent(
    'remove_card', 0.95,
    required_tool=RequiredTool(ActionType.DOM_ACTION, 'removeCard', {'cardTitle': 'Sales by Region'}),
    payload_hints={'cardTitle': 'Sales by Region'},
)
TRANSFORM = DetectedIntent('data_transform', 0.7, required_tool=RequiredTool(ActionType.EXECUTE_JS_CODE))


@pytest.fixture
def orchestrator():
    return TurnOrchestrator(OrchestratorConfig(), StateTagFactory(clock=lambda: 1700000000.0))


def _turn(**kwargs):
    kwargs.setdefault('guard_state', create_guard_state("session-1"))
    return TurnInput(**kwargs)


def _existing_plan():
    return parse_action(plan_action()).plan_state


def _reasons(result):
    return [e.reason for e in result.events]


# ---------------------------------------------------------------------------
# Seed plans and the structural pre-pass
# ---------------------------------------------------------------------------


class TestStructure:
    def test_greeting_gets_seed_plan(self, orchestrator):
        turn = _turn(detected_intent=DetectedIntent('greeting', 0.9), user_message="hi")
        result = orchestrator.process([text_action("Hello! What should we analyze?")], turn)

        assert result.accepted
        plan_update, reply = result.actions
        assert isinstance(plan_update, PlanStateUpdateAction)
        assert plan_update.meta.auto_inserted
        assert plan_update.plan_state.current_step_id == GREETING_STEP_ID
        assert plan_update.plan_state.state_tag == CONTEXT_READY
        assert reply.step_id == GREETING_STEP_ID
        assert {"auto_plan_seeded", "auto_state_tag_assigned", "auto_step_id_assigned"} <= set(_reasons(result))
        assert result.guard_state.state_tag_seq == "1700000000000-0"

    def test_other_requests_get_bootstrap_plan(self):
        plan = build_seed_plan(DetectedIntent('chart_request', 0.4), "show   total sales")
        assert plan.current_step_id == BOOTSTRAP_STEP_ID
        assert plan.goal == "Address user intent: show total sales"

    def test_bootstrap_plan_without_message(self):
        assert build_seed_plan(None, "").goal == "Acknowledge the user and clarify analysis goals."

    def test_empty_batch_without_plan(self, orchestrator):
        result = orchestrator.process([], _turn(user_message="hello"))
        assert result.accepted
        assert result.actions[1].text == EMPTY_BATCH_TEXT
        assert {"auto_empty_batch_filled", "auto_plan_seeded"} <= set(_reasons(result))

    def test_empty_batch_with_plan_is_rejected(self, orchestrator):
        result = orchestrator.process([], _turn(plan_state=_existing_plan()))
        assert not result.accepted
        assert result.violations[0].code == GuardViolationCode.FIRST_ACTION_PLAN_REQUIRED

    def test_plan_update_moved_first(self, orchestrator):
        raw = [text_action("Looking now.", step_id="review-sales"), plan_action()]
        result = orchestrator.process(raw, _turn(plan_state=_existing_plan()))
        assert result.accepted
        assert isinstance(result.actions[0], PlanStateUpdateAction)
        assert "auto_plan_moved_first" in _reasons(result)

    def test_plan_update_without_payload_is_seeded(self, orchestrator):
        raw = [{'responseType': 'plan_state_update', 'stepId': 'address-user-request'}, text_action("On it.")]
        result = orchestrator.process(raw, _turn(user_message="chart revenue"))
        assert result.accepted
        assert result.actions[0].plan_state.goal == "Address user intent: chart revenue"

    def test_oversized_batch_clipped_when_no_plan(self, orchestrator):
        raw = [text_action("a"), text_action("b"), text_action("c")]
        result = orchestrator.process(raw, _turn(user_message="chart revenue"))
        assert result.accepted
        assert len(result.actions) == 2
        assert result.actions[1].text == "a"
        assert "auto_batch_clipped" in _reasons(result)

    def test_oversized_batch_rejected_when_plan_exists(self, orchestrator):
        raw = [plan_action(), text_action("a"), text_action("b")]
        result = orchestrator.process(raw, _turn(plan_state=_existing_plan()))
        assert not result.accepted
        assert result.violations[0].code == GuardViolationCode.TURN_BUDGET_EXCEEDED
        assert "at most one other action" in result.retry_instruction

    def test_missing_reason_filled(self, orchestrator):
        raw = [plan_action(), {'responseType': 'text_response', 'text': "Hi", 'stepId': 'review-sales'}]
        result = orchestrator.process(raw, _turn(plan_state=_existing_plan()))
        assert result.actions[1].reason == "Reply to the user."

    def test_seed_plan_keeps_its_steps(self):
        plan = build_seed_plan(DetectedIntent('greeting', 0.9), "hi there")
        assert [s.id for s in plan.next_steps] == [GREETING_STEP_ID]
        assert [s.id for s in plan.steps] == [GREETING_STEP_ID]

    def test_greeting_with_incomplete_plan_gets_seed(self, orchestrator):
        raw = [{'responseType': 'plan_state_update', 'planState': {'progress': "Just started."}},
               text_action("你好！今天想分析什么？")]
        turn = _turn(detected_intent=DetectedIntent('greeting', 0.9), user_message="你好")
        result = orchestrator.process(raw, turn)

        assert result.accepted
        plan = result.actions[0].plan_state
        assert plan.goal == "Acknowledge the user and gather their request."
        assert plan.current_step_id == GREETING_STEP_ID
        assert "auto_plan_seeded" in _reasons(result)

    def test_incomplete_plan_rejected_outside_greeting(self, orchestrator):
        raw = [{'responseType': 'plan_state_update', 'planState': {'progress': "Just started."}},
               text_action("On it.")]
        result = orchestrator.process(raw, _turn(detected_intent=DetectedIntent('chart_request', 0.4),
                                                 user_message="chart revenue"))
        assert not result.accepted
        assert "auto_plan_seeded" not in _reasons(result)


# ---------------------------------------------------------------------------
# Parsing, tags and validation
# ---------------------------------------------------------------------------


class TestRejections:
    def test_unparseable_action(self, orchestrator):
        result = orchestrator.process(["not an action"], _turn())
        assert not result.accepted
        assert _reasons(result) == ["action_parse_failed"]
        assert "responseType" in result.retry_instruction

    def test_stale_state_tag(self, orchestrator):
        guard = dataclasses.replace(create_guard_state("session-1"), state_tag_seq="1700000000000-5")
        raw = [plan_action(action_tag="1700000000000-3")]
        result = orchestrator.process(raw, _turn(guard_state=guard, plan_state=_existing_plan()))
        assert not result.accepted
        assert result.violations[0].code == GuardViolationCode.INVALID_STATE_TAG

    def test_validation_rejection_carries_instruction(self, orchestrator):
        raw = [plan_action(), js_action("data.forEach(r => { r.total = 1; });", step_id="review-sales")]
        result = orchestrator.process(raw, _turn(plan_state=_existing_plan()))
        assert not result.accepted
        assert "js_return_missing" in _reasons(result)
        assert "return" in result.retry_instruction
        assert result.actions == ()

    def test_tags_increase_across_turns(self, orchestrator):
        first = orchestrator.process([plan_action(), text_action("a")], _turn(plan_state=_existing_plan()))
        second = orchestrator.process(
            [plan_action(), text_action("b")],
            _turn(guard_state=first.guard_state, plan_state=first.actions[0].plan_state))
        assert second.accepted
        first_tags = [parse_state_tag(a.state_tag) for a in first.actions]
        second_tags = [parse_state_tag(a.state_tag) for a in second.actions]
        assert first_tags[0] < first_tags[1] < second_tags[0] < second_tags[1]


# ---------------------------------------------------------------------------
# Required tools
# ---------------------------------------------------------------------------


class TestRequiredTool:
    def test_remove_card_inserted(self, orchestrator):
        raw = [plan_action(), text_action("Sure, removing it.")]
        turn = _turn(plan_state=_existing_plan(), ui_state=CARDS, detected_intent=REMOVE_CARD,
                     user_message="remove the card Sales by Region")
        result = orchestrator.process(raw, turn)

        assert result.accepted
        assert isinstance(result.auto_inserted, DomAction)
        inserted = result.actions[1]
        assert isinstance(inserted, DomAction)
        assert inserted.meta.auto_inserted
        assert inserted.step_id == "review-sales"
        assert inserted.dom_action.tool_name == "removeCard"
        assert inserted.dom_action.args['cardId'] == "card-1"
        assert "auto_insert_required_tool" in _reasons(result)

    def test_batch_with_matching_tool_untouched(self, orchestrator):
        dom = {'responseType': 'dom_action', 'stepId': 'review-sales',
               'domAction': {'toolName': 'removeCard', 'target': {'byId': 'card-1'}}}
        result = orchestrator.process([plan_action(), dom], _turn(
            plan_state=_existing_plan(), ui_state=CARDS, detected_intent=REMOVE_CARD))
        assert result.accepted
        assert result.auto_inserted is None

    def test_unknown_card_rejects_turn(self, orchestrator):
        turn = _turn(plan_state=_existing_plan(), detected_intent=REMOVE_CARD)
        result = orchestrator.process([plan_action(), text_action("ok")], turn)
        assert not result.accepted
        assert _reasons(result) == ["required_tool_missing"]
        assert "dom_action:removeCard" in result.retry_instruction

    def test_satisfied_tool_not_inserted_again(self, orchestrator):
        turn = _turn(plan_state=_existing_plan(), ui_state=CARDS, detected_intent=REMOVE_CARD,
                     required_tool_satisfied=True)
        result = orchestrator.process([plan_action(), text_action("Done.")], turn)
        assert result.accepted
        assert isinstance(result.actions[1], TextResponseAction)

    def test_cjk_filter_inserted(self, orchestrator):
        query = "显示西区的所有销售记录"
        intent = DetectedIntent('data_filter', 0.75,
                                required_tool=RequiredTool(ActionType.FILTER_SPREADSHEET, payload_hints={'query': query}),
                                payload_hints={'query': query})
        raw = [plan_action(), text_action("好的。", step_id="review-sales")]
        result = orchestrator.process(raw, _turn(plan_state=_existing_plan(), detected_intent=intent,
                                                 user_message=query))
        assert result.accepted
        assert result.auto_inserted.query == query

    def test_pausing_batch_not_forced(self, orchestrator):
        raw = [plan_action(state_tag="awaiting_clarification"), text_action("Which card?")]
        turn = _turn(plan_state=_existing_plan(), ui_state=CARDS, detected_intent=REMOVE_CARD)
        result = orchestrator.process(raw, turn)
        assert result.accepted
        assert result.auto_inserted is None
        assert result.guard_state.awaiting_user

    def test_column_removal_transform_inserted(self, orchestrator):
        turn = _turn(plan_state=_existing_plan(), detected_intent=TRANSFORM,
                     user_message="remove column notes please", dataset_columns=("region", "notes"))
        result = orchestrator.process([plan_action(), text_action("ok")], turn)
        assert result.accepted
        inserted = result.actions[1]
        assert isinstance(inserted, ExecuteJsCodeAction)
        assert 'delete next["notes"];' in inserted.code.js_function_body
        assert inserted.code.js_function_body.endswith("return result;")

    def test_transform_without_known_column_rejected(self, orchestrator):
        turn = _turn(plan_state=_existing_plan(), detected_intent=TRANSFORM,
                     user_message="normalize the dates", dataset_columns=("region",))
        result = orchestrator.process([plan_action(), text_action("ok")], turn)
        assert not result.accepted
        assert _reasons(result) == ["required_tool_missing"]

    def test_matches_required_tool(self):
        dom = parse_action({'responseType': 'dom_action', 'domAction': {'toolName': 'removeCard'}})
        assert matches_required_tool(dom, REMOVE_CARD.required_tool)
        assert not matches_required_tool(dom, RequiredTool(ActionType.DOM_ACTION, 'setTopN'))
        assert not matches_required_tool(parse_action(text_action("x")), REMOVE_CARD.required_tool)
