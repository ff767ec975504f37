import pytest

from csvagent.agent.types import (
    CardRef,
    DetectedIntent,
    ActionType,
    RequiredTool,
    TextResponseAction,
    UIState,
    parse_action,
)
from csvagent.agent.validation import (
    DOM_TARGET_NOT_FOUND_TEXT,
    ActionValidator,
    ValidationContext,
    ValidationOutcome,
    has_return_value,
    normalize_plan_steps,
    normalize_step_id,
)

from .helpers import clarification_action, js_action, plan_action, plan_payload, text_action

CARDS = UIState(cards=(CardRef('card-1', 'Sales by Region'), CardRef('card-2', 'Units over Time')))


@pytest.fixture
def validator():
    return ActionValidator()


def _reasons(result):
    return [e.reason for e in result.events]


def _dom(tool_name, target=None, args=None, step_id="tidy-cards"):
    return {
        'responseType': 'dom_action',
        'stepId': step_id,
        'domAction': {'toolName': tool_name, 'target': target or {}, 'args': args or {}},
    }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    @pytest.mark.parametrize("raw, expected", [
        ("Load_Data Step", "load-data-step"),
        ("loadData", "load-data"),
        ("  --trim--  ", "trim"),
    ])
    def test_normalize_step_id(self, raw, expected):
        assert normalize_step_id(raw) == expected

    @pytest.mark.parametrize("body, expected", [
        ("return data.map(r => r);", True),
        ("const out = [];\nreturn out;", True),
        ("data.forEach(r => { r.total = 1; });", False),
        ("return;", False),
        ("return null;", False),
        ("return undefined", False),
        ("data.forEach(r => { return r; });", False),
        ("const pick = function (r) { return r.total; };", False),
        ("if (data.length) { return data; }\nreturn [];", True),
        ("// return data\nconst note = 'return data';", False),
        ("const rows = data.map(row => {\n    return { ...row };\n});\nreturn rows;", True),
    ])
    def test_has_return_value(self, body, expected):
        assert has_return_value(body) is expected

    def test_normalize_plan_steps_drops_short_and_duplicates(self):
        plan = parse_action(plan_action(
            [("Load Data", "Load the data"), ("load-data", "Load again"), ("ab", "Too short id")])).plan_state
        assert [s.id for s in normalize_plan_steps(plan.steps)] == ["load-data"]


# ---------------------------------------------------------------------------
# Step ids
# ---------------------------------------------------------------------------


class TestStepIds:
    def test_missing_step_id_takes_current_plan_step(self, validator):
        context = ValidationContext(plan_state=parse_action(plan_action()).plan_state)
        result = validator.validate(parse_action(text_action("Hi")), 1, context)
        assert result.outcome == ValidationOutcome.REPAIRED
        assert result.action.step_id == "review-sales"
        assert _reasons(result) == ["auto_step_id_assigned"]

    def test_missing_step_id_without_plan_uses_fallback(self, validator):
        result = validator.validate(parse_action(text_action("Hi")), 1, ValidationContext())
        assert result.action.step_id == "ad-hoc-response"

    def test_non_kebab_step_id_normalized(self, validator):
        result = validator.validate(parse_action(text_action("Hi", step_id="Load_Data Step")), 1, ValidationContext())
        assert result.action.step_id == "load-data-step"
        assert "auto_step_id_normalized" in _reasons(result)

    @pytest.mark.parametrize("raw", [
        js_action("return data;", step_id=None),
        {'responseType': 'plan_creation', 'chartPlan': {'title': 'T', 'chartType': 'bar'}},
    ])
    def test_ambiguous_kinds_require_step_id(self, validator, raw):
        raw = {k: v for k, v in raw.items() if k != 'stepId'}
        result = validator.validate(parse_action(raw), 1, ValidationContext())
        assert result.rejected
        assert _reasons(result) == ["step_id_missing"]
        assert result.retry_instruction


# ---------------------------------------------------------------------------
# Plan updates
# ---------------------------------------------------------------------------


class TestPlanStateUpdate:
    def test_accepted_plan_gets_action_tag(self, validator):
        action = parse_action(plan_action(action_tag="1700000000000-2"))
        result = validator.validate(action, 0, ValidationContext())
        assert result.outcome == ValidationOutcome.ACCEPTED
        assert result.action.plan_state.state_tag == "1700000000000-2"
        assert result.action.plan_state.updated_at

    def test_goal_required(self, validator):
        result = validator.validate(parse_action(plan_action(goal="  ")), 0, ValidationContext())
        assert _reasons(result) == ["plan_goal_missing"]

    def test_payload_required(self, validator):
        action = parse_action({'responseType': 'plan_state_update', 'stepId': 'review-sales'})
        assert _reasons(validator.validate(action, 0, ValidationContext())) == ["plan_state_payload_missing"]

    def test_empty_plan_rejected(self, validator):
        raw = plan_action([], step_id="review-sales")
        assert _reasons(validator.validate(parse_action(raw), 0, ValidationContext())) == ["plan_steps_missing"]

    def test_next_steps_rebuilt_from_unfinished(self, validator):
        raw = plan_action([("load-data", "Load"), ("chart-sales", "Chart")], done=("load-data",), nextSteps=[])
        result = validator.validate(parse_action(raw), 0, ValidationContext())
        assert result.outcome == ValidationOutcome.REPAIRED
        assert [s.id for s in result.action.plan_state.next_steps] == ["chart-sales"]
        assert "auto_plan_next_steps_backfilled" in _reasons(result)

    def test_finished_plan_accepted(self, validator):
        raw = plan_action([("review-sales", "Review")], done=("review-sales",), step_id="review-sales")
        result = validator.validate(parse_action(raw), 0, ValidationContext())
        assert not result.rejected
        assert result.action.plan_state.next_steps == []

    def test_unknown_current_step_fixed(self, validator):
        raw = plan_action(currentStepId="no-such-step")
        result = validator.validate(parse_action(raw), 0, ValidationContext())
        assert result.action.plan_state.current_step_id == "review-sales"
        assert "auto_current_step_fixed" in _reasons(result)

    def test_confidence_clamped(self, validator):
        result = validator.validate(parse_action(plan_action(confidence=4)), 0, ValidationContext())
        assert result.action.plan_state.confidence == 1.0


# ---------------------------------------------------------------------------
# Replies
# ---------------------------------------------------------------------------


class TestReplies:
    def test_blank_text_rejected(self, validator):
        result = validator.validate(parse_action(text_action("  ", step_id="reply-now")), 1, ValidationContext())
        assert _reasons(result) == ["missing_text"]
        assert result.action is None

    def test_await_user_needs_prompt(self, validator):
        action = parse_action({'responseType': 'await_user', 'stepId': 'ask-user'})
        assert _reasons(validator.validate(action, 1, ValidationContext())) == ["await_prompt_missing"]


# ---------------------------------------------------------------------------
# DOM actions
# ---------------------------------------------------------------------------


class TestDomAction:
    def test_target_resolved_from_title(self, validator):
        action = parse_action(_dom('removeCard', target={'byTitle': 'sales by region'}))
        result = validator.validate(action, 1, ValidationContext(ui_state=CARDS))
        assert result.action.dom_action.target.by_id == "card-1"
        assert result.action.dom_action.args['cardId'] == "card-1"
        assert "auto_dom_target_resolved" in _reasons(result)

    def test_payload_filled_from_intent(self, validator):
        intent = DetectedIntent('remove_card', 0.95, required_tool=RequiredTool(
            ActionType.DOM_ACTION, 'removeCard', {'cardTitle': 'Units over Time'}))
        result = validator.validate(
            parse_action(_dom('removeCard')), 1, ValidationContext(ui_state=CARDS, detected_intent=intent))
        assert result.action.dom_action.target.by_id == "card-2"
        assert _reasons(result) == ["auto_dom_payload_filled", "auto_dom_target_resolved"]

    def test_unresolvable_target_downgraded_to_text(self, validator):
        action = parse_action(_dom('removeCard', target={'byTitle': 'Profit'}))
        result = validator.validate(action, 1, ValidationContext(ui_state=CARDS))
        assert result.outcome == ValidationOutcome.REPAIRED
        assert isinstance(result.action, TextResponseAction)
        assert result.action.text == DOM_TARGET_NOT_FOUND_TEXT
        assert result.action.step_id == "tidy-cards"
        assert "auto_dom_downgraded" in _reasons(result)

    def test_unknown_tool_rejected(self, validator):
        result = validator.validate(parse_action(_dom('explodeCard')), 1, ValidationContext(ui_state=CARDS))
        assert _reasons(result) == ["dom_tool_unknown"]

    def test_tool_args_checked(self, validator):
        action = parse_action(_dom('changeCardChartType', target={'byId': 'card-1'}))
        result = validator.validate(action, 1, ValidationContext(ui_state=CARDS))
        assert _reasons(result) == ["dom_args_invalid"]
        assert "newType" in result.retry_instruction

    def test_missing_payload_rejected(self, validator):
        action = parse_action({'responseType': 'dom_action', 'stepId': 'tidy-cards'})
        assert _reasons(validator.validate(action, 1, ValidationContext())) == ["dom_payload_missing"]


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------


class TestExecuteJsCode:
    def test_valid_transform_accepted(self, validator):
        action = parse_action(js_action("return data.map(r => ({ ...r, total: r.price * r.qty }));"))
        result = validator.validate(action, 1, ValidationContext())
        assert result.outcome == ValidationOutcome.ACCEPTED

    def test_body_required(self, validator):
        result = validator.validate(parse_action(js_action("   ")), 1, ValidationContext())
        assert _reasons(result) == ["missing_js_code"]

    def test_explanation_required(self, validator):
        result = validator.validate(parse_action(js_action("return data;", explanation="short")), 1,
                                    ValidationContext())
        assert _reasons(result) == ["js_explanation_missing"]

    def test_body_without_return_rejected(self, validator):
        result = validator.validate(
            parse_action(js_action("data.forEach(r => { r.total = r.price * r.qty; });")), 1, ValidationContext())
        assert result.rejected
        assert _reasons(result) == ["js_return_missing"]


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class TestFilterSpreadsheet:
    def _filter(self, query):
        return parse_action({'responseType': 'filter_spreadsheet', 'stepId': 'filter-rows', 'query': query})

    def test_query_filled_from_intent(self, validator):
        intent = DetectedIntent('data_filter', 0.75, payload_hints={'query': "show rows where region is West"})
        result = validator.validate(self._filter(None), 1, ValidationContext(detected_intent=intent))
        assert result.action.query == "show rows where region is West"
        assert _reasons(result) == ["auto_filter_query_filled"]

    def test_missing_query_without_hint(self, validator):
        assert _reasons(validator.validate(self._filter(""), 1, ValidationContext())) == ["filter_query_missing"]

    @pytest.mark.parametrize("query", ["west", "hello there", "?? !!"])
    def test_query_too_short(self, validator, query):
        assert _reasons(validator.validate(self._filter(query), 1, ValidationContext())) == ["filter_query_too_short"]

    @pytest.mark.parametrize("query", ["显示西区的所有销售记录", "西区の売上を表示"])
    def test_unspaced_script_query_accepted(self, validator, query):
        result = validator.validate(self._filter(query), 1, ValidationContext())
        assert result.outcome == ValidationOutcome.ACCEPTED
        assert result.action.query == query

    def test_query_too_long(self, validator):
        query = "rows where " + "region is West and " * 20
        assert _reasons(validator.validate(self._filter(query), 1, ValidationContext())) == ["filter_query_too_long"]


# ---------------------------------------------------------------------------
# Clarifications and charts
# ---------------------------------------------------------------------------


class TestClarificationRequest:
    def test_blank_options_pruned(self, validator):
        raw = clarification_action([("Revenue", "revenue"), ("", "units"), ("Margin", None)])
        result = validator.validate(parse_action(raw), 1, ValidationContext())
        assert result.outcome == ValidationOutcome.REPAIRED
        assert [o.label for o in result.action.options] == ["Revenue"]
        assert _reasons(result) == ["auto_clarification_options_pruned"]

    @pytest.mark.parametrize("field, reason", [
        ('question', "clarification_question_missing"),
        ('targetProperty', "clarification_target_missing"),
        ('pendingPlan', "clarification_pending_plan_missing"),
    ])
    def test_required_fields(self, validator, field, reason):
        raw = clarification_action([("Revenue", "revenue"), ("Units", "units")])
        raw[field] = None
        assert _reasons(validator.validate(parse_action(raw), 1, ValidationContext())) == [reason]

    def test_options_required(self, validator):
        raw = clarification_action([])
        assert _reasons(validator.validate(parse_action(raw), 1, ValidationContext())) == ["clarification_no_options"]


class TestPlanCreation:
    def test_incomplete_chart_plan(self, validator):
        action = parse_action({'responseType': 'plan_creation', 'stepId': 'chart-sales', 'chartPlan': {'title': 'T'}})
        assert _reasons(validator.validate(action, 1, ValidationContext())) == ["chart_plan_incomplete"]

    def test_complete_chart_plan(self, validator):
        action = parse_action({'responseType': 'plan_creation', 'stepId': 'chart-sales',
                               'chartPlan': {'title': 'Sales', 'chartType': 'bar'}})
        assert validator.validate(action, 1, ValidationContext()).outcome == ValidationOutcome.ACCEPTED
