"""Builders for raw model actions shared by the test modules."""

from typing import Any


def plan_payload(
        steps: list[tuple[str, str]] | None = None,
        *,
        done: tuple[str, ...] = (),
        state_tag: str | None = None,
        goal: str = "Help the user analyze sales",
        plan_id: str = "plan-1",
        **extra: Any,
) -> dict[str, Any]:
    steps = steps if steps is not None else [("review-sales", "Review the sales columns")]
    all_steps = [{'id': sid, 'label': label, 'status': 'done' if sid in done else 'ready'} for sid, label in steps]
    payload = {
        'planId': plan_id,
        'goal': goal,
        'contextSummary': "Sales dataset loaded.",
        'progress': "Planning.",
        'nextSteps': [s for s in all_steps if s['status'] != 'done'],
        'steps': all_steps,
        'currentStepId': next((s['id'] for s in all_steps if s['status'] != 'done'), None),
        'confidence': 0.8,
    }
    if state_tag is not None:
        payload['stateTag'] = state_tag
    payload.update(extra)
    return payload


def plan_action(*args: Any, step_id: str | None = None, action_tag: str | None = None, **kwargs: Any) -> dict[str, Any]:
    plan = plan_payload(*args, **kwargs)
    action = {
        'responseType': 'plan_state_update',
        'stepId': step_id or plan['currentStepId'] or 'wrap-up',
        'reason': "Track the plan.",
        'planState': plan,
    }
    if action_tag is not None:
        action['stateTag'] = action_tag
    return action


def finished_plan_action(step_id: str = "review-sales") -> dict[str, Any]:
    return plan_action([(step_id, "Review the sales columns")], done=(step_id,), step_id=step_id)


def text_action(text: str, step_id: str | None = None) -> dict[str, Any]:
    action = {'responseType': 'text_response', 'reason': "Reply to the user.", 'text': text}
    if step_id:
        action['stepId'] = step_id
    return action


def js_action(body: str, explanation: str = "Adds a total column from price and quantity.",
              step_id: str = "add-total-column") -> dict[str, Any]:
    return {
        'responseType': 'execute_js_code',
        'stepId': step_id,
        'reason': "Transform the data.",
        'code': {'explanation': explanation, 'jsFunctionBody': body},
    }


def clarification_action(options: list[tuple[str, Any]], question: str = "Which metric should the chart use?",
                         step_id: str = "pick-metric") -> dict[str, Any]:
    return {
        'responseType': 'clarification_request',
        'stepId': step_id,
        'reason': "The metric is ambiguous.",
        'question': question,
        'options': [{'label': label, 'value': value} for label, value in options],
        'targetProperty': 'valueColumn',
        'pendingPlan': {'chartType': 'bar', 'title': 'Sales by region', 'groupByColumn': 'region'},
    }
