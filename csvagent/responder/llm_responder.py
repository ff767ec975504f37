import json
import logging
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from csvagent.agent.context import ContextBundle, ModelResponder, ResponderReply
from csvagent.agent.types import ActionType
from csvagent.exceptions import ResponderError
from csvagent.template import TemplateEnvironment
from csvagent.tracer import get_active_tracer, trace_llm
from .json_repair import coerce_json_object

logger = logging.getLogger(__name__)


class LLMResponder(ModelResponder):
    """Model responder that renders the turn context into a prompt and asks a chat model for actions."""

    PACKAGE_NAME = "csvagent.responder"
    TEMPLATE_NAME = "plan_turn.jinja2"

    def __init__(self, chat_llm: BaseChatModel, lang: str = "en", *, json_mode: bool = True):
        self.chat_llm = chat_llm
        self.json_mode = json_mode
        template_env = TemplateEnvironment(package_name=self.PACKAGE_NAME, default_lang=lang)
        self._template = template_env.load_template(self.TEMPLATE_NAME)

    def render_prompt(self, bundle: ContextBundle) -> str:
        plan = bundle.plan_state
        return self._template.render(
            action_types=[t.value for t in ActionType],
            plan_json=plan.model_dump_json(by_alias=True, exclude_none=True) if plan is not None else None,
            chat_history=bundle.chat_history,
            columns=bundle.columns,
            sample_rows=[json.dumps(row, ensure_ascii=False, default=str) for row in bundle.sample_rows],
            cards=bundle.ui_state.cards,
            clarifications=bundle.open_clarifications,
            observations=bundle.observations,
            traces=bundle.traces,
            intent=bundle.detected_intent,
            notes=bundle.notes,
            pending_transform=bundle.pending_transform,
            user_message=bundle.user_message,
            turn_index=bundle.turn_index,
        )

    @trace_llm("plan_turn")
    async def respond(self, bundle: ContextBundle) -> ResponderReply:
        prompt = self.render_prompt(bundle)
        logger.debug('\n' + prompt)

        invoke_kwargs: dict[str, Any] = {}
        if self.json_mode:
            invoke_kwargs["response_format"] = {"type": "json_object"}
        tracer = get_active_tracer()
        if tracer is not None:
            invoke_kwargs["config"] = {"callbacks": [tracer.callback_handler]}

        try:
            result: AIMessage = await self.chat_llm.ainvoke([
                SystemMessage(content=prompt),
                HumanMessage(content=bundle.user_message or 'Continue with the plan.'),
            ], **invoke_kwargs)
        except ResponderError:
            raise
        except Exception as e:
            raise ResponderError(f"Chat model call failed: {e}") from e

        content = result.content if isinstance(result.content, str) else json.dumps(result.content)
        logger.debug(f"Model reply for turn {bundle.turn_index + 1}:\n{content}")
        payload = coerce_json_object(content)
        actions = payload.get('actions')
        if actions is None:
            # A bare action object instead of the envelope.
            actions = [payload] if ('responseType' in payload or 'type' in payload) else []
        if not isinstance(actions, list):
            raise ResponderError(f"'actions' must be a list, got {type(actions).__name__}")
        return ResponderReply(actions=actions, raw=content)
