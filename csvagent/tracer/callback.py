import logging
from typing import Any, Optional
from uuid import UUID

from langchain_core.callbacks import AsyncCallbackHandler
from langchain_core.messages import BaseMessage
from langchain_core.outputs import LLMResult

from csvagent.tracer.context import get_current_span
from csvagent.tracer.span import Span, SpanKind

logger = logging.getLogger(__name__)


def _serialize_messages(messages: list[list[BaseMessage]]) -> list[dict[str, Any]]:
    return [
        {"role": msg.type, "content": str(msg.content)}
        for batch in messages
        for msg in batch
    ]


class TracerCallbackHandler(AsyncCallbackHandler):
    """Attaches the prompt, the reply and token usage of a model call to the open LLM_CALL span.

    Start and end callbacks are paired by LangChain ``run_id``. Events that
    fire outside an LLM_CALL span are ignored.
    """

    def __init__(self) -> None:
        super().__init__()
        self._run_spans: dict[UUID, Span] = {}

    async def on_chat_model_start(
        self,
        serialized: dict[str, Any],
        messages: list[list[BaseMessage]],
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        span = get_current_span()
        if span is None or span.kind != SpanKind.LLM_CALL:
            return

        self._run_spans[run_id] = span
        serialized = serialized or {}
        model_name = serialized.get("kwargs", {}).get("model_name") or serialized.get("id", ["unknown"])[-1]
        span.set_attribute("model", model_name)
        span.set_attribute("request", {"messages": _serialize_messages(messages)})

    async def on_llm_end(
        self,
        response: LLMResult,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        **kwargs: Any,
    ) -> None:
        span = self._run_spans.pop(run_id, None)
        if span is None:
            return

        content = ""
        if response.generations and response.generations[0]:
            generation = response.generations[0][0]
            content = generation.text or ""
            msg = getattr(generation, "message", None)
            if msg is not None:
                content = str(msg.content)
        span.set_attribute("response", {"content": content})

        token_usage = (response.llm_output or {}).get("token_usage") or {}
        if token_usage:
            span.set_attribute("token_usage", {
                "prompt_tokens": token_usage.get("prompt_tokens"),
                "completion_tokens": token_usage.get("completion_tokens"),
                "total_tokens": token_usage.get("total_tokens"),
            })

    async def on_llm_error(
        self,
        error: BaseException,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        **kwargs: Any,
    ) -> None:
        span = self._run_spans.pop(run_id, None)
        if span is None:
            return
        logger.debug(f"LLM call failed inside span {span.name}: {error}")
        span.status = "error"
        span.error = str(error)
