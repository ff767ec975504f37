"""LangChain chat model backed by the OpenAI-compatible async SDK.

The planner talks to models through ``BaseChatModel.ainvoke`` so tracer
callbacks fire; this adapter routes those calls to ``openai`` clients built
from :mod:`csvagent.config.llm`.
"""

import logging
from typing import Any

from langchain_core.callbacks import AsyncCallbackManagerForLLMRun, CallbackManagerForLLMRun
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.outputs import ChatGeneration, ChatResult
from openai import AsyncAzureOpenAI, AsyncOpenAI
from pydantic import ConfigDict, Field
from typing_extensions import Annotated

from csvagent.config.llm import AzureOpenAIChatConfig, DeepSeekChatConfig, OpenAIChatConfig

logger = logging.getLogger(__name__)

_ROLES = {
    'system': 'system',
    'human': 'user',
    'ai': 'assistant',
}


def to_openai_messages(messages: list[BaseMessage]) -> list[dict]:
    return [
        {'role': _ROLES.get(msg.type, 'user'), 'content': str(msg.content)}
        for msg in messages
    ]


class OpenAIChatModel(BaseChatModel):
    """Chat model over the async OpenAI SDK.

    Async only: use ``ainvoke``. The synchronous ``invoke`` path raises
    ``NotImplementedError`` since the planner never blocks on the model.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, protected_namespaces=())

    client: Annotated[Any, Field(exclude=True, description="AsyncOpenAI or AsyncAzureOpenAI client")]
    model_name: Annotated[str, Field(description="Model or deployment identifier")]
    json_supports: Annotated[bool, Field(default=False)]
    chat_params: Annotated[dict, Field(default_factory=dict)]

    @classmethod
    def from_config(cls, config: AzureOpenAIChatConfig | OpenAIChatConfig | DeepSeekChatConfig) -> 'OpenAIChatModel':
        if isinstance(config, AzureOpenAIChatConfig):
            client = AsyncAzureOpenAI(
                azure_endpoint=config.endpoint,
                azure_deployment=config.deployment,
                api_version=config.api_version,
                api_key=config.api_key,
                timeout=config.timeout,
            )
        else:
            client = AsyncOpenAI(
                base_url=config.endpoint,
                api_key=config.api_key,
                timeout=config.timeout,
            )
        return cls(
            client=client,
            model_name=config.model,
            json_supports=config.json_supports,
            chat_params=config.chat_params(),
        )

    @property
    def _llm_type(self) -> str:
        return "openai-compatible"

    @property
    def _identifying_params(self) -> dict[str, Any]:
        return {'model_name': self.model_name, **self.chat_params}

    def _generate(
            self,
            messages: list[BaseMessage],
            stop: list[str] | None = None,
            run_manager: CallbackManagerForLLMRun | None = None,
            **kwargs: Any,
    ) -> ChatResult:
        raise NotImplementedError("OpenAIChatModel only supports async invocation")

    async def _agenerate(
            self,
            messages: list[BaseMessage],
            stop: list[str] | None = None,
            run_manager: AsyncCallbackManagerForLLMRun | None = None,
            **kwargs: Any,
    ) -> ChatResult:
        if not self.json_supports and 'response_format' in kwargs:
            kwargs.pop('response_format')
        if stop:
            kwargs['stop'] = stop
        resp = await self.client.chat.completions.create(
            messages=to_openai_messages(messages),
            model=self.model_name,
            **self.chat_params,
            **kwargs,
        )
        content = resp.choices[0].message.content or ''
        usage = resp.usage.model_dump() if resp.usage is not None else {}
        logger.debug(f"{self.model_name} replied with {len(content)} characters, usage {usage}")
        return ChatResult(
            generations=[ChatGeneration(message=AIMessage(content=content))],
            llm_output={'token_usage': usage, 'model_name': self.model_name},
        )
