from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from openai import AsyncAzureOpenAI, AsyncOpenAI

from csvagent.config.llm import validate_chat_config
from csvagent.exceptions import ConfigError
from csvagent.llm import ChatLLMFactory, OpenAIChatModel
from csvagent.llm.oai import to_openai_messages


def _client(content: str | None = '{"actions": []}'):
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    response.usage.model_dump.return_value = {'prompt_tokens': 12, 'completion_tokens': 3, 'total_tokens': 15}
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response)
    return client


class TestToOpenAIMessages:
    def test_roles(self):
        messages = [SystemMessage(content="sys"), HumanMessage(content="hi"), AIMessage(content="hello")]
        assert to_openai_messages(messages) == [
            {'role': 'system', 'content': 'sys'},
            {'role': 'user', 'content': 'hi'},
            {'role': 'assistant', 'content': 'hello'},
        ]


class TestOpenAIChatModel:
    @pytest.mark.asyncio
    async def test_ainvoke_forwards_params(self):
        client = _client()
        model = OpenAIChatModel(client=client, model_name="gpt-4o-mini", json_supports=True,
                                chat_params={'temperature': 0.0, 'max_tokens': 100})
        result = await model.ainvoke([HumanMessage(content="hi")], response_format={'type': 'json_object'})

        assert result.content == '{"actions": []}'
        client.chat.completions.create.assert_awaited_once_with(
            messages=[{'role': 'user', 'content': 'hi'}],
            model="gpt-4o-mini",
            temperature=0.0,
            max_tokens=100,
            response_format={'type': 'json_object'},
        )

    @pytest.mark.asyncio
    async def test_json_mode_dropped_when_unsupported(self):
        client = _client()
        model = OpenAIChatModel(client=client, model_name="deepseek-chat", json_supports=False)
        await model.ainvoke([HumanMessage(content="hi")], response_format={'type': 'json_object'})
        assert 'response_format' not in client.chat.completions.create.await_args.kwargs

    @pytest.mark.asyncio
    async def test_empty_content(self):
        model = OpenAIChatModel(client=_client(None), model_name="gpt-4o-mini")
        result = await model.ainvoke([HumanMessage(content="hi")])
        assert result.content == ''

    def test_sync_invocation_unsupported(self):
        model = OpenAIChatModel(client=_client(), model_name="gpt-4o-mini")
        with pytest.raises(NotImplementedError):
            model.invoke([HumanMessage(content="hi")])


class TestChatLLMFactory:
    def test_build_openai(self):
        config = validate_chat_config({'type': 'openai', 'model': 'gpt-4o-mini', 'api_key': 'sk-test',
                                       'temperature': 0.2})
        model = ChatLLMFactory.build(config)
        assert isinstance(model.client, AsyncOpenAI)
        assert model.model_name == "gpt-4o-mini"
        assert model.json_supports
        assert model.chat_params['temperature'] == 0.2

    def test_build_azure(self):
        config = validate_chat_config({
            'type': 'azure_openai', 'endpoint': 'https://example.openai.azure.com', 'deployment': 'gpt4o',
            'api_version': '2024-06-01', 'model': 'gpt-4o', 'api_key': 'key',
        })
        assert isinstance(ChatLLMFactory.build(config).client, AsyncAzureOpenAI)

    def test_get_uses_default(self):
        default = MagicMock()
        assert ChatLLMFactory(default).get() is default

    def test_get_without_anything(self):
        with pytest.raises(ConfigError):
            ChatLLMFactory().get()
