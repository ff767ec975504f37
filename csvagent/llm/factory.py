from langchain_core.language_models import BaseChatModel

from csvagent.config.llm import AzureOpenAIChatConfig, ChatConfig, DeepSeekChatConfig, OpenAIChatConfig
from csvagent.exceptions import ConfigError
from .oai import OpenAIChatModel


class ChatLLMFactory:
    def __init__(self, default: BaseChatModel | None = None):
        self.default = default

    @classmethod
    def build(cls, config: ChatConfig) -> BaseChatModel:
        if isinstance(config, AzureOpenAIChatConfig | OpenAIChatConfig | DeepSeekChatConfig):
            return OpenAIChatModel.from_config(config)
        raise ConfigError(f'Unexpected chat config: {config}')

    def get(self, config: ChatConfig | None = None) -> BaseChatModel:
        if config:
            return self.build(config)
        if self.default:
            return self.default
        raise ConfigError('No chat model configured')
