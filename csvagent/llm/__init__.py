from .factory import ChatLLMFactory
from .oai import OpenAIChatModel

__all__ = ["ChatLLMFactory", "OpenAIChatModel"]
