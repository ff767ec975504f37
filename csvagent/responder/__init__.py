from .json_repair import coerce_json_object
from .llm_responder import LLMResponder

__all__ = ["LLMResponder", "coerce_json_object"]
