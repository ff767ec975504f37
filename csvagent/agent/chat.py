from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Sender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class ChatMessage:
    sender: Sender
    text: str
    timestamp: datetime = field(default_factory=datetime.now)
    is_error: bool = False
    # Messages written on the user's behalf, e.g. a clarification answer.
    synthetic: bool = False


class ChatHistory:
    def __init__(self, messages: list[ChatMessage] | None = None) -> None:
        self.messages: list[ChatMessage] = messages if messages is not None else []

    @classmethod
    def empty(cls) -> "ChatHistory":
        return cls([])

    def append(self, message: ChatMessage) -> ChatMessage:
        self.messages.append(message)
        return message

    def add_user(self, text: str, *, synthetic: bool = False) -> ChatMessage:
        return self.append(ChatMessage(Sender.USER, text, synthetic=synthetic))

    def add_assistant(self, text: str, *, is_error: bool = False) -> ChatMessage:
        return self.append(ChatMessage(Sender.ASSISTANT, text, is_error=is_error))

    def add_system(self, text: str) -> ChatMessage:
        return self.append(ChatMessage(Sender.SYSTEM, text))

    def recent(self, limit: int) -> list[ChatMessage]:
        return self.messages[-limit:] if limit > 0 else []

    def format_recent(self, limit: int) -> str:
        return '\n'.join(f"{m.sender.value}: {m.text}" for m in self.recent(limit))

    def __len__(self) -> int:
        return len(self.messages)
