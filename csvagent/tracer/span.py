import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class SpanKind(str, Enum):
    """Hierarchy level of a span inside a trace tree.

    The expected nesting order (outermost → innermost) is::

        SESSION  →  RUN  →  TURN  →  ACTION / LLM_CALL

    A run is one user request, a turn is one model call plus the validation
    and execution of its batch.
    """

    SESSION = "session"
    RUN = "run"
    TURN = "turn"
    ACTION = "action"
    LLM_CALL = "llm_call"


@dataclass(frozen=True)
class SpanEvent:
    """Point-in-time record inside a span: a guard violation, an auto-repair, a state change."""
    name: str
    at: datetime = field(default_factory=datetime.now)
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"name": self.name, "at": self.at.isoformat()}
        if self.attributes:
            d["attributes"] = self.attributes
        return d


@dataclass
class Span:
    """A single node in the trace tree."""

    kind: SpanKind
    name: str
    span_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    status: str = "ok"
    error: Optional[str] = None
    attributes: dict[str, Any] = field(default_factory=dict)
    events: list[SpanEvent] = field(default_factory=list)
    children: list['Span'] = field(default_factory=list)
    parent: Optional['Span'] = field(default=None, repr=False)

    @property
    def duration_ms(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def add_event(self, name: str, **attributes: Any) -> SpanEvent:
        event = SpanEvent(name=name, attributes={k: v for k, v in attributes.items() if v is not None})
        self.events.append(event)
        return event

    def add_child(self, child: 'Span') -> None:
        child.parent = self
        self.children.append(child)

    def finish(self, error: BaseException | None = None) -> None:
        """Close the span. An ``error`` flips the status to ``"error"``."""
        self.end_time = datetime.now()
        if error is not None:
            self.status = "error"
            self.error = f"{type(error).__name__}: {error}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize this span and its subtree, omitting empty sections."""
        d: dict[str, Any] = {
            "kind": self.kind.value,
            "name": self.name,
            "span_id": self.span_id,
            "start_time": self.start_time.isoformat(),
            "status": self.status,
        }
        if self.end_time is not None:
            d["end_time"] = self.end_time.isoformat()
            d["duration_ms"] = round(self.duration_ms, 2)
        optional = {
            "error": self.error,
            "attributes": self.attributes or None,
            "events": [e.to_dict() for e in self.events] or None,
            "children": [c.to_dict() for c in self.children] or None,
        }
        d.update({k: v for k, v in optional.items() if v is not None})
        return d
