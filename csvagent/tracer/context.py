"""Context-variable helpers for the tracer framework."""

from __future__ import annotations

from contextvars import ContextVar, Token
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from csvagent.tracer.span import Span
    from csvagent.tracer.tracer import Tracer

# ``Any`` keeps the forward refs from being evaluated at runtime.
_current_span: ContextVar[Any] = ContextVar("current_span", default=None)
_active_tracer: ContextVar[Any] = ContextVar("active_tracer", default=None)


def get_current_span() -> Optional[Span]:
    return _current_span.get()


def set_current_span(span: Optional[Span]) -> Token:
    return _current_span.set(span)


def reset_current_span(token: Token) -> None:
    _current_span.reset(token)


def get_active_tracer() -> Optional[Tracer]:
    return _active_tracer.get()


def set_active_tracer(tracer: Optional[Tracer]) -> Token:
    return _active_tracer.set(tracer)


def reset_active_tracer(token: Token) -> None:
    _active_tracer.reset(token)
