"""Tracer decorators for the span levels.

Each decorator opens a span of the matching :class:`SpanKind` around the
decorated ``async`` call. Without an activated tracer the function runs
untraced.

Usage::

    from csvagent.tracer import trace_session, trace_run, trace_llm

    @trace_session("shell_session")
    async def run(self):
        ...

    @trace_run("planner_run")
    async def _run(self, run):
        ...

    @trace_llm("plan_turn")
    async def respond(self, bundle):
        ...

Blocks that are not whole functions (a turn of the planner loop, the
execution of one action) use :func:`traced` instead.
"""

from __future__ import annotations

import functools
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional, TypeVar

from csvagent.tracer.context import get_active_tracer
from csvagent.tracer.span import Span, SpanKind

F = TypeVar("F", bound=Callable[..., Any])


def _make_decorator(
    kind: SpanKind,
    name: str | None = None,
    *,
    auto_export: bool = False,
) -> Callable[[F], F]:
    """Build a decorator that wraps an *async* function in a span.

    ``name`` defaults to the function name. With ``auto_export`` the tracer
    exports its tree once the span closes.
    """

    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            tracer = get_active_tracer()
            if tracer is None:
                return await fn(*args, **kwargs)

            span, token = tracer.start_span(kind, name or fn.__name__)
            error: BaseException | None = None
            try:
                return await fn(*args, **kwargs)
            except Exception as exc:
                error = exc
                raise
            finally:
                tracer.end_span(span, token, error)
                if auto_export:
                    tracer.export()

        return wrapper  # type: ignore[return-value]

    return decorator


@asynccontextmanager
async def traced(
    kind: SpanKind,
    name: str,
    attributes: dict[str, Any] | None = None,
) -> AsyncIterator[Optional[Span]]:
    """Span around a block; yields ``None`` when no tracer is active."""
    tracer = get_active_tracer()
    if tracer is None:
        yield None
        return
    async with tracer.span(kind, name, attributes) as span:
        yield span


def trace_session(name: str | None = None) -> Callable[[F], F]:
    """Root span of the trace tree. Exports the tree when it ends."""
    return _make_decorator(SpanKind.SESSION, name, auto_export=True)


def trace_run(name: str | None = None) -> Callable[[F], F]:
    """One planner run, from a user message (or resume) to a terminal or waiting state."""
    return _make_decorator(SpanKind.RUN, name)


def trace_turn(name: str | None = None) -> Callable[[F], F]:
    return _make_decorator(SpanKind.TURN, name)


def trace_action(name: str | None = None) -> Callable[[F], F]:
    return _make_decorator(SpanKind.ACTION, name)


def trace_llm(name: str) -> Callable[[F], F]:
    """Mark an async function as an LLM call.

    :class:`~csvagent.tracer.callback.TracerCallbackHandler` attaches the
    request and response to this span when ``ainvoke`` fires its callbacks.
    """
    return _make_decorator(SpanKind.LLM_CALL, name)
