import logging
from contextlib import asynccontextmanager
from contextvars import Token
from typing import Any, AsyncIterator, Optional

from csvagent.tracer.callback import TracerCallbackHandler
from csvagent.tracer.context import (
    get_current_span,
    reset_active_tracer,
    reset_current_span,
    set_active_tracer,
    set_current_span,
)
from csvagent.tracer.exporter import YAMLExporter
from csvagent.tracer.span import Span, SpanKind

logger = logging.getLogger(__name__)


class Tracer:
    """Hierarchical span-based tracer for planner runs.

    Parameters
    ----------
    exporter:
        Persists the trace tree when :pymethod:`export` is called. May be
        ``None``, in which case trace data only lives in memory.
    """

    def __init__(self, exporter: YAMLExporter | None = None) -> None:
        self._exporter = exporter
        self._callback_handler = TracerCallbackHandler()
        self._session_span: Optional[Span] = None

    def activate(self) -> Token:
        """Make this tracer visible to the decorators in the current context."""
        return set_active_tracer(self)

    def deactivate(self, token: Token) -> None:
        reset_active_tracer(token)

    def start_span(
        self,
        kind: SpanKind,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> tuple[Span, Token]:
        """Create a span as a child of the current one and make it current.

        Returns ``(span, token)``; pass the token to :pymethod:`end_span`.
        """
        span = Span(kind=kind, name=name)
        if attributes:
            span.attributes.update(attributes)

        parent = get_current_span()
        if parent is not None:
            parent.add_child(span)

        if kind == SpanKind.SESSION:
            self._session_span = span

        token = set_current_span(span)
        return span, token

    def end_span(self, span: Span, token: Token, error: BaseException | None = None) -> None:
        span.finish(error=error)
        reset_current_span(token)

    @asynccontextmanager
    async def span(
        self,
        kind: SpanKind,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AsyncIterator[Span]:
        """Wrap a block in a span of the given kind.

        Usage::

            async with tracer.span(SpanKind.ACTION, "filter_spreadsheet"):
                output = await executor.execute(action)
        """
        span, token = self.start_span(kind, name, attributes)
        error: BaseException | None = None
        try:
            yield span
        except Exception as exc:
            error = exc
            raise
        finally:
            self.end_span(span, token, error)

    def export(self) -> None:
        """Persist the session trace tree via the configured exporter."""
        if self._exporter is None:
            logger.debug("No exporter configured, skipping trace export.")
            return
        if self._session_span is None:
            logger.warning("No session span recorded, nothing to export.")
            return
        self._exporter.export(self._session_span)

    @property
    def callback_handler(self) -> TracerCallbackHandler:
        """LangChain callback handler that fills LLM_CALL spans."""
        return self._callback_handler

    @property
    def session_span(self) -> Optional[Span]:
        return self._session_span
