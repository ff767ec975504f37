from csvagent.tracer.context import get_active_tracer, get_current_span, set_current_span
from csvagent.tracer.decorators import (
    trace_action,
    trace_llm,
    trace_run,
    trace_session,
    trace_turn,
    traced,
)
from csvagent.tracer.exporter import YAMLExporter
from csvagent.tracer.span import Span, SpanKind
from csvagent.tracer.tracer import Tracer

__all__ = [
    "Tracer",
    "YAMLExporter",
    "Span",
    "SpanKind",
    "get_active_tracer",
    "get_current_span",
    "set_current_span",
    "trace_session",
    "trace_run",
    "trace_turn",
    "trace_action",
    "trace_llm",
    "traced",
]
