import logging
from datetime import datetime
from typing import Any

from csvagent.agent.types import (
    ActionTrace,
    ActionType,
    Observation,
    ObservationStatus,
    TraceStatus,
    short_id,
)

logger = logging.getLogger(__name__)

_TERMINAL_STATUSES = frozenset({TraceStatus.SUCCEEDED, TraceStatus.FAILED})


class ActionLedger:
    """Append-only record of attempted actions and their observations.

    A trace is appended when an action starts and then updated in place as it
    resolves; nothing is ever removed. Observations are appended once, in the
    order the actions were accepted.
    """

    def __init__(self) -> None:
        self._traces: list[ActionTrace] = []
        self._by_id: dict[str, ActionTrace] = {}
        self._observations: list[Observation] = []

    def begin(
            self,
            action_type: ActionType,
            summary: str,
            *,
            source: str = "planner",
            status: TraceStatus = TraceStatus.EXECUTING,
            metadata: dict[str, Any] | None = None,
    ) -> ActionTrace:
        trace = ActionTrace(
            id=short_id('trace'),
            action_type=action_type,
            status=status,
            summary=summary,
            source=source,
            metadata=dict(metadata or {}),
        )
        self._traces.append(trace)
        self._by_id[trace.id] = trace
        logger.debug(f"Trace {trace.id} began: {action_type.value} ({summary})")
        return trace

    def resolve(
            self,
            trace_id: str,
            status: TraceStatus,
            *,
            summary: str | None = None,
            metadata: dict[str, Any] | None = None,
    ) -> ActionTrace:
        """Move a trace to ``status``. Finished traces cannot be reopened."""
        trace = self._by_id.get(trace_id)
        if trace is None:
            raise KeyError(trace_id)
        if trace.status in _TERMINAL_STATUSES:
            raise ValueError(f"Trace {trace_id} already finished as {trace.status.value}")
        trace.status = status
        trace.timestamp = datetime.now()
        if summary is not None:
            trace.summary = summary
        if metadata:
            trace.metadata.update(metadata)
        return trace

    def annotate(self, trace_id: str, **metadata: Any) -> None:
        self._by_id[trace_id].metadata.update(metadata)

    def record(self, observation: Observation) -> Observation:
        self._observations.append(observation)
        return observation

    def observe(
            self,
            trace: ActionTrace,
            status: ObservationStatus,
            *,
            outputs: dict[str, Any] | None = None,
            error_code: str | None = None,
            error_message: str | None = None,
    ) -> Observation:
        return self.record(Observation(
            id=short_id('obs'),
            action_id=trace.id,
            response_type=trace.action_type,
            status=status,
            outputs=outputs,
            error_code=error_code,
            error_message=error_message,
        ))

    @property
    def traces(self) -> tuple[ActionTrace, ...]:
        return tuple(self._traces)

    @property
    def observations(self) -> tuple[Observation, ...]:
        return tuple(self._observations)

    def recent_traces(self, limit: int) -> list[ActionTrace]:
        return self._traces[-limit:] if limit > 0 else []

    def recent_observations(self, limit: int) -> list[Observation]:
        return self._observations[-limit:] if limit > 0 else []

    def format_observations(self, limit: int) -> str:
        """Prompt-ready summary of the latest observations."""
        lines = []
        for obs in self.recent_observations(limit):
            marker = {ObservationStatus.SUCCESS: "✓", ObservationStatus.ERROR: "✗"}.get(obs.status, "…")
            line = f"{marker} [{obs.id}] {obs.response_type.value}"
            if obs.outputs:
                details = ', '.join(f"{k}={v}" for k, v in obs.outputs.items())
                line += f": {details}"
            if obs.error_code:
                line += f" (error {obs.error_code}: {obs.error_message or 'no details'})"
            lines.append(line)
        return '\n'.join(lines)

    def format_traces(self, limit: int) -> str:
        return '\n'.join(
            f"- {t.action_type.value} [{t.status.value}] {t.summary}"
            for t in self.recent_traces(limit)
        )
