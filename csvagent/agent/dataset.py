import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from csvagent.exceptions import (
    DatasetUnavailableError,
    NoPendingTransformError,
    TransformPendingError,
)

logger = logging.getLogger(__name__)

Row = dict[str, Any]


@dataclass(frozen=True)
class ColumnProfile:
    name: str
    type: str = "unknown"
    unique_values: int | None = None
    missing: int | None = None


class DatasetProfiler(Protocol):
    """Read-only statistics provider. The orchestrator never aggregates data itself."""
    def profile(self, rows: list[Row]) -> list[ColumnProfile]: ...


class TransformRunner(Protocol):
    """Runs a generated transform body against a copy of the rows."""
    async def run(self, body: str, rows: list[Row]) -> Any: ...


@dataclass(frozen=True)
class TransformSummary:
    rows_before: int
    rows_after: int
    added_columns: tuple[str, ...] = ()
    removed_columns: tuple[str, ...] = ()

    def describe(self) -> str:
        text = f"{self.rows_before} → {self.rows_after} rows"
        if self.added_columns:
            text += f", added columns: {', '.join(self.added_columns)}"
        if self.removed_columns:
            text += f", removed columns: {', '.join(self.removed_columns)}"
        return text

    def as_outputs(self) -> dict[str, Any]:
        return {
            'rows_before': self.rows_before,
            'rows_after': self.rows_after,
            'added_columns': list(self.added_columns),
            'removed_columns': list(self.removed_columns),
        }


@dataclass
class PendingTransform:
    rows: list[Row]
    summary: TransformSummary
    explanation: str
    run_id: str | None = None
    staged_at: datetime = field(default_factory=datetime.now)


def _columns(rows: list[Row]) -> list[str]:
    names: dict[str, None] = {}
    for row in rows:
        for key in row:
            names.setdefault(key, None)
    return list(names)


def summarize_transform(before: list[Row], after: list[Row]) -> TransformSummary:
    before_cols = set(_columns(before))
    after_cols = _columns(after)
    return TransformSummary(
        rows_before=len(before),
        rows_after=len(after),
        added_columns=tuple(c for c in after_cols if c not in before_cols),
        removed_columns=tuple(c for c in _columns(before) if c not in set(after_cols)),
    )


class DatasetWorkspace:
    """The working dataset snapshot plus at most one staged, unapproved transform.

    Staging never touches the working rows; only ``approve_transform`` swaps
    them, so discarding leaves the dataset exactly as it was.
    """

    def __init__(
            self,
            rows: list[Row] | None = None,
            *,
            name: str | None = None,
            profiler: DatasetProfiler | None = None,
    ) -> None:
        self._rows = rows
        self.name = name
        self.profiler = profiler
        self._pending: PendingTransform | None = None

    @property
    def loaded(self) -> bool:
        return self._rows is not None

    @property
    def rows(self) -> list[Row]:
        if self._rows is None:
            raise DatasetUnavailableError()
        return self._rows

    def snapshot(self) -> list[Row]:
        """Deep copy of the working rows, safe to hand to a transform runner."""
        return copy.deepcopy(self.rows)

    def columns(self) -> list[ColumnProfile]:
        if self._rows is None:
            return []
        if self.profiler is not None:
            return self.profiler.profile(self._rows)
        return [ColumnProfile(name) for name in _columns(self._rows)]

    def sample(self, limit: int = 5) -> list[Row]:
        return copy.deepcopy(self._rows[:limit]) if self._rows else []

    @property
    def pending_transform(self) -> PendingTransform | None:
        return self._pending

    def stage_transform(self, rows: list[Row], explanation: str, run_id: str | None = None) -> PendingTransform:
        if self._pending is not None:
            raise TransformPendingError()
        self._pending = PendingTransform(
            rows=rows,
            summary=summarize_transform(self.rows, rows),
            explanation=explanation,
            run_id=run_id,
        )
        logger.info(f"Transform staged: {self._pending.summary.describe()}")
        return self._pending

    def approve_transform(self) -> PendingTransform:
        pending = self._take_pending()
        self._rows = pending.rows
        logger.info(f"Transform approved: {pending.summary.describe()}")
        return pending

    def discard_transform(self) -> PendingTransform:
        pending = self._take_pending()
        logger.info(f"Transform discarded: {pending.summary.describe()}")
        return pending

    def _take_pending(self) -> PendingTransform:
        if self._pending is None:
            raise NoPendingTransformError()
        pending, self._pending = self._pending, None
        return pending
