import re
import time
from dataclasses import dataclass
from typing import Callable

CONTEXT_READY = "context_ready"
AWAITING_CLARIFICATION = "awaiting_clarification"
NEEDS_CLARIFICATION = "needs_clarification"
BLOCKED = "blocked"

SENTINEL_STATE_TAGS = frozenset({CONTEXT_READY, AWAITING_CLARIFICATION, NEEDS_CLARIFICATION, BLOCKED})
HALTING_STATE_TAGS = frozenset({AWAITING_CLARIFICATION, NEEDS_CLARIFICATION, BLOCKED})
# Halting tags that mean the user, not the data, is what the plan waits for.
USER_BLOCKING_STATE_TAGS = frozenset({AWAITING_CLARIFICATION, NEEDS_CLARIFICATION})

DEFAULT_STATE_TAG = CONTEXT_READY

_STATE_TAG_PATTERN = re.compile(r'^(\d{5,})-(\d+)$')


@dataclass(frozen=True, order=True)
class StateTag:
    epoch: int
    seq: int

    def __str__(self) -> str:
        return f"{self.epoch:013d}-{self.seq}"


def parse_state_tag(tag: str | None) -> StateTag | None:
    """Parse an ``<epoch>-<seq>`` tag. Sentinels and malformed tags give None."""
    if not tag:
        return None
    match = _STATE_TAG_PATTERN.match(tag.strip())
    if match is None:
        return None
    return StateTag(int(match.group(1)), int(match.group(2)))


def is_valid_state_tag(tag: str | None) -> bool:
    if not tag or not tag.strip():
        return False
    return tag.strip() in SENTINEL_STATE_TAGS or parse_state_tag(tag) is not None


def is_halting_state_tag(tag: str | None) -> bool:
    return bool(tag) and tag.strip() in HALTING_STATE_TAGS


class StateTagFactory:
    """Mints strictly increasing progress tags.

    The epoch is wall-clock milliseconds but never moves backwards; the
    sequence restarts at zero whenever the epoch advances.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last = StateTag(0, -1)

    def mint(self) -> str:
        epoch = int(self._clock() * 1000)
        if epoch > self._last.epoch:
            self._last = StateTag(epoch, 0)
        else:
            self._last = StateTag(self._last.epoch, self._last.seq + 1)
        return str(self._last)

    def advance_past(self, tag: str | None) -> None:
        """Make sure the next minted tag sorts after ``tag``."""
        parsed = parse_state_tag(tag)
        if parsed is not None and parsed > self._last:
            self._last = parsed

    @property
    def last(self) -> str | None:
        return str(self._last) if self._last.seq >= 0 else None
