"""Pause/resume protocol for questions the agent cannot answer alone.

A clarification with several options is registered as ``pending`` and keeps
the run paused until the user picks one. A clarification with exactly one
option answers itself: it is resolved on the spot and never registered.
Resolving splices the chosen value into the request's pending plan under
``target_property`` and records the choice in the chat as a user message.
"""

import copy
import logging
import re
from typing import Any

from csvagent.agent.chat import ChatHistory
from csvagent.agent.types import (
    ClarificationOption,
    ClarificationRequest,
    ClarificationRequestAction,
    ClarificationResolution,
    ClarificationStatus,
    short_id,
)
from csvagent.exceptions import (
    ClarificationError,
    ClarificationNotFoundError,
    InvalidClarificationChoiceError,
    SingleOptionClarificationError,
)

logger = logging.getLogger(__name__)

_ORDINAL_PATTERN = re.compile(r'^\s*(?:option|choice)?\s*#?(\d+|[a-z])\s*[.):]?\s*$', re.IGNORECASE)


def choice_message(question: str, label: str) -> str:
    return f"【{question}】\nI chose \"{label}\""


def match_option(options: list[ClarificationOption], text: str) -> ClarificationOption | None:
    """Find the option a free-form reply names by label, value or 1-based ordinal."""
    wanted = text.strip().lower()
    if not wanted:
        return None
    for option in options:
        if wanted in (str(option.label).strip().lower(), str(option.value).strip().lower()):
            return option
    match = _ORDINAL_PATTERN.match(wanted)
    if match:
        token = match.group(1)
        index = int(token) - 1 if token.isdigit() else ord(token) - ord('a')
        if 0 <= index < len(options):
            return options[index]
    return None


class ClarificationRegistry:
    def __init__(self, chat: ChatHistory) -> None:
        self.chat = chat
        self._pending: dict[str, ClarificationRequest] = {}
        self._closed: list[ClarificationRequest] = []

    def register(self, action: ClarificationRequestAction) -> ClarificationRequest:
        if len(action.options) == 1:
            raise SingleOptionClarificationError(action.question or '')
        if not action.options:
            raise ClarificationError(f"Clarification '{action.question}' has no options")
        request = ClarificationRequest(
            id=short_id('clarify'),
            question=action.question or '',
            options=list(action.options),
            pending_plan=dict(action.pending_plan or {}),
            target_property=action.target_property or '',
            step_id=action.step_id,
        )
        self._pending[request.id] = request
        logger.info(f"Clarification {request.id} pending: {request.question}")
        return request

    def auto_resolve(self, action: ClarificationRequestAction) -> ClarificationResolution:
        """Answer a single-option clarification without pausing."""
        if len(action.options) != 1:
            raise ClarificationError(
                f"Only single-option clarifications resolve automatically, got {len(action.options)} options")
        option = action.options[0]
        self.chat.add_user(choice_message(action.question or '', option.label), synthetic=True)
        logger.info(f"Clarification auto-resolved with the only option '{option.label}'")
        return self._resolution(
            short_id('clarify'), action.pending_plan or {}, action.target_property or '', option)

    def resolve(self, request_id: str, choice: Any) -> ClarificationResolution:
        """Close a pending request with the option matching ``choice``.

        ``choice`` may be an option value, a label or a 1-based ordinal.
        """
        request = self._pending.get(request_id)
        if request is None:
            raise ClarificationNotFoundError(request_id)
        option = self._find_option(request, choice)
        if option is None:
            raise InvalidClarificationChoiceError(request_id, str(choice))
        request.status = ClarificationStatus.RESOLVING
        resolution = self._resolution(request.id, request.pending_plan, request.target_property, option)
        self.chat.add_user(choice_message(request.question, option.label), synthetic=True)
        request.status = ClarificationStatus.RESOLVED
        self._close(request)
        logger.info(f"Clarification {request.id} resolved with '{option.label}'")
        return resolution

    def skip(self, request_id: str) -> ClarificationRequest:
        request = self._pending.get(request_id)
        if request is None:
            raise ClarificationNotFoundError(request_id)
        request.status = ClarificationStatus.SKIPPED
        self._close(request)
        self.chat.add_system(f"Skipped: {request.question}")
        logger.info(f"Clarification {request.id} skipped")
        return request

    def skip_all(self) -> list[ClarificationRequest]:
        return [self.skip(request_id) for request_id in list(self._pending)]

    def has_pending(self) -> bool:
        return bool(self._pending)

    def pending(self) -> list[ClarificationRequest]:
        return list(self._pending.values())

    def get(self, request_id: str) -> ClarificationRequest | None:
        return self._pending.get(request_id)

    @property
    def history(self) -> tuple[ClarificationRequest, ...]:
        return tuple(self._closed)

    def _close(self, request: ClarificationRequest) -> None:
        del self._pending[request.id]
        self._closed.append(request)

    @staticmethod
    def _find_option(request: ClarificationRequest, choice: Any) -> ClarificationOption | None:
        for option in request.options:
            if option.value == choice:
                return option
        if isinstance(choice, int) and not isinstance(choice, bool) and 1 <= choice <= len(request.options):
            return request.options[choice - 1]
        return match_option(request.options, str(choice))

    @staticmethod
    def _resolution(
            request_id: str,
            pending_plan: dict[str, Any],
            target_property: str,
            option: ClarificationOption,
    ) -> ClarificationResolution:
        completed = copy.deepcopy(pending_plan)
        completed[target_property] = option.value
        return ClarificationResolution(
            request_id=request_id,
            target_property=target_property,
            value=option.value,
            label=option.label,
            completed_plan=completed,
        )
