import re
from typing import Protocol

from csvagent.agent.types import ActionType, DetectedIntent, RequiredTool, UIState

REMOVE_CARD_PATTERN = re.compile(r'(remove|delete)\s+(the\s+)?(card|chart)', re.IGNORECASE)
FILTER_PATTERN = re.compile(r'(filter|show|find)\s+(all\s+|me\s+)?(rows|entries|records|data)', re.IGNORECASE)
TRANSFORM_PATTERN = re.compile(
    r'(clean|transform|restructure|normalize|standardize|add\s+column|create\s+column|calculate'
    r'|(remove|delete|drop)\s+(the\s+)?column)',
    re.IGNORECASE,
)
CLARIFICATION_PATTERN = re.compile(r'(which|what)\s+(column|field|value)', re.IGNORECASE)
GREETING_PATTERN = re.compile(
    r'^(hi|hello|hey|hola|ciao|salut|嗨+|哈囉|你好|您好|早上好|晚上好|早安|晚安)([!.?\s]|$)', re.IGNORECASE)
SMALLTALK_PATTERN = re.compile(r"(how\s+are\s+you|thanks|thank\s+you|what'?s\s+up|謝謝|你呢|聊聊)", re.IGNORECASE)
CHOICE_PATTERN = re.compile(r'^\s*(?:option|choice)?\s*(?:[1-3]|[abc])(?:[\s.:,-].*)?$', re.IGNORECASE)


class IntentClassifier(Protocol):
    """Computes the intent of one user message, once, before planning starts."""
    def classify(self, message: str, ui_state: UIState) -> DetectedIntent: ...


class RegexIntentClassifier(IntentClassifier):
    """Keyword classifier. Checks run from the most to the least specific phrasing."""

    def classify(self, message: str, ui_state: UIState) -> DetectedIntent:
        text = (message or '').strip()
        if not text:
            return DetectedIntent('unknown', 0.1)
        if GREETING_PATTERN.match(text):
            return DetectedIntent('greeting', 0.9)
        if SMALLTALK_PATTERN.search(text):
            return DetectedIntent('smalltalk', 0.75)
        if CHOICE_PATTERN.match(text):
            return DetectedIntent('ask_user_choice', 0.8)
        if REMOVE_CARD_PATTERN.search(text):
            return self._remove_card(text, ui_state)
        if FILTER_PATTERN.search(text):
            return DetectedIntent(
                'data_filter', 0.75,
                required_tool=RequiredTool(ActionType.FILTER_SPREADSHEET, payload_hints={'query': text}),
                payload_hints={'query': text},
            )
        if TRANSFORM_PATTERN.search(text):
            return DetectedIntent('data_transform', 0.7, required_tool=RequiredTool(ActionType.EXECUTE_JS_CODE))
        if CLARIFICATION_PATTERN.search(text) or text.endswith('?'):
            return DetectedIntent('clarification', 0.6)
        return DetectedIntent('chart_request', 0.4)

    @staticmethod
    def _remove_card(text: str, ui_state: UIState) -> DetectedIntent:
        lowered = text.lower()
        # Longest title first so "Sales by Region" wins over "Sales".
        for card in sorted(ui_state.cards, key=lambda c: len(c.title), reverse=True):
            if card.title and card.title.lower() in lowered:
                return DetectedIntent(
                    'remove_card', 0.95,
                    required_tool=RequiredTool(
                        ActionType.DOM_ACTION,
                        tool_name='removeCard',
                        payload_hints={'cardTitle': card.title},
                    ),
                    payload_hints={'cardTitle': card.title},
                )
        return DetectedIntent('remove_card', 0.8)
