"""Best-effort extraction of a JSON object from a model reply.

Models asked for raw JSON still wrap it in Markdown fences or chat around it
now and then. Candidates are tried in order: the whole reply, the body of
the first code fence, then the first balanced ``{...}`` block.
"""

import json
import re
from typing import Any

from csvagent.exceptions import ResponderParseError

CODE_FENCE_PATTERN = re.compile(r'```(?:json)?\s*([\s\S]*?)```', re.IGNORECASE)


def _parse_object(candidate: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_brace_block(content: str) -> str | None:
    """First top-level ``{...}`` block, ignoring braces inside JSON strings."""
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, char in enumerate(content):
        if in_string:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == '{':
            if depth == 0:
                start = i
            depth += 1
        elif char == '}' and depth > 0:
            depth -= 1
            if depth == 0 and start != -1:
                return content[start:i + 1].strip()
    return None


def coerce_json_object(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    text = ('' if raw is None else str(raw)).strip()

    candidates = []
    if text:
        candidates.append(text)
    fence = CODE_FENCE_PATTERN.search(text)
    if fence and fence.group(1).strip():
        candidates.append(fence.group(1).strip())
    block = extract_brace_block(text)
    if block:
        candidates.append(block)

    for candidate in candidates:
        parsed = _parse_object(candidate)
        if parsed is not None:
            return parsed
    raise ResponderParseError(text)
