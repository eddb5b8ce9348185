"""Extract JSON objects from free-form reasoning agent output."""

from __future__ import annotations

import json
import re
from typing import Any

from autopilot.errors import ResponseParseError

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def parse_json_response(text: str) -> dict[str, Any]:
    """Parse the first JSON object found in agent output.

    Tries the raw text, then a fenced ```json block, then the outermost
    brace slice.
    """

    payload = _parse_json_payload(text)
    if payload is None:
        preview = text.strip()[:200]
        raise ResponseParseError(f"Agent response is not a JSON object: {preview!r}")
    return payload


def _parse_json_payload(text: str) -> dict[str, Any] | None:
    direct = _try_load_dict(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(text[start : end + 1])


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
