"""Tolerant parsing of JSON payloads embedded in model replies."""
from __future__ import annotations

import json
import re
from typing import Any

from .errors import MalformedModelOutputError

_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```$")
_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL)


def strip_code_fences(raw: str) -> str:
    """Drops reasoning blocks and a surrounding markdown code fence."""
    text = _THINK_RE.sub("", str(raw or "")).strip()
    if text.startswith("```"):
        text = _FENCE_OPEN_RE.sub("", text)
        text = _FENCE_CLOSE_RE.sub("", text)
    return text.strip()


def _first_balanced(text: str, opener: str, closer: str) -> str | None:
    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def _parse(raw: str, opener: str, closer: str, expected: type) -> Any:
    cleaned = strip_code_fences(raw)
    candidates = [cleaned]
    embedded = _first_balanced(cleaned, opener, closer)
    if embedded and embedded != cleaned:
        candidates.append(embedded)

    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except (TypeError, json.JSONDecodeError):
            continue
        if isinstance(value, expected):
            return value
    raise MalformedModelOutputError(
        f"Model reply is not a JSON {expected.__name__}", raw=raw
    )


def parse_json_object(raw: str) -> dict[str, Any]:
    return _parse(raw, "{", "}", dict)


def parse_json_array(raw: str) -> list[Any]:
    return _parse(raw, "[", "]", list)
