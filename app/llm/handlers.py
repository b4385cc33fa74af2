from __future__ import annotations

import re
from enum import Enum

_FENCE_OPEN_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_REASONING_RE = re.compile(r"<(think|thinking|reasoning)>[\s\S]*?</\1>", re.IGNORECASE)


class ResponseHandler(str, Enum):
    PASS_THROUGH = "pass_through"
    STRIP_REASONING = "strip_reasoning"
    EXTRACT_JSON = "extract_json"


def _extract_json(content: str) -> str:
    cleaned = _FENCE_OPEN_RE.sub("", content).replace("```", "")
    array = _ARRAY_RE.search(cleaned)
    obj = _OBJECT_RE.search(cleaned)
    # Prefer whichever bracket opens first so an array of objects stays intact.
    candidates = [m for m in (array, obj) if m is not None]
    if not candidates:
        return content
    return min(candidates, key=lambda m: m.start()).group(0)


def apply_handler(handler: ResponseHandler, content: str) -> str:
    content = content or ""
    handler = ResponseHandler(handler)
    if handler is ResponseHandler.STRIP_REASONING:
        return _REASONING_RE.sub("", content).strip()
    if handler is ResponseHandler.EXTRACT_JSON:
        return _extract_json(content)
    return content
