"""
Score extraction from raw LLM output.

Strategies run in a fixed order and stop at the first one that yields at least one
schema-valid prediction for an expected match id:

1. direct JSON parse of the whole (reasoning-stripped) text
2. JSON inside a markdown code fence
3. bracketed JSON array/object embedded in prose
4. loose "2-1" score pattern

Scores outside SCORE_MIN..SCORE_MAX are rejected, never clamped.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Iterable

from app.llm.types import FailureKind, ScorePrediction

SCORE_MIN = 0
SCORE_MAX = 20

_HOME_KEYS = ("home_score", "homeScore", "home")
_AWAY_KEYS = ("away_score", "awayScore", "away")
_ID_KEYS = ("match_id", "matchId", "id")

_REASONING_BLOCK_RE = re.compile(r"<(think|thinking|reasoning)>[\s\S]*?</\1>", re.IGNORECASE)
_REASONING_TAG_RE = re.compile(r"</?(?:think|thinking|reasoning)>", re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_LOOSE_SCORE_RE = re.compile(r"(?<![\d\-:.])(\d{1,2})\s*[-:]\s*(\d{1,2})(?![\d\-:.])")
_NON_LATIN_RE = re.compile(r"[\u0400-\u04ff\u0600-\u06ff\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af]")
_LATIN_RE = re.compile(r"[A-Za-z]")


@dataclass
class ParseOutcome:
    predictions: dict[str, ScorePrediction] = field(default_factory=dict)
    strategy: str | None = None
    failure: FailureKind | None = None
    error: str | None = None
    rejected: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.predictions)


def strip_reasoning(text: str) -> str:
    return _REASONING_BLOCK_RE.sub("", text or "")


def _coerce_score(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _first_key(obj: dict, keys: Iterable[str]):
    for key in keys:
        if key in obj:
            return obj[key]
    return None


def _has_scores(obj) -> bool:
    return isinstance(obj, dict) and any(k in obj for k in _HOME_KEYS) and any(k in obj for k in _AWAY_KEYS)


def _find_nested_scores(obj, depth: int = 0) -> dict | None:
    if depth > 5:
        return None
    if _has_scores(obj):
        return obj
    children = obj.values() if isinstance(obj, dict) else obj if isinstance(obj, list) else ()
    for child in children:
        found = _find_nested_scores(child, depth + 1)
        if found is not None:
            return found
    return None


def _entry(obj: dict, match_id: str, expected: set[str], rejected: list[str]) -> ScorePrediction | None:
    if match_id not in expected:
        rejected.append(f"unexpected match_id={match_id}")
        return None
    home = _coerce_score(_first_key(obj, _HOME_KEYS))
    away = _coerce_score(_first_key(obj, _AWAY_KEYS))
    if home is None or away is None:
        rejected.append(f"non-integer score match_id={match_id}")
        return None
    if not (SCORE_MIN <= home <= SCORE_MAX and SCORE_MIN <= away <= SCORE_MAX):
        rejected.append(f"score out of bounds match_id={match_id} score={home}-{away}")
        return None
    return ScorePrediction(match_id=match_id, home=home, away=away)


def _from_payload(payload, expected: list[str], rejected: list[str]) -> dict[str, ScorePrediction]:
    expected_set = set(expected)
    out: dict[str, ScorePrediction] = {}

    if isinstance(payload, dict) and isinstance(payload.get("predictions"), list):
        payload = payload["predictions"]

    if isinstance(payload, dict):
        obj = payload if _has_scores(payload) else _find_nested_scores(payload)
        if obj is None:
            return out
        raw_id = _first_key(obj, _ID_KEYS)
        if raw_id is None and len(expected) == 1:
            raw_id = expected[0]
        if raw_id is None:
            rejected.append("object without match_id for a multi-match request")
            return out
        pred = _entry(obj, str(raw_id), expected_set, rejected)
        if pred is not None:
            out[pred.match_id] = pred
        return out

    if isinstance(payload, list):
        items = [item for item in payload if _has_scores(item)]
        positional = bool(items) and all(_first_key(i, _ID_KEYS) is None for i in items) and len(items) == len(expected)
        for idx, item in enumerate(items):
            raw_id = _first_key(item, _ID_KEYS)
            if raw_id is None:
                if not positional:
                    rejected.append("array item without match_id")
                    continue
                raw_id = expected[idx]
            pred = _entry(item, str(raw_id), expected_set, rejected)
            if pred is not None and pred.match_id not in out:
                out[pred.match_id] = pred
    return out


def _loads(text: str):
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def _balanced_objects(text: str) -> list[str]:
    objects: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for idx, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and depth > 0:
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = idx
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                objects.append(text[start : idx + 1])
                start = -1
    return objects


def _direct_json(text: str, expected: list[str], rejected: list[str]) -> dict[str, ScorePrediction]:
    payload = _loads(text)
    if payload is None:
        return {}
    return _from_payload(payload, expected, rejected)


def _fenced_block(text: str, expected: list[str], rejected: list[str]) -> dict[str, ScorePrediction]:
    for match in _FENCE_RE.finditer(text):
        payload = _loads(match.group(1).strip())
        if payload is None:
            continue
        found = _from_payload(payload, expected, rejected)
        if found:
            return found
    return {}


def _bracketed(text: str, expected: list[str], rejected: list[str]) -> dict[str, ScorePrediction]:
    array = _ARRAY_RE.search(text)
    if array:
        payload = _loads(array.group(0))
        if payload is not None:
            found = _from_payload(payload, expected, rejected)
            if found:
                return found
    out: dict[str, ScorePrediction] = {}
    for raw in _balanced_objects(text):
        payload = _loads(raw)
        if payload is None:
            continue
        for match_id, pred in _from_payload(payload, expected, rejected).items():
            out.setdefault(match_id, pred)
    return out


def _loose_score(text: str, expected: list[str], rejected: list[str]) -> dict[str, ScorePrediction]:
    pairs: list[tuple[int, int]] = []
    for m in _LOOSE_SCORE_RE.finditer(text):
        home, away = int(m.group(1)), int(m.group(2))
        if SCORE_MIN <= home <= SCORE_MAX and SCORE_MIN <= away <= SCORE_MAX:
            pairs.append((home, away))
        else:
            rejected.append(f"loose score out of bounds score={home}-{away}")
    if not pairs:
        return {}
    if len(expected) == 1:
        home, away = pairs[0]
        return {expected[0]: ScorePrediction(match_id=expected[0], home=home, away=away)}
    # Without ids, only an exact one-to-one sequence is trustworthy.
    if len(pairs) != len(expected):
        rejected.append(f"loose scores ambiguous found={len(pairs)} expected={len(expected)}")
        return {}
    return {mid: ScorePrediction(match_id=mid, home=h, away=a) for mid, (h, a) in zip(expected, pairs)}


STRATEGIES = (
    ("direct_json", _direct_json),
    ("fenced_block", _fenced_block),
    ("bracketed", _bracketed),
    ("loose_score", _loose_score),
)


def is_non_target_language(text: str) -> bool:
    non_latin = len(_NON_LATIN_RE.findall(text or ""))
    latin = len(_LATIN_RE.findall(text or ""))
    if non_latin == 0:
        return False
    return non_latin >= latin


def classify_failure(raw: str, cleaned: str) -> FailureKind:
    if not (raw or "").strip():
        return FailureKind.EMPTY_RESPONSE
    if not cleaned.strip() or _REASONING_TAG_RE.search(cleaned):
        return FailureKind.THINKING_TAG_LEAK
    if is_non_target_language(cleaned):
        return FailureKind.LANGUAGE_MISMATCH
    return FailureKind.PARSE_FAILURE


def parse_predictions(raw: str, match_ids: Iterable) -> ParseOutcome:
    expected = [str(m) for m in match_ids]
    if not (raw or "").strip():
        return ParseOutcome(failure=FailureKind.EMPTY_RESPONSE, error="empty response")

    cleaned = strip_reasoning(raw).strip()
    rejected: list[str] = []
    for name, strategy in STRATEGIES:
        found = strategy(cleaned, expected, rejected)
        if found:
            return ParseOutcome(predictions=found, strategy=name, rejected=rejected)

    kind = classify_failure(raw, cleaned)
    detail = "; ".join(rejected[:5]) if rejected else "no score found"
    return ParseOutcome(failure=kind, error=f"{kind.value}: {detail}", rejected=rejected)
