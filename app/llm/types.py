from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    API_ERROR = "api_error"
    EMPTY_RESPONSE = "empty_response"
    LANGUAGE_MISMATCH = "language_mismatch"
    THINKING_TAG_LEAK = "thinking_tag_leak"
    PARSE_FAILURE = "parse_failure"
    BUDGET_EXCEEDED = "budget_exceeded"
    CIRCUIT_OPEN = "circuit_open"


# Failures that say nothing about the model itself; they do not count towards auto-disable.
NON_MODEL_FAILURES = frozenset({FailureKind.BUDGET_EXCEEDED, FailureKind.CIRCUIT_OPEN})


@dataclass(frozen=True)
class ScorePrediction:
    match_id: str
    home: int
    away: int


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class PredictionResult:
    """Uniform outcome of one provider call; failures are carried, never raised."""

    model_id: str
    predictions: dict[str, ScorePrediction] = field(default_factory=dict)
    raw_response: str = ""
    success: bool = False
    error: str | None = None
    failure: FailureKind | None = None
    usage: Usage | None = None
    cost_usd: float = 0.0
    duration_ms: int = 0

    @classmethod
    def failed(cls, model_id: str, kind: FailureKind, error: str, *, raw_response: str = "", duration_ms: int = 0):
        return cls(
            model_id=model_id,
            raw_response=raw_response,
            success=False,
            error=error,
            failure=kind,
            duration_ms=duration_ms,
        )
