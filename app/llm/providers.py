from __future__ import annotations

import asyncio
import time

import httpx

from app.core.http import llm_client
from app.core.logger import get_logger
from app.llm.handlers import apply_handler
from app.llm.parser import parse_predictions
from app.llm.prompts import system_prompt
from app.llm.registry import ModelSpec
from app.llm.types import FailureKind, PredictionResult, Usage

log = get_logger("llm.providers")

TEMPERATURE = 0.5
MAX_TOKENS_SINGLE = 150
MAX_TOKENS_BATCH = 800


class ProviderError(Exception):
    def __init__(self, kind: FailureKind, message: str):
        super().__init__(message)
        self.kind = kind


def extract_content(data: dict) -> str:
    """Answer text from a chat-completions payload; reasoning models sometimes leave `content` empty."""
    choices = data.get("choices") or []
    if not choices:
        raise ProviderError(FailureKind.EMPTY_RESPONSE, "response has no choices")
    message = choices[0].get("message") or {}
    content = message.get("content")
    if isinstance(content, str) and content.strip():
        return content
    reasoning = message.get("reasoning")
    if isinstance(reasoning, str) and reasoning.strip():
        return reasoning
    details = message.get("reasoning_details") or []
    summaries = [d.get("summary") or d.get("text") for d in details if isinstance(d, dict)]
    summaries = [s for s in summaries if isinstance(s, str) and s.strip()]
    if summaries:
        return "\n".join(summaries)
    return ""


def _usage(data: dict) -> Usage | None:
    raw = data.get("usage")
    if not isinstance(raw, dict):
        return None
    return Usage(
        input_tokens=int(raw.get("prompt_tokens") or 0),
        output_tokens=int(raw.get("completion_tokens") or 0),
    )


class LLMProvider:
    """One model behind the uniform `predict(prompt, match_ids)` call shape."""

    backend: str = ""

    def __init__(self, spec: ModelSpec, client: httpx.AsyncClient | None = None):
        if spec.backend != self.backend:
            raise ValueError(f"model {spec.id} belongs to backend {spec.backend}, not {self.backend}")
        self.spec = spec
        self._client = client

    @property
    def id(self) -> str:
        return self.spec.id

    def client(self) -> httpx.AsyncClient:
        return self._client if self._client is not None else llm_client(self.backend)

    def build_payload(self, prompt: str, match_ids: list[str]) -> dict:
        payload = {
            "model": self.spec.model_name,
            "messages": [
                {"role": "system", "content": system_prompt(self.spec.prompt_variant)},
                {"role": "user", "content": prompt},
            ],
            "temperature": TEMPERATURE,
            "max_tokens": MAX_TOKENS_SINGLE if len(match_ids) == 1 else MAX_TOKENS_BATCH,
        }
        if self.spec.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def _complete(self, payload: dict) -> tuple[str, Usage | None]:
        response = await self.client().post("/chat/completions", json=payload)
        if response.status_code == 429:
            raise ProviderError(FailureKind.API_ERROR, "rate limited (HTTP 429)")
        if response.status_code >= 400:
            raise ProviderError(FailureKind.API_ERROR, f"HTTP {response.status_code}: {response.text[:200]}")
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(FailureKind.API_ERROR, f"invalid JSON body: {exc}") from exc
        return extract_content(data), _usage(data)

    async def predict(self, prompt: str, match_ids: list[str]) -> PredictionResult:
        ids = [str(m) for m in match_ids]
        deadline = self.spec.timeout_seconds()
        t0 = time.perf_counter()

        def _elapsed() -> int:
            return int((time.perf_counter() - t0) * 1000)

        try:
            content, usage = await asyncio.wait_for(self._complete(self.build_payload(prompt, ids)), deadline)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return PredictionResult.failed(self.id, FailureKind.TIMEOUT, f"no response within {deadline:.0f}s", duration_ms=_elapsed())
        except ProviderError as exc:
            return PredictionResult.failed(self.id, exc.kind, str(exc), duration_ms=_elapsed())
        except httpx.HTTPError as exc:
            return PredictionResult.failed(
                self.id, FailureKind.API_ERROR, f"{exc.__class__.__name__}: {exc}", duration_ms=_elapsed()
            )

        if not content.strip():
            return PredictionResult.failed(self.id, FailureKind.EMPTY_RESPONSE, "no usable content", duration_ms=_elapsed())

        handled = apply_handler(self.spec.response_handler, content)
        outcome = parse_predictions(handled, ids)
        if not outcome.ok:
            kind = outcome.failure or FailureKind.PARSE_FAILURE
            if not handled.strip():
                kind = FailureKind.THINKING_TAG_LEAK
            log.info("llm_parse_failed model=%s kind=%s error=%s", self.id, kind.value, outcome.error)
            return PredictionResult.failed(self.id, kind, outcome.error or kind.value, raw_response=content, duration_ms=_elapsed())

        if usage is not None:
            cost = self.spec.estimate_cost(usage.input_tokens, usage.output_tokens)
        else:
            cost = self.spec.estimate_cost(500 * len(ids), 50 * len(ids))
        return PredictionResult(
            model_id=self.id,
            predictions=outcome.predictions,
            raw_response=content,
            success=True,
            usage=usage,
            cost_usd=cost,
            duration_ms=_elapsed(),
        )


class TogetherProvider(LLMProvider):
    backend = "together"


class SyntheticProvider(LLMProvider):
    backend = "synthetic"


PROVIDER_CLASSES: dict[str, type[LLMProvider]] = {
    "together": TogetherProvider,
    "synthetic": SyntheticProvider,
}


def build_provider(spec: ModelSpec, client: httpx.AsyncClient | None = None) -> LLMProvider:
    return PROVIDER_CLASSES[spec.backend](spec, client=client)
