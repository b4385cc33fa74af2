"""
Static model registry and fallback graph.

The set of models is closed: every backend call goes through one ModelSpec looked up
by id. The fallback graph is validated once at process start; a malformed graph is a
fatal configuration error.
"""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from app.core.config import settings
from app.llm.handlers import ResponseHandler
from app.llm.prompts import PromptVariant

BACKENDS = ("together", "synthetic")
TIERS = ("free", "ultra-budget", "budget", "premium")


class FallbackConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ModelSpec:
    id: str
    backend: str
    model_name: str
    display_name: str
    tier: str
    input_price: float
    output_price: float
    reasoning: bool = False
    prompt_variant: PromptVariant = PromptVariant.PLAIN
    response_handler: ResponseHandler = ResponseHandler.PASS_THROUGH
    json_mode: bool = True

    def estimate_cost(self, input_tokens: int = 500, output_tokens: int = 50) -> float:
        """USD cost; prices are per 1M tokens."""
        return (input_tokens / 1_000_000) * self.input_price + (output_tokens / 1_000_000) * self.output_price

    def timeout_seconds(self) -> float:
        if self.reasoning:
            return float(settings.llm_reasoning_timeout_seconds)
        return float(settings.llm_timeout_seconds)


_THINKING = dict(
    reasoning=True,
    prompt_variant=PromptVariant.MINIMAL,
    response_handler=ResponseHandler.STRIP_REASONING,
)

MODELS: tuple[ModelSpec, ...] = (
    ModelSpec("deepseek-r1", "together", "deepseek-ai/DeepSeek-R1", "DeepSeek R1", "premium", 3.00, 7.00, **_THINKING),
    ModelSpec("kimi-k2-instruct", "together", "moonshotai/Kimi-K2-Instruct", "Kimi K2 Instruct", "budget", 1.00, 3.00),
    ModelSpec("deepseek-v3.1", "together", "deepseek-ai/DeepSeek-V3.1", "DeepSeek V3.1", "budget", 0.60, 1.25),
    ModelSpec(
        "qwen3-235b-thinking",
        "together",
        "Qwen/Qwen3-235B-A22B-Thinking-2507",
        "Qwen3 235B Thinking",
        "premium",
        0.65,
        3.00,
        reasoning=True,
        prompt_variant=PromptVariant.LANGUAGE_MINIMAL,
        response_handler=ResponseHandler.STRIP_REASONING,
    ),
    ModelSpec(
        "llama-3.3-70b-turbo",
        "together",
        "meta-llama/Llama-3.3-70B-Instruct-Turbo",
        "Llama 3.3 70B Turbo",
        "budget",
        0.88,
        0.88,
        prompt_variant=PromptVariant.JSON_EMPHASIS,
        response_handler=ResponseHandler.EXTRACT_JSON,
    ),
    ModelSpec(
        "glm-4.6",
        "together",
        "zai-org/GLM-4.6",
        "GLM 4.6",
        "budget",
        0.60,
        2.20,
        prompt_variant=PromptVariant.LANGUAGE_ENFORCEMENT,
    ),
    ModelSpec(
        "gpt-oss-20b",
        "together",
        "openai/gpt-oss-20b",
        "GPT-OSS 20B",
        "ultra-budget",
        0.05,
        0.20,
        prompt_variant=PromptVariant.JSON_EMPHASIS,
        response_handler=ResponseHandler.EXTRACT_JSON,
    ),
    ModelSpec(
        "deepseek-r1-0528-syn",
        "synthetic",
        "hf:deepseek-ai/DeepSeek-R1-0528",
        "DeepSeek R1 0528 (Synthetic)",
        "premium",
        3.00,
        7.00,
        json_mode=False,
        **_THINKING,
    ),
    ModelSpec(
        "kimi-k2-thinking-syn",
        "synthetic",
        "hf:moonshotai/Kimi-K2-Thinking",
        "Kimi K2 Thinking (Synthetic)",
        "premium",
        2.00,
        6.00,
        json_mode=False,
        **_THINKING,
    ),
    ModelSpec(
        "kimi-k2.5-syn",
        "synthetic",
        "hf:moonshotai/Kimi-K2.5",
        "Kimi K2.5 (Synthetic)",
        "budget",
        1.00,
        3.00,
        json_mode=False,
        prompt_variant=PromptVariant.JSON_EMPHASIS,
        response_handler=ResponseHandler.EXTRACT_JSON,
    ),
    ModelSpec(
        "deepseek-v3-0324-syn",
        "synthetic",
        "hf:deepseek-ai/DeepSeek-V3-0324",
        "DeepSeek V3 0324 (Synthetic)",
        "budget",
        0.60,
        1.25,
        json_mode=False,
    ),
    ModelSpec(
        "minimax-m2-syn",
        "synthetic",
        "hf:MiniMaxAI/MiniMax-M2",
        "MiniMax M2 (Synthetic)",
        "budget",
        0.50,
        1.00,
        json_mode=False,
        prompt_variant=PromptVariant.LANGUAGE_MINIMAL,
        response_handler=ResponseHandler.STRIP_REASONING,
    ),
)

REGISTRY: Mapping[str, ModelSpec] = MappingProxyType({m.id: m for m in MODELS})

# Synthetic-hosted models fall back to the Together-hosted equivalent.
MODEL_FALLBACKS: dict[str, str] = {
    "deepseek-r1-0528-syn": "deepseek-r1",
    "kimi-k2-thinking-syn": "kimi-k2-instruct",
    "kimi-k2.5-syn": "kimi-k2-instruct",
    "deepseek-v3-0324-syn": "deepseek-v3.1",
}


def validate_fallback_graph(
    mapping: Mapping[str, str],
    registry: Mapping[str, ModelSpec],
    *,
    max_depth: int,
) -> Mapping[str, str]:
    """Reject dangling ids, self references, cycles and chains deeper than max_depth."""
    for source, target in mapping.items():
        if source not in registry:
            raise FallbackConfigError(f"fallback source {source!r} is not a registered model")
        if target not in registry:
            raise FallbackConfigError(f"fallback target {target!r} for {source!r} is not a registered model")
        if source == target:
            raise FallbackConfigError(f"model {source!r} falls back to itself")

    for source in mapping:
        visited = [source]
        current = source
        while current in mapping:
            current = mapping[current]
            if current in visited:
                chain = " -> ".join(visited + [current])
                raise FallbackConfigError(f"fallback cycle: {chain}")
            visited.append(current)
        depth = len(visited) - 1
        if depth > max_depth:
            chain = " -> ".join(visited)
            raise FallbackConfigError(f"fallback chain deeper than {max_depth}: {chain}")

    return MappingProxyType(dict(mapping))


def get_model(model_id: str) -> ModelSpec:
    try:
        return REGISTRY[model_id]
    except KeyError:
        raise KeyError(f"unknown model {model_id}") from None


def has_api_key(spec: ModelSpec) -> bool:
    return bool(settings.provider_key(spec.backend))


def configured_model_ids() -> list[str]:
    """Registered models with a backend key, narrowed by ENABLED_MODELS when set."""
    allowed = set(settings.enabled_models)
    return [m.id for m in MODELS if has_api_key(m) and (not allowed or m.id in allowed)]


def active_model_ids(health: Mapping | None = None) -> list[str]:
    """Configured models minus those whose health row says inactive."""
    health = health or {}
    out = []
    for model_id in configured_model_ids():
        row = health.get(model_id)
        if row is not None and not row.active:
            continue
        out.append(model_id)
    return out
