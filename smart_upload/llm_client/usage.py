from __future__ import annotations

from typing import Any


def normalize_openai_usage(usage: dict[str, Any] | None) -> dict[str, int | None]:
    usage_data = usage or {}

    prompt_tokens = _to_int(
        usage_data.get("prompt_tokens")
        or usage_data.get("input_tokens")
        or usage_data.get("inputTokens")
    )
    completion_tokens = _to_int(
        usage_data.get("completion_tokens")
        or usage_data.get("output_tokens")
        or usage_data.get("outputTokens")
    )
    total_tokens = _to_int(
        usage_data.get("total_tokens")
        or usage_data.get("totalTokens")
        or _sum_tokens(prompt_tokens, completion_tokens)
    )

    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total_tokens,
    }


def normalize_gemini_usage(usage: dict[str, Any] | None) -> dict[str, int | None]:
    usage_data = usage or {}

    prompt_tokens = _to_int(
        usage_data.get("prompt_token_count")
        or usage_data.get("promptTokenCount")
        or usage_data.get("prompt_tokens")
    )
    completion_tokens = _to_int(
        usage_data.get("candidates_token_count")
        or usage_data.get("candidatesTokenCount")
        or usage_data.get("completion_tokens")
    )
    total_tokens = _to_int(
        usage_data.get("total_token_count")
        or usage_data.get("totalTokenCount")
        or usage_data.get("total_tokens")
        or _sum_tokens(prompt_tokens, completion_tokens)
    )

    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total_tokens,
    }


def estimate_llm_cost(
    *,
    pricing_config: dict[str, Any],
    provider: str,
    model: str,
    usage_normalized: dict[str, int | None],
) -> dict[str, Any]:
    prompt_tokens = usage_normalized.get("prompt_tokens") or 0
    completion_tokens = usage_normalized.get("completion_tokens") or 0

    provider_pricing = pricing_config.get("llm", {}).get(provider, {})
    model_pricing = provider_pricing.get("models", {}).get(model, {})

    input_rate = float(model_pricing.get("input") or 0.0)
    output_rate = float(model_pricing.get("output") or 0.0)

    llm_cost = (
        (prompt_tokens * input_rate) + (completion_tokens * output_rate)
    ) / 1_000_000

    return {
        "llm_cost_usd": round(llm_cost, 8),
        "currency": pricing_config.get("currency", "USD"),
        "pricing_version": pricing_config.get("updated_at", "unknown"),
        "priced": bool(model_pricing),
    }


def _sum_tokens(prompt_tokens: int | None, completion_tokens: int | None) -> int | None:
    if prompt_tokens is None and completion_tokens is None:
        return None

    return int((prompt_tokens or 0) + (completion_tokens or 0))


def _to_int(value: Any) -> int | None:
    if value is None:
        return None

    return int(value)
