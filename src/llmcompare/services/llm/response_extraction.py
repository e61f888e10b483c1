# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the response extraction unit so this responsibility stays isolated, testable, and easy to evolve.

Text and token-usage extraction from complete (non-streamed) JSON bodies,
plus the rough linear cost estimate shown next to each response.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from llmcompare.models.providers import Dialect
from llmcompare.models.responses import TokenUsage

DEFAULT_COST_PER_1K_TOKENS = 0.002


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first(items: Any) -> Dict[str, Any]:
    if isinstance(items, list) and items:
        return _as_dict(items[0])
    return {}


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def extract_content(dialect: Dialect, data: Any) -> str:
    """Text of a complete response body in the given dialect."""
    body = _as_dict(data)
    if dialect.is_openai_family:
        message = _as_dict(_first(body.get("choices")).get("message"))
        content = _str(message.get("content"))
        if content or dialect == Dialect.OPENAI:
            return content
        return _str(body.get("content")) or _str(body.get("text"))
    if dialect == Dialect.ANTHROPIC:
        blocks = body.get("content")
        if isinstance(blocks, list):
            return "".join(
                _str(_as_dict(block).get("text"))
                for block in blocks
                if _as_dict(block).get("type", "text") == "text"
            )
        return ""
    if dialect == Dialect.OLLAMA:
        return _str(body.get("response"))
    return (
        _str(body.get("content"))
        or _str(body.get("text"))
        or _str(body.get("response"))
    )


def extract_token_usage(dialect: Dialect, data: Any) -> Optional[TokenUsage]:
    body = _as_dict(data)
    if dialect.is_openai_family:
        usage = _as_dict(body.get("usage"))
        if not usage:
            return None
        return usage_from_counts(
            usage.get("prompt_tokens"),
            usage.get("completion_tokens"),
            usage.get("total_tokens"),
        )
    if dialect == Dialect.ANTHROPIC:
        usage = _as_dict(body.get("usage"))
        if not usage:
            return None
        return usage_from_counts(usage.get("input_tokens"), usage.get("output_tokens"))
    if dialect == Dialect.OLLAMA:
        if "prompt_eval_count" not in body and "eval_count" not in body:
            return None
        return usage_from_counts(body.get("prompt_eval_count"), body.get("eval_count"))
    return None


def usage_from_counts(
    prompt_tokens: Any, completion_tokens: Any, total_tokens: Any = None
) -> TokenUsage:
    prompt = prompt_tokens if isinstance(prompt_tokens, int) else 0
    completion = completion_tokens if isinstance(completion_tokens, int) else 0
    total = total_tokens if isinstance(total_tokens, int) else prompt + completion
    return TokenUsage(
        prompt_tokens=prompt, completion_tokens=completion, total_tokens=total
    )


def merge_usage(
    current: Optional[Dict[str, int]], partial: Optional[Dict[str, int]]
) -> Optional[Dict[str, int]]:
    """Fold a partial usage report (from one stream line) into the running counts."""
    if not partial:
        return current
    merged = dict(current or {})
    merged.update(partial)
    return merged


def estimate_cost(
    usage: Optional[TokenUsage], cost_per_1k_tokens: float = DEFAULT_COST_PER_1K_TOKENS
) -> Optional[float]:
    """Rough linear estimate; real pricing differs per model."""
    if usage is None:
        return None
    return (usage.total_tokens / 1000) * cost_per_1k_tokens
