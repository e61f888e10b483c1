# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the llm request helpers unit so this responsibility stays isolated, testable, and easy to evolve."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping
import json as _json

import httpx

from llmcompare.models.responses import PromptSettings
from llmcompare.models.providers import ProviderDescriptor

DEFAULT_TIMEOUT_S = 300.0

STATUS_HINTS = {
    401: " - Check your API key",
    403: " - Access denied, check your API key permissions",
    429: " - Rate limit exceeded or out of credits",
}


def build_timeout(timeout_s: float | int | None) -> httpx.Timeout:
    try:
        return httpx.Timeout(float(timeout_s or DEFAULT_TIMEOUT_S))
    except (TypeError, ValueError):
        return httpx.Timeout(DEFAULT_TIMEOUT_S)


def provider_timeout(
    provider: ProviderDescriptor, settings: Mapping[str, Any] | None = None
) -> float:
    """Per-provider timeout, else the configured default."""
    if provider.timeout_s:
        return float(provider.timeout_s)
    try:
        return float((settings or {}).get("timeout_s") or DEFAULT_TIMEOUT_S)
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT_S


def resolve_generation_params(
    provider: ProviderDescriptor,
    settings: PromptSettings | None,
    *,
    temperature: float | None = None,
    max_tokens: int | None = None,
    top_p: float | None = None,
) -> Dict[str, Any]:
    """Explicit overrides win, then the request settings, then provider defaults."""
    defaults = PromptSettings()
    base = settings or PromptSettings(
        temperature=provider.temperature
        if provider.temperature is not None
        else defaults.temperature,
        max_tokens=provider.max_tokens
        if provider.max_tokens is not None
        else defaults.max_tokens,
        top_p=provider.top_p if provider.top_p is not None else defaults.top_p,
    )
    return {
        "temperature": temperature if temperature is not None else base.temperature,
        "max_tokens": max_tokens if max_tokens is not None else base.max_tokens,
        "top_p": top_p if top_p is not None else base.top_p,
    }


def _error_body_fields(raw: bytes) -> tuple[str | None, str | None]:
    """Pull ``error`` and ``details`` out of an upstream error body."""
    text = raw.decode("utf-8", errors="ignore").strip()
    if not text:
        return None, None
    try:
        data = _json.loads(text)
    except ValueError:
        return None, text[:500]
    if not isinstance(data, dict):
        return None, text[:500]

    error = data.get("error")
    if isinstance(error, dict):
        error = error.get("message") or _json.dumps(error)
    details = data.get("details")
    if details is not None and not isinstance(details, str):
        details = _json.dumps(details)
    return (str(error) if error else None), (details or None)


def compose_http_error_message(
    provider_name: str, status_code: int, reason: str, raw_body: bytes
) -> str:
    """User-facing message for a non-2xx answer, with hints for auth and quota codes."""
    error, details = _error_body_fields(raw_body)
    message = f"{provider_name} request failed"
    if error:
        message += f": {error}"
    if details:
        message += f" ({details})"
    message += STATUS_HINTS.get(status_code, "")
    if not error and not details:
        message += f": HTTP {status_code} {reason}".rstrip()
    return message


@asynccontextmanager
async def client_scope(
    client: httpx.AsyncClient | None, timeout_s: float | None = None
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the injected client untouched, or a short-lived one closed on exit."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=build_timeout(timeout_s)) as owned:
        yield owned


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300
