# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the llm completion ops unit so this responsibility stays isolated, testable, and easy to evolve.

Single-shot (``stream: false``) generation. Used when streaming is turned
off for a run and as the fallback after a failed streamed attempt.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict

import httpx

from llmcompare.models.providers import ProviderDescriptor
from llmcompare.models.responses import (
    ResponseRecord,
    ResponseStatus,
    new_response_id,
)
from llmcompare.services.credentials.credential_codec import CredentialCodec
from llmcompare.services.exceptions import ConnectError, ProtocolError, UpstreamError
from llmcompare.services.llm.dialect_parsers import describe_error
from llmcompare.services.llm.llm_logging import (
    add_llm_log,
    create_log_entry,
    finish_log_entry,
)
from llmcompare.services.llm.llm_request_helpers import (
    DEFAULT_TIMEOUT_S,
    build_timeout,
    client_scope,
    compose_http_error_message,
    is_success,
)
from llmcompare.services.llm.request_builder import build_request
from llmcompare.services.llm.response_extraction import (
    DEFAULT_COST_PER_1K_TOKENS,
    estimate_cost,
    extract_content,
    extract_token_usage,
)

log = logging.getLogger(__name__)


async def _execute_llm_request(
    client: httpx.AsyncClient | None,
    url: str,
    headers: Dict[str, str],
    body: Dict[str, Any],
    timeout_s: float,
    log_entry: Dict[str, Any],
    provider_name: str,
) -> httpx.Response:
    """POST the request body, turning transport errors into ConnectError."""
    try:
        async with client_scope(client, timeout_s) as http:
            resp = await http.post(
                url, headers=headers, json=body, timeout=build_timeout(timeout_s)
            )
    except httpx.TimeoutException as exc:
        finish_log_entry(log_entry, error=str(exc) or "timeout")
        raise ConnectError(f"{provider_name} timed out after {timeout_s:g}s") from exc
    except httpx.HTTPError as exc:
        finish_log_entry(log_entry, error=str(exc))
        raise ConnectError(f"{provider_name} connection failed: {exc}") from exc
    log_entry["response"]["status_code"] = resp.status_code
    return resp


async def complete_response(
    provider: ProviderDescriptor,
    prompt: str,
    system_prompt: str | None = None,
    *,
    temperature: float = 0.7,
    max_tokens: int = 1000,
    top_p: float = 1.0,
    response_id: str | None = None,
    client: httpx.AsyncClient | None = None,
    codec: CredentialCodec | None = None,
    timeout_s: float | None = None,
    cost_per_1k_tokens: float = DEFAULT_COST_PER_1K_TOKENS,
) -> ResponseRecord:
    """Generate one complete response and return it as a completed record.

    Raises BuildError for bad provider configuration, ConnectError for
    transport failures and non-2xx answers, ProtocolError when the provider
    reports an error in the body.
    """
    started = time.monotonic()
    timeout_s = timeout_s or DEFAULT_TIMEOUT_S
    outbound = build_request(
        provider,
        prompt,
        system_prompt,
        temperature,
        max_tokens,
        top_p,
        stream=False,
        codec=codec,
    )
    log_entry = create_log_entry(
        outbound.url,
        outbound.method,
        outbound.headers,
        outbound.body,
        streaming=False,
        provider_name=provider.name,
    )
    add_llm_log(log_entry)

    resp = await _execute_llm_request(
        client,
        outbound.url,
        outbound.headers,
        outbound.body,
        timeout_s,
        log_entry,
        provider.name,
    )
    if not is_success(resp.status_code):
        message = compose_http_error_message(
            provider.name, resp.status_code, resp.reason_phrase, resp.content
        )
        finish_log_entry(log_entry, body=resp.text[:2000], error=message)
        raise ConnectError(message, upstream_status=resp.status_code)

    try:
        data = resp.json()
    except ValueError as exc:
        finish_log_entry(log_entry, body=resp.text[:2000], error="non-JSON body")
        raise UpstreamError(f"{provider.name} returned a non-JSON response") from exc

    finish_log_entry(log_entry, body=data)
    if isinstance(data, dict) and data.get("error"):
        raise ProtocolError(f"{provider.name} API Error: {describe_error(data['error'])}")

    token_usage = extract_token_usage(provider.dialect, data)
    record = ResponseRecord(
        id=response_id or new_response_id(provider.id),
        provider_id=provider.id,
        provider_name=provider.name,
        content=extract_content(provider.dialect, data),
        response_time=int((time.monotonic() - started) * 1000),
        token_usage=token_usage,
        cost=estimate_cost(token_usage, cost_per_1k_tokens),
        status=ResponseStatus.COMPLETED,
        is_streaming=False,
    )
    log.debug("%s completed in %sms", provider.name, record.response_time)
    return record
