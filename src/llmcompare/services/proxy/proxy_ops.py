# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the proxy ops unit so this responsibility stays isolated, testable, and easy to evolve.

Server-side relay to provider endpoints for browser clients that cannot call
them directly (CORS). The streaming relay forwards the upstream body as is.
"""

from __future__ import annotations

import json as _json
import logging
from typing import Any, AsyncIterator, Dict, Mapping
from urllib.parse import urlparse

import httpx
from fastapi.responses import JSONResponse, StreamingResponse

from llmcompare.models.proxy import ProxyCallRequest, ProxyStreamRequest
from llmcompare.services.exceptions import BadRequestError
from llmcompare.services.llm.llm_logging import (
    add_llm_log,
    create_log_entry,
    finish_log_entry,
)
from llmcompare.services.llm.llm_request_helpers import (
    DEFAULT_TIMEOUT_S,
    build_timeout,
    client_scope,
    is_success,
)
from llmcompare.utils.stream_helpers import sse_event

log = logging.getLogger(__name__)

DROPPED_HEADERS = ("host", "origin", "referer", "content-length")

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, x-api-key, anthropic-version",
}


def clean_headers(headers: Mapping[str, str] | None) -> Dict[str, str]:
    """Outbound headers: JSON content type plus the caller's, minus browser-only ones."""
    result: Dict[str, str] = {"Content-Type": "application/json"}
    for key, value in (headers or {}).items():
        if key.lower() in DROPPED_HEADERS:
            continue
        if key.lower() == "content-type":
            result.pop("Content-Type", None)
        result[key] = value
    return result


def _require_url(url: str | None) -> str:
    if not url:
        raise BadRequestError("URL is required")
    scheme = urlparse(url).scheme
    if scheme not in ("http", "https"):
        raise BadRequestError(f"Invalid URL scheme: {scheme or url}")
    return url


def _failure_body(resp: httpx.Response, url: str) -> Dict[str, Any]:
    return {
        "error": f"API request failed: {resp.status_code} {resp.reason_phrase}".rstrip(),
        "details": resp.text,
        "url": url,
        "status": resp.status_code,
    }


def _unreachable(message: str, url: str, exc: Exception) -> JSONResponse:
    log.warning("%s for %s: %s", message, url, exc)
    return JSONResponse(
        status_code=502,
        content={"error": message, "details": str(exc) or type(exc).__name__, "url": url},
    )


async def _relay(
    upstream: httpx.Response,
    owned_client: httpx.AsyncClient | None,
    log_entry: Dict[str, Any],
) -> AsyncIterator[bytes]:
    """Forward upstream body chunks; always releases the upstream connection."""
    chunk_count = 0
    try:
        async for chunk in upstream.aiter_bytes():
            chunk_count += 1
            yield chunk
    except httpx.HTTPError as exc:
        log.warning("Upstream stream interrupted after %d chunks: %s", chunk_count, exc)
        log_entry["response"]["error"] = str(exc)
        yield sse_event({"error": "Streaming interrupted", "details": str(exc)}).encode(
            "utf-8"
        )
    finally:
        log_entry["response"]["chunk_count"] = chunk_count
        finish_log_entry(log_entry)
        await upstream.aclose()
        if owned_client is not None:
            await owned_client.aclose()


async def proxy_stream(
    payload: ProxyStreamRequest,
    client: httpx.AsyncClient | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
):
    """POST ``data`` with ``stream: true`` to ``url`` and relay the event stream."""
    url = _require_url(payload.url)
    headers = clean_headers(payload.headers)
    body = {**(payload.data or {}), "stream": True}

    log_entry = create_log_entry(url, "POST", headers, body, streaming=True)
    add_llm_log(log_entry)

    http = client or httpx.AsyncClient(timeout=build_timeout(timeout_s))
    owned = http if client is None else None
    try:
        upstream = await http.send(
            http.build_request(
                "POST", url, headers=headers, json=body, timeout=build_timeout(timeout_s)
            ),
            stream=True,
        )
    except httpx.HTTPError as exc:
        finish_log_entry(log_entry, error=str(exc))
        if owned is not None:
            await owned.aclose()
        return _unreachable("Streaming proxy request failed", url, exc)

    log_entry["response"]["status_code"] = upstream.status_code
    if not is_success(upstream.status_code):
        try:
            await upstream.aread()
        finally:
            await upstream.aclose()
            if owned is not None:
                await owned.aclose()
        content = _failure_body(upstream, url)
        content["provider"] = (payload.data or {}).get("model") or "unknown"
        finish_log_entry(log_entry, body=upstream.text[:2000], error=content["error"])
        return JSONResponse(status_code=upstream.status_code, content=content)

    return StreamingResponse(
        _relay(upstream, owned, log_entry),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


async def proxy_call(
    payload: ProxyCallRequest,
    client: httpx.AsyncClient | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> JSONResponse:
    """Forward one request and return the upstream JSON verbatim."""
    url = _require_url(payload.url)
    method = (payload.method or "POST").upper()
    headers = clean_headers(payload.headers)

    log_entry = create_log_entry(url, method, headers, payload.data)
    add_llm_log(log_entry)

    request_kwargs: Dict[str, Any] = {"headers": headers, "timeout": build_timeout(timeout_s)}
    if payload.data is not None:
        request_kwargs["json"] = payload.data
    try:
        async with client_scope(client, timeout_s) as http:
            resp = await http.request(method, url, **request_kwargs)
    except httpx.HTTPError as exc:
        finish_log_entry(log_entry, error=str(exc))
        return _unreachable("Proxy request failed", url, exc)

    return _json_answer(resp, url, log_entry)


async def proxy_get(
    url: str | None,
    headers_param: str | None = None,
    client: httpx.AsyncClient | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> JSONResponse:
    """GET variant used for model listings; headers arrive JSON-encoded."""
    url = _require_url(url)
    headers: Dict[str, str] = {}
    if headers_param:
        try:
            decoded = _json.loads(headers_param)
        except ValueError as exc:
            raise BadRequestError("headers must be a JSON object") from exc
        if not isinstance(decoded, dict):
            raise BadRequestError("headers must be a JSON object")
        headers = {str(k): str(v) for k, v in decoded.items()}
    headers = {
        k: v for k, v in clean_headers(headers).items() if k != "Content-Type"
    }

    log_entry = create_log_entry(url, "GET", headers, None)
    add_llm_log(log_entry)
    try:
        async with client_scope(client, timeout_s) as http:
            resp = await http.get(url, headers=headers, timeout=build_timeout(timeout_s))
    except httpx.HTTPError as exc:
        finish_log_entry(log_entry, error=str(exc))
        return _unreachable("Proxy request failed", url, exc)

    return _json_answer(resp, url, log_entry)


def _json_answer(
    resp: httpx.Response, url: str, log_entry: Dict[str, Any]
) -> JSONResponse:
    log_entry["response"]["status_code"] = resp.status_code
    if not is_success(resp.status_code):
        content = _failure_body(resp, url)
        finish_log_entry(log_entry, body=resp.text[:2000], error=content["error"])
        return JSONResponse(status_code=resp.status_code, content=content)
    try:
        content = resp.json()
    except ValueError:
        content = {"raw": resp.text}
    finish_log_entry(log_entry, body=content)
    return JSONResponse(status_code=200, content=content)
