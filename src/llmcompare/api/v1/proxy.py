# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the proxy unit so this responsibility stays isolated, testable, and easy to evolve.

API endpoints that relay browser requests to provider endpoints.
"""

from typing import Any, Dict

import httpx
from fastapi import APIRouter, Depends

from llmcompare.api.v1.dependencies import get_http_client, get_settings
from llmcompare.models.proxy import ProxyCallRequest, ProxyStreamRequest
from llmcompare.services.llm.llm_request_helpers import DEFAULT_TIMEOUT_S
from llmcompare.services.proxy.proxy_ops import proxy_call, proxy_get, proxy_stream

router = APIRouter(prefix="/proxy", tags=["Proxy"])


def _timeout(settings: Dict[str, Any]) -> float:
    try:
        return float(settings.get("timeout_s") or DEFAULT_TIMEOUT_S)
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT_S


@router.post("/stream")
async def api_proxy_stream(
    body: ProxyStreamRequest,
    client: httpx.AsyncClient | None = Depends(get_http_client),
    settings: Dict[str, Any] = Depends(get_settings),
):
    return await proxy_stream(body, client=client, timeout_s=_timeout(settings))


@router.post("/call")
async def api_proxy_call(
    body: ProxyCallRequest,
    client: httpx.AsyncClient | None = Depends(get_http_client),
    settings: Dict[str, Any] = Depends(get_settings),
):
    return await proxy_call(body, client=client, timeout_s=_timeout(settings))


@router.get("/call")
async def api_proxy_get(
    url: str = "",
    headers: str | None = None,
    client: httpx.AsyncClient | None = Depends(get_http_client),
    settings: Dict[str, Any] = Depends(get_settings),
):
    return await proxy_get(url, headers, client=client, timeout_s=_timeout(settings))
