# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the request builder unit so this responsibility stays isolated, testable, and easy to evolve.

Builds the outbound URL, headers and JSON body for a provider's dialect. The
streaming and the single-shot fallback paths share this builder and differ
only in the ``stream`` flag.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from llmcompare.models.providers import Dialect, ProviderDescriptor
from llmcompare.services.credentials.credential_codec import (
    CredentialCodec,
    default_codec,
)
from llmcompare.services.exceptions import BuildError, ConfigurationError

ANTHROPIC_VERSION = "2023-06-01"


@dataclass
class OutboundRequest:
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]
    dialect: Dialect
    method: str = "POST"


def _resolve_api_key(
    provider: ProviderDescriptor, codec: CredentialCodec | None
) -> str | None:
    """Decrypt the stored credential; the plaintext lives only in the returned headers."""
    if not provider.api_key:
        if provider.requires_auth:
            raise BuildError(
                f"{provider.name} requires an API key but none is configured"
            )
        return None
    try:
        return (codec or default_codec()).decrypt(provider.api_key)
    except ConfigurationError as exc:
        raise BuildError(f"{provider.name}: {exc.detail}") from exc


def _base_headers(provider: ProviderDescriptor, **defaults: str) -> Dict[str, str]:
    headers: Dict[str, str] = {"Content-Type": "application/json"}
    headers.update(defaults)
    headers.update(provider.custom_headers or {})
    return headers


def _openai_request(provider, api_key, prompt, system_prompt, params, stream):
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})

    extra_headers: Dict[str, str] = {}
    if stream and provider.dialect == Dialect.LM_STUDIO:
        extra_headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
    headers = _base_headers(provider, **extra_headers)
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    body = {
        "model": provider.model,
        "messages": messages,
        "temperature": params["temperature"],
        "max_tokens": params["max_tokens"],
        "top_p": params["top_p"],
        "stream": stream,
    }
    return _join(provider.base_url, "/v1/chat/completions"), headers, body


def _anthropic_request(provider, api_key, prompt, system_prompt, params, stream):
    if not prompt or not prompt.strip():
        raise BuildError("Prompt cannot be empty for Anthropic")

    defaults = {"anthropic-version": ANTHROPIC_VERSION}
    if stream:
        defaults.update({"Accept": "text/event-stream", "Cache-Control": "no-cache"})
    headers = _base_headers(provider, **defaults)
    if api_key:
        headers["x-api-key"] = api_key

    body: Dict[str, Any] = {
        "model": provider.model,
        "max_tokens": params["max_tokens"],
        "temperature": params["temperature"],
        "top_p": params["top_p"],
        "stream": stream,
        "messages": [{"role": "user", "content": prompt}],
    }
    if system_prompt:
        body["system"] = system_prompt
    return _join(provider.base_url, "/v1/messages"), headers, body


def _ollama_request(provider, api_key, prompt, system_prompt, params, stream):
    headers = _base_headers(provider)
    body = {
        "model": provider.model,
        "prompt": f"{system_prompt}\n\n{prompt}" if system_prompt else prompt,
        "stream": stream,
        "options": {
            "temperature": params["temperature"],
            "num_predict": params["max_tokens"],
            "top_p": params["top_p"],
        },
    }
    return _join(provider.base_url, "/api/generate"), headers, body


def _generic_request(provider, api_key, prompt, system_prompt, params, stream):
    headers = _base_headers(provider)
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    body = {
        "prompt": prompt,
        "system_prompt": system_prompt,
        "temperature": params["temperature"],
        "max_tokens": params["max_tokens"],
        "top_p": params["top_p"],
        "stream": stream,
    }
    return provider.base_url, headers, body


_BUILDERS = {
    Dialect.OPENAI: _openai_request,
    Dialect.LM_STUDIO: _openai_request,
    Dialect.TEXT_GENERATION_WEBUI: _openai_request,
    Dialect.ANTHROPIC: _anthropic_request,
    Dialect.OLLAMA: _ollama_request,
    Dialect.GENERIC: _generic_request,
}


def _join(base_url: str, path: str) -> str:
    return str(base_url).rstrip("/") + path


def build_request(
    provider: ProviderDescriptor,
    prompt: str,
    system_prompt: str | None,
    temperature: float,
    max_tokens: int,
    top_p: float,
    *,
    stream: bool = True,
    codec: CredentialCodec | None = None,
) -> OutboundRequest:
    """Build the outbound request for ``provider``.

    Raises BuildError for malformed provider configuration or for dialect
    preconditions (e.g. an empty prompt for Anthropic).
    """
    if not provider.base_url:
        raise BuildError(f"{provider.name} has no API URL configured")
    if provider.dialect != Dialect.GENERIC and not provider.model:
        raise BuildError(f"{provider.name} has no model configured")

    api_key = _resolve_api_key(provider, codec)
    params = {"temperature": temperature, "max_tokens": max_tokens, "top_p": top_p}
    url, headers, body = _BUILDERS[provider.dialect](
        provider, api_key, prompt, system_prompt, params, stream
    )
    return OutboundRequest(url=url, headers=headers, body=body, dialect=provider.dialect)
