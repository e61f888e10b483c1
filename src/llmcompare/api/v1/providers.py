# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the providers unit so this responsibility stays isolated, testable, and easy to evolve.

API endpoints for managing the configured LLM providers. API keys are
encrypted on the way in and never returned.
"""

from __future__ import annotations

import re
import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends

from llmcompare.api.v1.dependencies import get_codec, get_store
from llmcompare.api.v1.http_responses import ok_json
from llmcompare.models.providers import (
    PROVIDER_PRESETS,
    Dialect,
    ProviderCreateRequest,
    ProviderDescriptor,
    ProviderUpdateRequest,
)
from llmcompare.services.comparison.response_store import ResponseStore
from llmcompare.services.credentials.credential_codec import CredentialCodec
from llmcompare.services.exceptions import BadRequestError

router = APIRouter(tags=["Providers"])


def public_provider(provider: ProviderDescriptor) -> Dict[str, Any]:
    """Provider as sent to clients: the stored ciphertext is replaced by a flag."""
    data = provider.model_dump(mode="json", exclude={"api_key"})
    data["has_api_key"] = bool(provider.api_key)
    return data


def _new_provider_id(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "provider"
    return f"{slug}-{uuid.uuid4().hex[:8]}"


def _encrypt_or_none(codec: CredentialCodec, api_key: str | None) -> str | None:
    return codec.encrypt(api_key) if api_key else None


@router.get("/providers/presets")
async def api_list_presets() -> Dict[str, Any]:
    return {key: preset.model_dump(mode="json") for key, preset in PROVIDER_PRESETS.items()}


@router.get("/providers")
async def api_list_providers(store: ResponseStore = Depends(get_store)):
    return {"providers": [public_provider(p) for p in store.list_providers()]}


@router.post("/providers", status_code=201)
async def api_create_provider(
    body: ProviderCreateRequest,
    store: ResponseStore = Depends(get_store),
    codec: CredentialCodec = Depends(get_codec),
):
    """Add a provider, filling unset fields from the chosen preset."""
    preset = None
    if body.preset:
        preset = PROVIDER_PRESETS.get(body.preset)
        if preset is None:
            raise BadRequestError(f"Unknown provider preset: {body.preset}")

    name = body.name or (preset.name if preset else "")
    if not name:
        raise BadRequestError("Provider name is required")
    requires_auth = body.requires_auth
    if requires_auth is None:
        requires_auth = preset.requires_auth if preset else False

    provider = ProviderDescriptor(
        id=_new_provider_id(name),
        name=name,
        dialect=body.dialect or (preset.dialect if preset else Dialect.GENERIC),
        base_url=body.base_url or (preset.base_url if preset else ""),
        api_key=_encrypt_or_none(codec, body.api_key),
        model=body.model,
        max_tokens=body.max_tokens,
        temperature=body.temperature,
        top_p=body.top_p,
        timeout_s=body.timeout_s,
        custom_headers=body.custom_headers,
        is_active=body.is_active,
        requires_auth=requires_auth,
    )
    if not provider.base_url:
        raise BadRequestError("Provider base_url is required")
    return {"provider": public_provider(store.add_provider(provider))}


@router.get("/providers/{provider_id}")
async def api_get_provider(provider_id: str, store: ResponseStore = Depends(get_store)):
    return {"provider": public_provider(store.get_provider(provider_id))}


@router.put("/providers/{provider_id}")
async def api_update_provider(
    provider_id: str,
    body: ProviderUpdateRequest,
    store: ResponseStore = Depends(get_store),
    codec: CredentialCodec = Depends(get_codec),
):
    updates = body.model_dump(exclude_unset=True)
    if "api_key" in updates:
        # An empty string clears the stored key.
        updates["api_key"] = _encrypt_or_none(codec, updates["api_key"])
    provider = store.update_provider(provider_id, **updates)
    return {"provider": public_provider(provider)}


@router.delete("/providers/{provider_id}")
async def api_delete_provider(provider_id: str, store: ResponseStore = Depends(get_store)):
    store.remove_provider(provider_id)
    return ok_json()


@router.post("/providers/{provider_id}/toggle")
async def api_toggle_provider(provider_id: str, store: ResponseStore = Depends(get_store)):
    return {"provider": public_provider(store.toggle_provider(provider_id))}
