# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
# Purpose: Defines the providers unit so this responsibility stays isolated, testable, and easy to evolve.

"""
Pydantic models describing LLM backends and the wire dialect each one speaks.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator


class Dialect(str, Enum):
    """Request shape plus streaming event grammar of a backend."""

    OPENAI = "openai"
    LM_STUDIO = "lm_studio"
    TEXT_GENERATION_WEBUI = "text_generation_webui"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"
    GENERIC = "generic"

    @property
    def is_openai_family(self) -> bool:
        return self in OPENAI_FAMILY


OPENAI_FAMILY = frozenset(
    {Dialect.OPENAI, Dialect.LM_STUDIO, Dialect.TEXT_GENERATION_WEBUI}
)

# Used only to migrate stored providers that predate the explicit dialect field.
_LEGACY_NAME_MARKERS = (
    ("openai", Dialect.OPENAI),
    ("lm studio", Dialect.LM_STUDIO),
    ("text generation webui", Dialect.TEXT_GENERATION_WEBUI),
    ("anthropic", Dialect.ANTHROPIC),
    ("ollama", Dialect.OLLAMA),
)


def infer_dialect_from_name(name: str | None) -> Dialect:
    """Map a legacy display name to a dialect, defaulting to GENERIC."""
    lowered = (name or "").lower()
    for marker, dialect in _LEGACY_NAME_MARKERS:
        if marker in lowered:
            return dialect
    return Dialect.GENERIC


class ProviderPreset(BaseModel):
    name: str
    dialect: Dialect
    base_url: str
    requires_auth: bool


PROVIDER_PRESETS: Dict[str, ProviderPreset] = {
    "openai": ProviderPreset(
        name="OpenAI",
        dialect=Dialect.OPENAI,
        base_url="https://api.openai.com",
        requires_auth=True,
    ),
    "anthropic": ProviderPreset(
        name="Anthropic",
        dialect=Dialect.ANTHROPIC,
        base_url="https://api.anthropic.com",
        requires_auth=True,
    ),
    "lm_studio": ProviderPreset(
        name="LM Studio",
        dialect=Dialect.LM_STUDIO,
        base_url="http://localhost:1234",
        requires_auth=False,
    ),
    "ollama": ProviderPreset(
        name="Ollama",
        dialect=Dialect.OLLAMA,
        base_url="http://localhost:11434",
        requires_auth=False,
    ),
    "text_generation_webui": ProviderPreset(
        name="Text Generation WebUI",
        dialect=Dialect.TEXT_GENERATION_WEBUI,
        base_url="http://localhost:5000",
        requires_auth=False,
    ),
    "custom": ProviderPreset(
        name="Custom",
        dialect=Dialect.GENERIC,
        base_url="",
        requires_auth=True,
    ),
}


class ProviderDescriptor(BaseModel):
    """Identity and connection info for one LLM backend.

    ``api_key`` holds the *encrypted* credential. The streaming core treats
    descriptors as read-only snapshots.
    """

    id: str
    name: str
    dialect: Dialect
    base_url: str
    api_key: Optional[str] = None
    model: str
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    timeout_s: Optional[float] = None
    custom_headers: Dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    requires_auth: bool = False

    @model_validator(mode="before")
    @classmethod
    def _fill_legacy_dialect(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("dialect"):
            data = dict(data)
            data["dialect"] = infer_dialect_from_name(data.get("name"))
        return data


class ProviderCreateRequest(BaseModel):
    """Body for ``POST /api/v1/providers``; ``api_key`` is plaintext here."""

    name: Optional[str] = None
    preset: Optional[str] = None
    dialect: Optional[Dialect] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    model: str
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    timeout_s: Optional[float] = None
    custom_headers: Dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    requires_auth: Optional[bool] = None


class ProviderUpdateRequest(BaseModel):
    name: Optional[str] = None
    dialect: Optional[Dialect] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    timeout_s: Optional[float] = None
    custom_headers: Optional[Dict[str, str]] = None
    is_active: Optional[bool] = None
    requires_auth: Optional[bool] = None
