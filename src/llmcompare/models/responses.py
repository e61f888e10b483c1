# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
# Purpose: Defines the responses unit so this responsibility stays isolated, testable, and easy to evolve.

"""
Pydantic models for comparison requests and the per-provider response records.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from llmcompare.models.providers import ProviderDescriptor


def now_ms() -> int:
    return int(time.time() * 1000)


class ResponseStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ResponseStatus.COMPLETED, ResponseStatus.ERROR)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ResponseRecord(BaseModel):
    """Mutable result of one (request, provider) attempt.

    Records are replaced wholesale through the response store; a new attempt
    for the same provider always gets a new ``id``.
    """

    id: str
    provider_id: str
    provider_name: str
    content: str = ""
    timestamp: int = Field(default_factory=now_ms)
    response_time: int = 0
    token_usage: Optional[TokenUsage] = None
    cost: Optional[float] = None
    error: Optional[str] = None
    status: ResponseStatus = ResponseStatus.PENDING
    is_streaming: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


def new_response_id(provider_id: str) -> str:
    return f"{provider_id}-{now_ms()}-{uuid.uuid4().hex[:8]}"


def new_request_id() -> str:
    return f"req-{now_ms()}-{uuid.uuid4().hex[:8]}"


def pending_record(provider: ProviderDescriptor) -> ResponseRecord:
    return ResponseRecord(
        id=new_response_id(provider.id),
        provider_id=provider.id,
        provider_name=provider.name,
        status=ResponseStatus.PENDING,
    )


class PromptSettings(BaseModel):
    temperature: float = 0.7
    max_tokens: int = 1000
    top_p: float = 1.0


class GenerationRequest(BaseModel):
    """One user-issued comparison and its per-provider responses."""

    id: str = Field(default_factory=new_request_id)
    prompt: str
    system_prompt: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)
    settings: PromptSettings = Field(default_factory=PromptSettings)
    responses: List[ResponseRecord] = Field(default_factory=list)

    def response_for_provider(self, provider_id: str) -> Optional[ResponseRecord]:
        for record in self.responses:
            if record.provider_id == provider_id:
                return record
        return None


class PersistedState(BaseModel):
    """Shape of the single keyed blob owned by the persistence collaborator."""

    providers: List[ProviderDescriptor] = Field(default_factory=list)
    history: List[GenerationRequest] = Field(default_factory=list)
    prompt_settings: PromptSettings = Field(default_factory=PromptSettings)
    system_prompt: str = ""


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CompareRunRequest(BaseModel):
    prompt: str
    system_prompt: Optional[str] = None
    settings: Optional[PromptSettings] = None
    provider_ids: Optional[List[str]] = None
    use_streaming: bool = True


class RerunRequest(BaseModel):
    prompt: Optional[str] = None
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None


class PromptSettingsUpdateRequest(BaseModel):
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    system_prompt: Optional[str] = None
