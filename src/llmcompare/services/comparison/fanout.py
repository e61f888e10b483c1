# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the fanout unit so this responsibility stays isolated, testable, and easy to evolve.

Runs one prompt against every active provider at once. Each provider gets its
own task; a failing or slow provider never holds up or breaks the others.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from llmcompare.core.config import get_runtime_settings
from llmcompare.models.providers import ProviderDescriptor
from llmcompare.models.responses import (
    GenerationRequest,
    PromptSettings,
    ResponseRecord,
    ResponseStatus,
    new_response_id,
    pending_record,
)
from llmcompare.services.comparison.response_store import ResponseStore
from llmcompare.services.credentials.credential_codec import CredentialCodec
from llmcompare.services.exceptions import (
    BadRequestError,
    BuildError,
    NotFoundError,
    ServiceError,
)
from llmcompare.services.llm.llm_completion_ops import complete_response
from llmcompare.services.llm.llm_request_helpers import (
    provider_timeout,
    resolve_generation_params,
)
from llmcompare.services.llm.llm_stream_ops import CANCELLED_MESSAGE, StreamAttempt
from llmcompare.services.llm.response_extraction import DEFAULT_COST_PER_1K_TOKENS

log = logging.getLogger(__name__)

FALLBACK_NOTE = (
    "\n\n_Note: This response used non-streaming fallback due to streaming issues._"
)


class ComparisonCoordinator:
    """Owns the fan-out of one prompt to many providers.

    ``client`` is an optional shared ``httpx.AsyncClient``; when omitted each
    provider call opens and closes its own client.
    """

    def __init__(
        self,
        store: ResponseStore,
        *,
        settings: Mapping[str, Any] | None = None,
        client: httpx.AsyncClient | None = None,
        codec: CredentialCodec | None = None,
    ):
        self.store = store
        self.settings: Dict[str, Any] = (
            dict(settings) if settings is not None else get_runtime_settings()
        )
        self.client = client
        self.codec = codec

    @property
    def fallback_enabled(self) -> bool:
        return bool(self.settings.get("streaming_fallback", True))

    @property
    def cost_per_1k_tokens(self) -> float:
        try:
            return float(
                self.settings.get("cost_per_1k_tokens", DEFAULT_COST_PER_1K_TOKENS)
            )
        except (TypeError, ValueError):
            return DEFAULT_COST_PER_1K_TOKENS

    # ------------------------------------------------------------------
    # runs
    # ------------------------------------------------------------------

    def start_request(
        self,
        prompt: str,
        system_prompt: str | None = None,
        settings: PromptSettings | None = None,
        providers: Sequence[ProviderDescriptor] | None = None,
    ) -> Tuple[GenerationRequest, List[ProviderDescriptor]]:
        """Publish a new request with one pending row per active provider."""
        if not prompt or not prompt.strip():
            raise BadRequestError("Prompt cannot be empty")
        if providers is None:
            providers = self.store.active_providers()
        active = [p for p in providers if p.is_active]
        if not active:
            raise BadRequestError("No active providers configured")

        request = GenerationRequest(
            prompt=prompt,
            system_prompt=system_prompt or None,
            settings=settings or self.store.prompt_settings,
            responses=[pending_record(p) for p in active],
        )
        self.store.start_request(request)
        log.info("Started request %s for %d provider(s)", request.id, len(active))
        return request, active

    async def run_request(
        self,
        request: GenerationRequest,
        providers: Sequence[ProviderDescriptor],
        use_streaming: bool = True,
    ) -> GenerationRequest:
        """Run every provider of a started request and return its final state."""
        await asyncio.gather(
            *(self._run_provider(request, p, use_streaming) for p in providers)
        )
        return self.store.get_request(request.id)

    async def run_all(
        self,
        prompt: str,
        system_prompt: str | None = None,
        settings: PromptSettings | None = None,
        providers: Sequence[ProviderDescriptor] | None = None,
        use_streaming: bool = True,
    ) -> GenerationRequest:
        request, active = self.start_request(prompt, system_prompt, settings, providers)
        return await self.run_request(request, active, use_streaming)

    async def rerun_provider(
        self,
        provider_id: str,
        prompt: str | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        top_p: float | None = None,
        use_streaming: bool = True,
    ) -> ResponseRecord:
        """Run one provider again inside the current request.

        Only that provider's row is replaced. ``prompt`` and ``system_prompt``
        are used only when there is no current request to rerun within.
        """
        provider = self.store.get_provider(provider_id)
        if model and model != provider.model:
            provider = self.store.update_provider(provider_id, model=model)

        request = self.store.current_request
        if request is None:
            if not prompt or not prompt.strip():
                raise BadRequestError("Prompt cannot be empty")
            request = GenerationRequest(
                prompt=prompt,
                system_prompt=system_prompt or None,
                settings=self.store.prompt_settings,
            )
            self.store.start_request(request)

        # A fresh row id cuts off any attempt still writing to the old row.
        self.store.upsert_response(request.id, pending_record(provider))
        return await self._run_provider(
            request,
            provider,
            use_streaming,
            temperature=temperature,
            max_tokens=max_tokens,
            top_p=top_p,
        )

    # ------------------------------------------------------------------
    # per provider
    # ------------------------------------------------------------------

    async def _run_provider(
        self,
        request: GenerationRequest,
        provider: ProviderDescriptor,
        use_streaming: bool,
        **overrides: Optional[float],
    ) -> ResponseRecord:
        """Never raises except for cancellation; always leaves a terminal row."""
        params = resolve_generation_params(provider, request.settings, **overrides)
        call_options: Dict[str, Any] = {
            **params,
            "client": self.client,
            "codec": self.codec,
            "timeout_s": provider_timeout(provider, self.settings),
            "cost_per_1k_tokens": self.cost_per_1k_tokens,
        }

        if not use_streaming:
            existing = self._open_row(request.id, provider.id)
            return await self._single_shot(
                request, provider, call_options, response_id=existing
            )

        attempt = StreamAttempt(
            self.store,
            request.id,
            provider,
            request.prompt,
            request.system_prompt,
            **call_options,
        )
        record = await attempt.run()
        failure = attempt.failure
        if failure is None or not self.fallback_enabled:
            return record
        if isinstance(failure, BuildError):
            return record
        if self._open_row(request.id, provider.id, include_terminal=True) != record.id:
            log.info(
                "Skipping fallback for %s: attempt %s was superseded",
                provider.name,
                record.id,
            )
            return record

        log.info(
            "Streaming from %s failed (%s), retrying without streaming",
            provider.name,
            failure.detail,
        )
        return await self._single_shot(
            request,
            provider,
            call_options,
            note=FALLBACK_NOTE,
            previous_error=failure.detail,
            replaces=record.id,
        )

    def _open_row(
        self, request_id: str, provider_id: str, include_terminal: bool = False
    ) -> Optional[str]:
        """Id of the provider's row in the request, if it is still usable."""
        try:
            request = self.store.get_request(request_id)
        except NotFoundError:
            return None
        row = request.response_for_provider(provider_id)
        if row is None or (row.is_terminal and not include_terminal):
            return None
        return row.id

    async def _single_shot(
        self,
        request: GenerationRequest,
        provider: ProviderDescriptor,
        call_options: Dict[str, Any],
        *,
        response_id: str | None = None,
        note: str = "",
        previous_error: str | None = None,
        replaces: str | None = None,
    ) -> ResponseRecord:
        started = time.monotonic()
        placeholder = ResponseRecord(
            id=response_id or new_response_id(provider.id),
            provider_id=provider.id,
            provider_name=provider.name,
            status=ResponseStatus.PENDING,
        )
        accepted = self.store.upsert_response(request.id, placeholder, replaces=replaces)
        if replaces is not None and not accepted:
            log.info("Row of %s was taken over, dropping fallback", provider.name)
            return placeholder

        def failed(message: str) -> ResponseRecord:
            record = placeholder.model_copy(
                update={
                    "status": ResponseStatus.ERROR,
                    "error": message,
                    "response_time": int((time.monotonic() - started) * 1000),
                }
            )
            self.store.upsert_response(request.id, record)
            return record

        try:
            result = await complete_response(
                provider,
                request.prompt,
                request.system_prompt,
                response_id=placeholder.id,
                **call_options,
            )
        except asyncio.CancelledError:
            failed(CANCELLED_MESSAGE)
            raise
        except ServiceError as exc:
            return failed(self._failure_message(exc.detail, previous_error))
        except Exception as exc:
            log.exception("Unexpected error in single-shot call to %s", provider.name)
            return failed(self._failure_message(f"{provider.name} error: {exc}", previous_error))

        record = result.model_copy(
            update={"content": result.content + note, "timestamp": placeholder.timestamp}
        )
        self.store.upsert_response(request.id, record)
        return record

    @staticmethod
    def _failure_message(message: str, previous_error: str | None) -> str:
        if previous_error is None:
            return message
        return f"{previous_error} (non-streaming fallback also failed: {message})"
