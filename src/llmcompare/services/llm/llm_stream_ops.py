# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the llm stream ops unit so this responsibility stays isolated, testable, and easy to evolve.

``StreamAttempt`` drives one streamed generation for one provider through
INIT, CONNECTING, RECEIVING and FINALIZING to COMPLETED. Any phase may end
in FAILED instead.

Every text delta is published to the response store as a whole new record
snapshot, so observers always see monotonically growing content. Exactly one
terminal record is published per attempt, whatever goes wrong.
"""

from __future__ import annotations

import asyncio
import json as _json
import logging
import time
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from llmcompare.models.providers import Dialect, ProviderDescriptor
from llmcompare.models.responses import (
    ResponseRecord,
    ResponseStatus,
    new_response_id,
    now_ms,
)
from llmcompare.services.comparison.response_store import ResponseStore
from llmcompare.services.credentials.credential_codec import CredentialCodec
from llmcompare.services.exceptions import (
    ConnectError,
    NotFoundError,
    ProtocolError,
    ServiceError,
    UpstreamError,
)
from llmcompare.services.llm.dialect_parsers import (
    LineKind,
    describe_error,
    parse_line,
)
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
from llmcompare.services.llm.request_builder import OutboundRequest, build_request
from llmcompare.services.llm.response_extraction import (
    DEFAULT_COST_PER_1K_TOKENS,
    estimate_cost,
    extract_content,
    extract_token_usage,
    merge_usage,
    usage_from_counts,
)
from llmcompare.utils.stream_helpers import LineReassembler

log = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Request cancelled"


class AttemptPhase(str, Enum):
    INIT = "init"
    CONNECTING = "connecting"
    RECEIVING = "receiving"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class StreamAttempt:
    """One streamed generation for one provider within one request.

    ``run`` never raises for provider or network failures; those end in an
    error record and are kept on ``failure`` so callers can decide whether a
    fallback is worth trying. Cancellation publishes an error record and is
    re-raised.
    """

    def __init__(
        self,
        store: ResponseStore,
        request_id: str,
        provider: ProviderDescriptor,
        prompt: str,
        system_prompt: str | None = None,
        *,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        top_p: float = 1.0,
        client: httpx.AsyncClient | None = None,
        codec: CredentialCodec | None = None,
        timeout_s: float | None = None,
        cost_per_1k_tokens: float = DEFAULT_COST_PER_1K_TOKENS,
    ):
        self.store = store
        self.request_id = request_id
        # Later edits to the provider do not affect an attempt already running.
        self.provider = provider.model_copy(deep=True)
        self.prompt = prompt
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.top_p = top_p
        self.timeout_s = timeout_s or DEFAULT_TIMEOUT_S
        self.cost_per_1k_tokens = cost_per_1k_tokens
        self._client = client
        self._codec = codec

        self.phase = AttemptPhase.INIT
        self.failure: Optional[ServiceError] = None
        self.record: Optional[ResponseRecord] = None
        self._content = ""
        self._usage: Optional[Dict[str, int]] = None
        self._started = 0.0
        self._log_entry: Optional[Dict[str, Any]] = None

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def _existing_record(self) -> Optional[ResponseRecord]:
        try:
            request = self.store.get_request(self.request_id)
        except NotFoundError:
            return None
        existing = request.response_for_provider(self.provider.id)
        if existing is None or existing.is_terminal:
            return None
        return existing

    def _initial_record(self) -> ResponseRecord:
        # Continue the provider's placeholder row; a finished row gets a new id.
        existing = self._existing_record()
        return ResponseRecord(
            id=existing.id if existing else new_response_id(self.provider.id),
            provider_id=self.provider.id,
            provider_name=self.provider.name,
            timestamp=existing.timestamp if existing else now_ms(),
            status=ResponseStatus.STREAMING,
            is_streaming=True,
        )

    def _publish(self, **updates: Any) -> ResponseRecord:
        assert self.record is not None
        self.record = self.record.model_copy(update=updates)
        self.store.upsert_response(self.request_id, self.record)
        return self.record

    async def run(self) -> ResponseRecord:
        """Run the attempt to its terminal record."""
        self._started = time.monotonic()
        self.record = self._initial_record()
        self.store.upsert_response(self.request_id, self.record)

        try:
            self.phase = AttemptPhase.CONNECTING
            outbound = build_request(
                self.provider,
                self.prompt,
                self.system_prompt,
                self.temperature,
                self.max_tokens,
                self.top_p,
                stream=True,
                codec=self._codec,
            )
            await self._stream(outbound)
        except asyncio.CancelledError:
            self._fail(UpstreamError(CANCELLED_MESSAGE))
            raise
        except ServiceError as exc:
            return self._fail(exc)
        except httpx.TimeoutException as exc:
            return self._fail(self._network_failure("timed out", exc))
        except httpx.HTTPError as exc:
            return self._fail(self._network_failure("connection failed", exc))
        except Exception as exc:
            log.exception("Unexpected error while streaming from %s", self.provider.name)
            return self._fail(UpstreamError(f"{self.provider.name} streaming error: {exc}"))
        return self._complete()

    def _network_failure(self, what: str, exc: Exception) -> ServiceError:
        if self.phase == AttemptPhase.RECEIVING:
            return UpstreamError(f"{self.provider.name} stream interrupted: {exc}")
        message = f"{self.provider.name} {what}"
        if isinstance(exc, httpx.TimeoutException):
            message += f" after {self.timeout_s:g}s"
        elif str(exc):
            message += f": {exc}"
        return ConnectError(message)

    async def _stream(self, outbound: OutboundRequest) -> None:
        self._log_entry = create_log_entry(
            outbound.url,
            outbound.method,
            outbound.headers,
            outbound.body,
            streaming=True,
            provider_name=self.provider.name,
        )
        add_llm_log(self._log_entry)

        async with client_scope(self._client, self.timeout_s) as client:
            async with client.stream(
                outbound.method,
                outbound.url,
                headers=outbound.headers,
                json=outbound.body,
                timeout=build_timeout(self.timeout_s),
            ) as resp:
                self._log_entry["response"]["status_code"] = resp.status_code
                if not is_success(resp.status_code):
                    raw = await resp.aread()
                    self._log_entry["response"]["body"] = raw.decode(
                        "utf-8", errors="replace"
                    )[:2000]
                    raise ConnectError(
                        compose_http_error_message(
                            self.provider.name,
                            resp.status_code,
                            resp.reason_phrase,
                            raw,
                        ),
                        upstream_status=resp.status_code,
                    )

                self.phase = AttemptPhase.RECEIVING
                if self._is_whole_body(resp):
                    await self._read_whole_body(resp)
                    self.phase = AttemptPhase.FINALIZING
                    return

                reassembler = LineReassembler()
                async for chunk in resp.aiter_bytes():
                    self._log_entry["response"]["chunk_count"] += 1
                    for line in reassembler.feed(chunk):
                        if self._consume_line(line):
                            self.phase = AttemptPhase.FINALIZING
                            return

                self.phase = AttemptPhase.FINALIZING
                tail = reassembler.flush()
                if tail is not None:
                    self._consume_line(tail)

    def _is_whole_body(self, resp: httpx.Response) -> bool:
        """Some servers ignore ``stream: true`` and answer with one JSON body."""
        content_type = resp.headers.get("content-type", "")
        if "application/json" not in content_type:
            return False
        return (
            self.provider.dialect.is_openai_family
            or self.provider.dialect == Dialect.ANTHROPIC
        )

    async def _read_whole_body(self, resp: httpx.Response) -> None:
        raw = await resp.aread()
        try:
            data = _json.loads(raw)
        except ValueError as exc:
            raise ProtocolError(
                f"{self.provider.name} returned an unreadable response body"
            ) from exc
        self._log_entry["response"]["body"] = data
        if isinstance(data, dict) and data.get("error"):
            raise ProtocolError(
                f"{self.provider.name} API Error: {describe_error(data['error'])}"
            )
        usage = extract_token_usage(self.provider.dialect, data)
        if usage is not None:
            self._usage = usage.model_dump()
        self._append(extract_content(self.provider.dialect, data))

    def _consume_line(self, line: str) -> bool:
        """Apply one complete line; True once the end-of-stream marker arrives."""
        self._log_entry["response"]["line_count"] += 1
        try:
            parsed = parse_line(line, self.provider.dialect)
        except ProtocolError as exc:
            raise ProtocolError(f"{self.provider.name} API Error: {exc.detail}") from exc
        self._usage = merge_usage(self._usage, parsed.usage)
        if parsed.kind == LineKind.DONE:
            return True
        if parsed.kind == LineKind.TEXT:
            self._append(parsed.text)
        return False

    def _append(self, text: str) -> None:
        if not text:
            return
        self._content += text
        self._log_entry["response"]["full_content"] = self._content
        self._publish(
            content=self._content,
            status=ResponseStatus.STREAMING,
            response_time=self.elapsed_ms,
            is_streaming=True,
        )

    def _complete(self) -> ResponseRecord:
        token_usage = None
        if self._usage:
            token_usage = usage_from_counts(
                self._usage.get("prompt_tokens"),
                self._usage.get("completion_tokens"),
                self._usage.get("total_tokens"),
            )
        self.phase = AttemptPhase.COMPLETED
        if self._log_entry is not None:
            finish_log_entry(self._log_entry)
        return self._publish(
            content=self._content,
            status=ResponseStatus.COMPLETED,
            response_time=self.elapsed_ms,
            token_usage=token_usage,
            cost=estimate_cost(token_usage, self.cost_per_1k_tokens),
            error=None,
            is_streaming=False,
        )

    def _fail(self, exc: ServiceError) -> ResponseRecord:
        self.phase = AttemptPhase.FAILED
        self.failure = exc
        log.info("%s attempt %s failed: %s", self.provider.name, self.record.id, exc.detail)
        if self._log_entry is not None:
            finish_log_entry(self._log_entry, error=exc.detail)
        return self._publish(
            status=ResponseStatus.ERROR,
            error=exc.detail,
            response_time=self.elapsed_ms,
            is_streaming=False,
        )
