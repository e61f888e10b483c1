# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""End-to-end streamed attempts against a mocked HTTP transport."""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from unittest import IsolatedAsyncioTestCase

import httpx

from llmcompare.models.providers import Dialect, ProviderDescriptor
from llmcompare.models.responses import (
    GenerationRequest,
    ResponseRecord,
    ResponseStatus,
    pending_record,
)
from llmcompare.services.comparison.response_store import ResponseStore
from llmcompare.services.credentials.credential_codec import CredentialCodec
from llmcompare.services.exceptions import BuildError, ConnectError, ProtocolError
from llmcompare.services.llm.llm_logging import llm_logs
from llmcompare.services.llm.llm_stream_ops import (
    CANCELLED_MESSAGE,
    AttemptPhase,
    StreamAttempt,
)

SSE = {"content-type": "text/event-stream"}
CODEC = CredentialCodec("test-secret")


def sse_transport(chunks, status=200, headers=None, seen=None):
    async def handler(request):
        if seen is not None:
            seen.append(request)

        async def body():
            for chunk in chunks:
                yield chunk

        return httpx.Response(status, headers=headers or SSE, content=body())

    return httpx.MockTransport(handler)


class StreamAttemptTestBase(IsolatedAsyncioTestCase):
    dialect = Dialect.OPENAI

    def setUp(self):
        self.provider = ProviderDescriptor(
            id="p1",
            name="Provider One",
            dialect=self.dialect,
            base_url="http://fake",
            model="m-1",
        )
        self.store = ResponseStore()
        self.pending = pending_record(self.provider)
        self.request = GenerationRequest(prompt="Say hello", responses=[self.pending])
        self.store.start_request(self.request)
        self.updates = []
        self.store.subscribe(lambda _rid, rec: self.updates.append(rec))

    async def run_attempt(self, transport, provider=None):
        async with httpx.AsyncClient(transport=transport) as client:
            attempt = StreamAttempt(
                self.store,
                self.request.id,
                provider or self.provider,
                self.request.prompt,
                client=client,
                codec=CODEC,
                timeout_s=5,
            )
            record = await attempt.run()
        return attempt, record

    def stored(self) -> ResponseRecord:
        return self.store.current_request.response_for_provider(self.provider.id)

    def assert_monotonic(self):
        contents = [u.content for u in self.updates]
        for before, after in zip(contents, contents[1:]):
            self.assertTrue(after.startswith(before), (before, after))


class OpenAIStreamTest(StreamAttemptTestBase):
    async def test_two_chunks_split_mid_line(self):
        transport = sse_transport(
            [
                b'data: {"choices":[{"delta":{"content":"Hel',
                b'lo"}}]}}\n\ndata: [DONE]\n\n',
            ]
        )
        attempt, record = await self.run_attempt(transport)

        self.assertEqual(record.content, "Hello")
        self.assertEqual(record.status, ResponseStatus.COMPLETED)
        self.assertFalse(record.is_streaming)
        self.assertEqual(record.id, self.pending.id)
        self.assertEqual(attempt.phase, AttemptPhase.COMPLETED)
        self.assertIsNone(attempt.failure)
        self.assertEqual(self.stored(), record)
        self.assert_monotonic()

    async def test_every_delta_is_published(self):
        transport = sse_transport(
            [
                b'data: {"choices":[{"delta":{"content":"A"}}]}\n\n',
                b'data: {"choices":[{"delta":{"content":"B"}}]}\n\n',
                b"data: [DONE]\n\n",
            ]
        )
        await self.run_attempt(transport)
        streaming = [u.content for u in self.updates if u.status == ResponseStatus.STREAMING]
        self.assertEqual(streaming, ["", "A", "AB"])
        self.assertEqual(self.updates[-1].status, ResponseStatus.COMPLETED)
        self.assertEqual(sum(1 for u in self.updates if u.is_terminal), 1)

    async def test_corrupt_line_is_skipped(self):
        transport = sse_transport(
            [
                b'data: {"choices":[{"delta":{"content":"A"}}]}\n',
                b'data: {"choices":[{"delta":{"content":\n',
                b'data: {"choices":[{"delta":{"content":"B"}}]}\n',
                b"data: [DONE]\n",
            ]
        )
        _attempt, record = await self.run_attempt(transport)
        self.assertEqual(record.content, "AB")
        self.assertEqual(record.status, ResponseStatus.COMPLETED)
        self.assertIsNone(record.error)

    async def test_nothing_is_appended_after_done(self):
        transport = sse_transport(
            [
                b'data: {"choices":[{"delta":{"content":"A"}}]}\n\ndata: [DONE]\n\n',
                b'data: {"choices":[{"delta":{"content":"late"}}]}\n\n',
            ]
        )
        _attempt, record = await self.run_attempt(transport)
        self.assertEqual(record.content, "A")

    async def test_usage_and_cost(self):
        transport = sse_transport(
            [
                b'data: {"choices":[{"delta":{"content":"A"}}]}\n\n',
                b'data: {"choices":[],"usage":{"prompt_tokens":400,"completion_tokens":600,"total_tokens":1000}}\n\n',
                b"data: [DONE]\n\n",
            ]
        )
        _attempt, record = await self.run_attempt(transport)
        self.assertEqual(record.token_usage.total_tokens, 1000)
        self.assertAlmostEqual(record.cost, 0.002)

    async def test_outbound_request(self):
        seen = []
        await self.run_attempt(sse_transport([b"data: [DONE]\n\n"], seen=seen))
        self.assertEqual(len(seen), 1)
        self.assertEqual(str(seen[0].url), "http://fake/v1/chat/completions")
        body = json.loads(seen[0].content)
        self.assertIs(body["stream"], True)
        self.assertEqual(body["messages"][-1], {"role": "user", "content": "Say hello"})

    async def test_401_fails_with_api_key_hint(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(401, json={"error": {"message": "Invalid key"}})
        )
        attempt, record = await self.run_attempt(transport)
        self.assertEqual(record.status, ResponseStatus.ERROR)
        self.assertFalse(record.is_streaming)
        self.assertIn("Check your API key", record.error)
        self.assertTrue(record.error.startswith("Provider One request failed: Invalid key"))
        self.assertIsInstance(attempt.failure, ConnectError)
        self.assertEqual(attempt.failure.upstream_status, 401)
        self.assertEqual(attempt.phase, AttemptPhase.FAILED)
        self.assertEqual(self.stored().status, ResponseStatus.ERROR)

    async def test_status_without_body_reports_http_status(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        _attempt, record = await self.run_attempt(transport)
        self.assertEqual(
            record.error, "Provider One request failed: HTTP 503 Service Unavailable"
        )

    async def test_in_band_error_fails_attempt(self):
        transport = sse_transport(
            [
                b'data: {"choices":[{"delta":{"content":"par"}}]}\n\n',
                b'data: {"error":{"message":"context length exceeded"}}\n\n',
            ]
        )
        attempt, record = await self.run_attempt(transport)
        self.assertEqual(record.status, ResponseStatus.ERROR)
        self.assertEqual(record.error, "Provider One API Error: context length exceeded")
        self.assertEqual(record.content, "par")
        self.assertIsInstance(attempt.failure, ProtocolError)

    async def test_connection_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        attempt, record = await self.run_attempt(httpx.MockTransport(handler))
        self.assertEqual(record.status, ResponseStatus.ERROR)
        self.assertIn("connection failed", record.error)
        self.assertIsInstance(attempt.failure, ConnectError)

    async def test_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("too slow", request=request)

        _attempt, record = await self.run_attempt(httpx.MockTransport(handler))
        self.assertEqual(record.error, "Provider One timed out after 5s")

    async def test_whole_json_body_instead_of_stream(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": "All at once"}}],
                    "usage": {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3},
                },
            )
        )
        _attempt, record = await self.run_attempt(transport)
        self.assertEqual(record.content, "All at once")
        self.assertEqual(record.status, ResponseStatus.COMPLETED)
        self.assertEqual(record.token_usage.total_tokens, 3)

    async def test_build_error_never_reaches_the_network(self):
        seen = []
        provider = self.provider.model_copy(update={"requires_auth": True})
        attempt, record = await self.run_attempt(sse_transport([], seen=seen), provider)
        self.assertEqual(seen, [])
        self.assertIsInstance(attempt.failure, BuildError)
        self.assertEqual(record.status, ResponseStatus.ERROR)

    async def test_finished_row_gets_a_new_id(self):
        done = self.pending.model_copy(update={"status": ResponseStatus.COMPLETED})
        self.store.upsert_response(self.request.id, done)
        _attempt, record = await self.run_attempt(sse_transport([b"data: [DONE]\n\n"]))
        self.assertNotEqual(record.id, self.pending.id)
        self.assertEqual(len(self.store.current_request.responses), 1)
        self.assertEqual(self.stored().id, record.id)

    async def test_traffic_is_captured_with_redacted_key(self):
        llm_logs.clear()
        provider = self.provider.model_copy(update={"api_key": CODEC.encrypt("sk-secret")})
        await self.run_attempt(
            sse_transport([b'data: {"choices":[{"delta":{"content":"x"}}]}\n\ndata: [DONE]\n\n']),
            provider,
        )
        entry = llm_logs[-1]
        self.assertEqual(entry["request"]["headers"]["Authorization"], "***")
        self.assertEqual(entry["response"]["status_code"], 200)
        self.assertEqual(entry["response"]["full_content"], "x")
        self.assertIsNotNone(entry["timestamp_end"])

    async def test_dump_file_records_the_finished_exchange(self):
        with tempfile.TemporaryDirectory() as td:
            dump_path = Path(td) / "llm_raw.log"
            os.environ["LLMC_LLM_DUMP"] = "1"
            os.environ["LLMC_LLM_DUMP_PATH"] = str(dump_path)
            try:
                await self.run_attempt(
                    sse_transport(
                        [b'data: {"choices":[{"delta":{"content":"Hello"}}]}\n\ndata: [DONE]\n\n']
                    )
                )
            finally:
                os.environ.pop("LLMC_LLM_DUMP")
                os.environ.pop("LLMC_LLM_DUMP_PATH")
            dumped = dump_path.read_text(encoding="utf-8")

        self.assertIn('"full_content": "Hello"', dumped)
        self.assertIn('"status_code": 200', dumped)


class CancellationTest(StreamAttemptTestBase):
    async def test_cancel_publishes_error_and_reraises(self):
        never = asyncio.Event()
        first_delta = asyncio.Event()

        async def handler(request):
            async def body():
                yield b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
                await never.wait()
                yield b"data: [DONE]\n\n"

            return httpx.Response(200, headers=SSE, content=body())

        self.store.subscribe(
            lambda _rid, rec: first_delta.set() if rec.content == "Hel" else None
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            attempt = StreamAttempt(
                self.store, self.request.id, self.provider, "Say hello", client=client, codec=CODEC
            )
            task = asyncio.create_task(attempt.run())
            await asyncio.wait_for(first_delta.wait(), 2)
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task

        stored = self.stored()
        self.assertEqual(stored.status, ResponseStatus.ERROR)
        self.assertEqual(stored.error, CANCELLED_MESSAGE)
        self.assertEqual(stored.content, "Hel")
        self.assertEqual(attempt.phase, AttemptPhase.FAILED)


class AnthropicStreamTest(StreamAttemptTestBase):
    dialect = Dialect.ANTHROPIC

    async def test_typed_events(self):
        transport = sse_transport(
            [
                b"event: message_start\n"
                b'data: {"type":"message_start","message":{"usage":{"input_tokens":10}}}\n\n',
                b'data: {"type":"content_block_delta","delta":{"text":"Hi"}}\n\n',
                b'data: {"type":"content_block_delta","delta":{"text":" there"}}\n\n',
                b'data: {"type":"message_delta","usage":{"output_tokens":5}}\n\n',
                b'data: {"type":"message_stop"}\n\n',
            ]
        )
        _attempt, record = await self.run_attempt(transport)
        self.assertEqual(record.content, "Hi there")
        self.assertEqual(record.status, ResponseStatus.COMPLETED)
        self.assertEqual(record.token_usage.prompt_tokens, 10)
        self.assertEqual(record.token_usage.completion_tokens, 5)
        self.assertEqual(record.token_usage.total_tokens, 15)

    async def test_overloaded_event(self):
        transport = sse_transport(
            [b'data: {"type":"error","error":{"type":"overloaded_error","message":"Overloaded"}}\n\n']
        )
        _attempt, record = await self.run_attempt(transport)
        self.assertEqual(record.error, "Provider One API Error: Overloaded")

    async def test_403_hint(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(403, json={"error": {"message": "forbidden"}})
        )
        _attempt, record = await self.run_attempt(transport)
        self.assertIn("Access denied, check your API key permissions", record.error)


class OllamaStreamTest(StreamAttemptTestBase):
    dialect = Dialect.OLLAMA

    async def test_natural_close_without_marker(self):
        transport = sse_transport(
            [b'{"response":"A"}\n', b'{"response":"B"}'],
            headers={"content-type": "application/x-ndjson"},
        )
        _attempt, record = await self.run_attempt(transport)
        self.assertEqual(record.content, "AB")
        self.assertEqual(record.status, ResponseStatus.COMPLETED)

    async def test_429_hint(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(429, text="slow down"))
        _attempt, record = await self.run_attempt(transport)
        self.assertEqual(
            record.error,
            "Provider One request failed (slow down) - Rate limit exceeded or out of credits",
        )


class GenericStreamTest(StreamAttemptTestBase):
    dialect = Dialect.GENERIC

    async def test_mixed_framing_completes_when_stream_closes(self):
        transport = sse_transport(
            [
                b'data: {"content":"Bon',
                b'jour"}\n\n{"text":" le"}\n',
                b'{"delta":{"content":" monde"}}',
            ],
            headers={"content-type": "text/plain"},
        )
        attempt, record = await self.run_attempt(transport)
        self.assertEqual(record.content, "Bonjour le monde")
        self.assertEqual(record.status, ResponseStatus.COMPLETED)
        self.assertFalse(record.is_streaming)
        self.assertIsNone(record.error)
        self.assertEqual(attempt.phase, AttemptPhase.COMPLETED)
        self.assertEqual(self.stored(), record)
        self.assert_monotonic()

    async def test_done_marker_stops_reading(self):
        transport = sse_transport(
            [b'{"text":"x"}\ndata: [DONE]\n{"text":"late"}\n'],
            headers={"content-type": "text/plain"},
        )
        _attempt, record = await self.run_attempt(transport)
        self.assertEqual(record.content, "x")
        self.assertEqual(record.status, ResponseStatus.COMPLETED)
