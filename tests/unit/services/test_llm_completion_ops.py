# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

import json
from unittest import IsolatedAsyncioTestCase

import httpx

from llmcompare.models.providers import Dialect, ProviderDescriptor
from llmcompare.models.responses import ResponseStatus
from llmcompare.services.exceptions import ConnectError, ProtocolError, UpstreamError
from llmcompare.services.llm.llm_completion_ops import complete_response


def make_provider(dialect, **overrides):
    values = {
        "id": "p1",
        "name": "P1",
        "dialect": dialect,
        "base_url": "http://fake",
        "model": "m",
    }
    values.update(overrides)
    return ProviderDescriptor(**values)


class CompleteResponseTest(IsolatedAsyncioTestCase):
    async def call(self, provider, handler, **kwargs):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await complete_response(provider, "Q?", client=client, **kwargs)

    async def test_openai_body(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": "Answer"}}],
                    "usage": {"prompt_tokens": 2, "completion_tokens": 3, "total_tokens": 5},
                },
            )

        record = await self.call(make_provider(Dialect.OPENAI), handler, response_id="fixed")
        self.assertIs(seen[0]["stream"], False)
        self.assertEqual(record.id, "fixed")
        self.assertEqual(record.content, "Answer")
        self.assertEqual(record.status, ResponseStatus.COMPLETED)
        self.assertFalse(record.is_streaming)
        self.assertEqual(record.token_usage.total_tokens, 5)
        self.assertAlmostEqual(record.cost, 0.00001)

    async def test_anthropic_joins_text_blocks(self):
        record = await self.call(
            make_provider(Dialect.ANTHROPIC),
            lambda request: httpx.Response(
                200,
                json={
                    "content": [{"type": "text", "text": "Hi "}, {"type": "text", "text": "there"}],
                    "usage": {"input_tokens": 4, "output_tokens": 6},
                },
            ),
        )
        self.assertEqual(record.content, "Hi there")
        self.assertEqual(record.token_usage.total_tokens, 10)

    async def test_ollama_response_field(self):
        record = await self.call(
            make_provider(Dialect.OLLAMA),
            lambda request: httpx.Response(
                200, json={"response": "AB", "done": True, "prompt_eval_count": 1, "eval_count": 2}
            ),
        )
        self.assertEqual(record.content, "AB")
        self.assertEqual(record.token_usage.completion_tokens, 2)

    async def test_generic_without_usage_has_no_cost(self):
        record = await self.call(
            make_provider(Dialect.GENERIC),
            lambda request: httpx.Response(200, json={"text": "plain"}),
        )
        self.assertEqual(record.content, "plain")
        self.assertIsNone(record.token_usage)
        self.assertIsNone(record.cost)

    async def test_non_2xx_raises_connect_error(self):
        with self.assertRaises(ConnectError) as ctx:
            await self.call(
                make_provider(Dialect.OPENAI),
                lambda request: httpx.Response(401, json={"error": "bad key"}),
            )
        self.assertIn("Check your API key", ctx.exception.detail)
        self.assertEqual(ctx.exception.upstream_status, 401)

    async def test_error_in_body_raises_protocol_error(self):
        with self.assertRaises(ProtocolError) as ctx:
            await self.call(
                make_provider(Dialect.OPENAI),
                lambda request: httpx.Response(200, json={"error": {"message": "nope"}}),
            )
        self.assertEqual(ctx.exception.detail, "P1 API Error: nope")

    async def test_non_json_body(self):
        with self.assertRaises(UpstreamError):
            await self.call(
                make_provider(Dialect.OPENAI),
                lambda request: httpx.Response(200, text="<html>"),
            )

    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with self.assertRaises(ConnectError):
            await self.call(make_provider(Dialect.OPENAI), handler)
