# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Line reassembly across arbitrary chunk boundaries."""

import itertools
import json
from unittest import TestCase

from llmcompare.models.providers import Dialect
from llmcompare.services.llm.dialect_parsers import LineKind, parse_line
from llmcompare.utils.stream_helpers import LineReassembler, sse_event

OPENAI_TRANSCRIPT = (
    'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
    'data: {"choices":[{"delta":{"content":"Grüß "}}]}\n\n'
    'data: {"choices":[{"delta":{"content":"dich, "}}]}\n\n'
    'data: {"choices":[{"delta":{"content":"Welt 🌍"}}]}\n\n'
    "data: [DONE]\n\n"
).encode("utf-8")

ANTHROPIC_TRANSCRIPT = (
    "event: message_start\r\n"
    'data: {"type":"message_start","message":{"usage":{"input_tokens":3}}}\r\n\r\n'
    'data: {"type":"content_block_delta","delta":{"text":"Hi"}}\r\n\r\n'
    'data: {"type":"content_block_delta","delta":{"text":" thére"}}\r\n\r\n'
    'data: {"type":"message_stop"}\r\n\r\n'
).encode("utf-8")

OLLAMA_TRANSCRIPT = (
    '{"response":"A","done":false}\n{"response":"ß","done":false}\n{"response":"C","done":true}'
).encode("utf-8")

GENERIC_TRANSCRIPT = (
    'data: {"content":"Bon"}\n\n'
    '{"text":"jour "}\n'
    ": keep-alive\n"
    'data: {"delta":{"content":"à"}}\r\n\r\n'
    '{"token":"ignored"}\n'
    '{"content":" tous"}'
).encode("utf-8")


def reconstruct(chunks, dialect):
    reassembler = LineReassembler()
    text = ""

    def consume(line):
        nonlocal text
        parsed = parse_line(line, dialect)
        if parsed.kind == LineKind.TEXT:
            text += parsed.text
        return parsed.kind == LineKind.DONE

    for chunk in chunks:
        for line in reassembler.feed(chunk):
            if consume(line):
                return text
    tail = reassembler.flush()
    if tail is not None:
        consume(tail)
    return text


def split_at(data, offsets):
    bounds = [0, *offsets, len(data)]
    return [data[a:b] for a, b in zip(bounds, bounds[1:])]


class LineReassemblerTest(TestCase):
    def test_chunk_without_newline_only_buffers(self):
        r = LineReassembler()
        self.assertEqual(r.feed(b"data: par"), [])
        self.assertEqual(r.buffer, "data: par")
        self.assertEqual(r.feed(b"tial\nnext"), ["data: partial"])
        self.assertEqual(r.buffer, "next")

    def test_crlf_is_stripped(self):
        r = LineReassembler()
        self.assertEqual(r.feed(b"a\r\nb\r\n"), ["a", "b"])

    def test_flush_returns_remainder_once(self):
        r = LineReassembler()
        r.feed(b'{"response":"x"}')
        self.assertEqual(r.flush(), '{"response":"x"}')
        self.assertIsNone(r.flush())

    def test_flush_of_empty_buffer_is_none(self):
        r = LineReassembler()
        r.feed(b"line\n")
        self.assertIsNone(r.flush())

    def test_multibyte_character_split_across_chunks(self):
        encoded = "é🌍\n".encode("utf-8")
        r = LineReassembler()
        lines = []
        for i in range(len(encoded)):
            lines.extend(r.feed(encoded[i : i + 1]))
        self.assertEqual(lines, ["é🌍"])

    def test_empty_chunk_is_harmless(self):
        r = LineReassembler()
        self.assertEqual(r.feed(b""), [])


class SplitPointInvarianceTest(TestCase):
    def assert_invariant(self, transcript, dialect, expected):
        self.assertEqual(reconstruct([transcript], dialect), expected)
        for offset in range(1, len(transcript)):
            self.assertEqual(
                reconstruct(split_at(transcript, [offset]), dialect),
                expected,
                f"split at {offset}",
            )

    def test_openai_every_single_split(self):
        self.assert_invariant(OPENAI_TRANSCRIPT, Dialect.OPENAI, "Grüß dich, Welt 🌍")

    def test_anthropic_every_single_split(self):
        self.assert_invariant(ANTHROPIC_TRANSCRIPT, Dialect.ANTHROPIC, "Hi thére")

    def test_ollama_every_single_split(self):
        self.assert_invariant(OLLAMA_TRANSCRIPT, Dialect.OLLAMA, "AßC")

    def test_generic_every_single_split(self):
        self.assert_invariant(GENERIC_TRANSCRIPT, Dialect.GENERIC, "Bonjour à tous")

    def test_generic_done_marker_ends_the_stream(self):
        transcript = GENERIC_TRANSCRIPT.replace(b'{"token"', b'data: [DONE]\n{"token"')
        self.assert_invariant(transcript, Dialect.GENERIC, "Bonjour à")

    def test_openai_three_way_splits(self):
        step = 7
        for a, b in itertools.combinations(range(1, len(OPENAI_TRANSCRIPT), step), 2):
            self.assertEqual(
                reconstruct(split_at(OPENAI_TRANSCRIPT, [a, b]), Dialect.OPENAI),
                "Grüß dich, Welt 🌍",
            )

    def test_byte_by_byte(self):
        chunks = [OPENAI_TRANSCRIPT[i : i + 1] for i in range(len(OPENAI_TRANSCRIPT))]
        self.assertEqual(reconstruct(chunks, Dialect.OPENAI), "Grüß dich, Welt 🌍")

    def test_nothing_after_done_is_used(self):
        transcript = OPENAI_TRANSCRIPT + b'data: {"choices":[{"delta":{"content":"late"}}]}\n'
        self.assertEqual(reconstruct([transcript], Dialect.OPENAI), "Grüß dich, Welt 🌍")


class SseEventTest(TestCase):
    def test_frame_shape(self):
        frame = sse_event({"type": "done"})
        self.assertTrue(frame.startswith("data: "))
        self.assertTrue(frame.endswith("\n\n"))
        self.assertEqual(json.loads(frame[len("data: ") :]), {"type": "done"})
