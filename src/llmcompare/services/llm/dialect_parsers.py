# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the dialect parsers unit so this responsibility stays isolated, testable, and easy to evolve.

One pure function per provider dialect. Each takes a single complete line of
a streamed response and returns a ``ParsedLine``: extracted text, the end of
stream marker, or a line to skip. Token usage blocks that some dialects send
along the way ride on the returned value.

A provider-reported error raises ``ProtocolError``. A line holding malformed
JSON is logged and skipped so one corrupt line never aborts a whole stream.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple
import json as _json
import logging

from llmcompare.models.providers import Dialect
from llmcompare.services.exceptions import ProtocolError

log = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"

# Tried in order; the first non-empty string wins.
GENERIC_TEXT_RULES: Tuple[Tuple[str, ...], ...] = (
    ("content",),
    ("text",),
    ("delta", "content"),
)


class LineKind(str, Enum):
    TEXT = "text"
    DONE = "done"
    SKIP = "skip"


@dataclass(frozen=True)
class ParsedLine:
    kind: LineKind
    text: str = ""
    usage: Optional[Dict[str, int]] = None

    @classmethod
    def of_text(cls, text: str, usage: Dict[str, int] | None = None) -> "ParsedLine":
        if not text:
            return cls(LineKind.SKIP, usage=usage)
        return cls(LineKind.TEXT, text=text, usage=usage)

    @classmethod
    def skip(cls, usage: Dict[str, int] | None = None) -> "ParsedLine":
        return cls(LineKind.SKIP, usage=usage)


DONE = ParsedLine(LineKind.DONE)
SKIP = ParsedLine(LineKind.SKIP)


def _data_payload(line: str) -> Optional[str]:
    """Return the payload of an SSE ``data:`` line, or None for other lines."""
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX) :].strip()


_DECODER = _json.JSONDecoder()


def _load_object(payload: str) -> Optional[Dict[str, Any]]:
    """Decode the leading JSON value of a payload; stray trailing bytes are ignored."""
    if payload in ("", "{}"):
        return None
    parsed, _end = _DECODER.raw_decode(payload)
    return parsed if isinstance(parsed, dict) and parsed else None


def _dig(obj: Any, path: Tuple[str, ...]) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def describe_error(error: Any) -> str:
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
        return _json.dumps(error)
    if isinstance(error, str):
        return error
    return _json.dumps(error)


def _int_or_none(value: Any) -> Optional[int]:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _usage(**counts: Any) -> Optional[Dict[str, int]]:
    usage = {k: v for k, v in counts.items() if _int_or_none(v) is not None}
    return usage or None


def _first_choice(obj: Dict[str, Any]) -> Dict[str, Any]:
    choices = obj.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def parse_openai_line(line: str) -> ParsedLine:
    """OpenAI, LM Studio and Text-Generation-WebUI chat completion chunks."""
    payload = _data_payload(line)
    if payload is None:
        return SKIP
    if payload == DONE_MARKER:
        return DONE
    obj = _load_object(payload)
    if obj is None:
        return SKIP

    raw_usage = obj.get("usage") if isinstance(obj.get("usage"), dict) else {}
    usage = _usage(
        prompt_tokens=raw_usage.get("prompt_tokens"),
        completion_tokens=raw_usage.get("completion_tokens"),
        total_tokens=raw_usage.get("total_tokens"),
    )

    choice = _first_choice(obj)
    content = _dig(choice, ("delta", "content"))
    if content is None:
        # LM Studio builds sometimes answer with whole messages or bare content.
        content = _dig(choice, ("message", "content"))
    if content is None:
        content = obj.get("content")
    if isinstance(content, str):
        return ParsedLine.of_text(content, usage)

    if obj.get("error"):
        raise ProtocolError(describe_error(obj["error"]))
    return ParsedLine.skip(usage)


def parse_anthropic_line(line: str) -> ParsedLine:
    """Anthropic Messages API typed SSE events."""
    payload = _data_payload(line)
    if payload is None:
        return SKIP
    obj = _load_object(payload)
    if obj is None:
        return SKIP

    event_type = obj.get("type")
    if obj.get("error") or event_type == "error":
        raise ProtocolError(describe_error(obj.get("error") or obj))

    if event_type == "content_block_delta":
        text = _dig(obj, ("delta", "text"))
        return ParsedLine.of_text(text if isinstance(text, str) else "")
    if event_type == "message_start":
        return ParsedLine.skip(
            _usage(prompt_tokens=_dig(obj, ("message", "usage", "input_tokens")))
        )
    if event_type == "message_delta":
        return ParsedLine.skip(
            _usage(completion_tokens=_dig(obj, ("usage", "output_tokens")))
        )
    # content_block_start/stop, message_stop, ping and unknown events carry no text.
    return SKIP


def parse_ollama_line(line: str) -> ParsedLine:
    """Ollama ``/api/generate`` newline-delimited JSON objects."""
    obj = _load_object(line.strip())
    if obj is None:
        return SKIP
    if obj.get("error"):
        raise ProtocolError(describe_error(obj["error"]))

    usage = None
    if obj.get("done"):
        prompt_tokens = _int_or_none(obj.get("prompt_eval_count"))
        completion_tokens = _int_or_none(obj.get("eval_count"))
        usage = _usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    text = obj.get("response")
    return ParsedLine.of_text(text if isinstance(text, str) else "", usage)


def parse_generic_line(line: str) -> ParsedLine:
    """Unknown JSON-over-HTTP backends, with or without SSE framing."""
    payload = _data_payload(line)
    if payload is None:
        payload = line.strip()
    if payload == DONE_MARKER:
        return DONE
    obj = _load_object(payload)
    if obj is None:
        return SKIP
    for rule in GENERIC_TEXT_RULES:
        value = _dig(obj, rule)
        if isinstance(value, str) and value:
            return ParsedLine.of_text(value)
    return SKIP


DIALECT_PARSERS: Dict[Dialect, Callable[[str], ParsedLine]] = {
    Dialect.OPENAI: parse_openai_line,
    Dialect.LM_STUDIO: parse_openai_line,
    Dialect.TEXT_GENERATION_WEBUI: parse_openai_line,
    Dialect.ANTHROPIC: parse_anthropic_line,
    Dialect.OLLAMA: parse_ollama_line,
    Dialect.GENERIC: parse_generic_line,
}


def parse_line(line: str, dialect: Dialect) -> ParsedLine:
    """Parse one complete line in the given dialect.

    Raises ProtocolError when the provider reports an error in-band.
    """
    if not line or not line.strip():
        return SKIP
    parser = DIALECT_PARSERS[Dialect(dialect)]
    try:
        return parser(line)
    except ValueError as exc:
        # json.JSONDecodeError is a ValueError; one bad line must not end the stream.
        log.warning("Skipping malformed %s stream line %r: %s", dialect, line[:200], exc)
        return SKIP
