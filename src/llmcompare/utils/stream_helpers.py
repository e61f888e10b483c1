# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the stream helpers unit so this responsibility stays isolated, testable, and easy to evolve.

Utility functions for handling server-sent events (SSE) and data streaming.
Includes stateful reassembly of newline-delimited text from raw byte chunks.
"""

import codecs
import json
from typing import Any, List, Optional


class LineReassembler:
    """Stateful splitter turning network chunks into complete text lines.

    Network chunk boundaries do not line up with message boundaries, so the
    trailing, possibly incomplete segment of every chunk is buffered until the
    next newline arrives. Decoding is incremental: a multi-byte UTF-8
    character split across two chunks is decoded only once both halves are in.
    """

    def __init__(self, encoding: str = "utf-8"):
        """Init  ."""
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self.buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one chunk and return the lines it completed."""
        if chunk:
            self.buffer += self._decoder.decode(chunk)
        if "\n" not in self.buffer:
            return []
        *complete, self.buffer = self.buffer.split("\n")
        return [_strip_cr(line) for line in complete]

    def flush(self) -> Optional[str]:
        """Return the final unterminated line, if any, exactly once."""
        self.buffer += self._decoder.decode(b"", final=True)
        remainder, self.buffer = _strip_cr(self.buffer), ""
        return remainder or None


def _strip_cr(line: str) -> str:
    return line[:-1] if line.endswith("\r") else line


def sse_event(payload: Any) -> str:
    """Serialize one payload as an SSE ``data:`` frame."""
    return f"data: {json.dumps(payload, default=str)}\n\n"
