# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the llm logging unit so this responsibility stays isolated, testable, and easy to evolve."""

from __future__ import annotations

import datetime
import json
import logging
import os
import uuid
from typing import Any, Dict, List

from llmcompare.core.config import LOGS_DIR

log = logging.getLogger(__name__)

MAX_LLM_LOGS = 100
SENSITIVE_HEADERS = ("authorization", "x-api-key")

# Global list to store LLM communication logs for the current session
llm_logs: List[Dict[str, Any]] = []


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: ("***" if k.lower() in SENSITIVE_HEADERS else v) for k, v in headers.items()}


def add_llm_log(log_entry: Dict[str, Any]):
    """Add a log entry to the global list, keeping only the last 100 entries.

    If LLMC_LLM_DUMP is set, also append the raw log to a file.
    """
    if log_entry not in llm_logs:
        llm_logs.append(log_entry)
        if len(llm_logs) > MAX_LLM_LOGS:
            llm_logs.pop(0)

    if os.getenv("LLMC_LLM_DUMP") == "1":
        _dump_entry(log_entry)


def _dump_entry(log_entry: Dict[str, Any]) -> None:
    log_path = os.getenv("LLMC_LLM_DUMP_PATH") or str(LOGS_DIR / "llm_raw.log")
    try:
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as f:
            f.write("=" * 80 + "\n")
            f.write(f"TIMESTAMP: {datetime.datetime.now().isoformat()}\n")
            f.write("-" * 80 + "\n")
            f.write(json.dumps(log_entry, indent=2, default=str) + "\n")
            f.write("=" * 80 + "\n\n")
    except OSError as exc:
        # Dev-only feature; a failed dump must not break a provider call.
        log.debug("Could not write LLM dump to %s: %s", log_path, exc)


def create_log_entry(
    url: str,
    method: str,
    headers: Dict[str, str],
    body: Any,
    streaming: bool = False,
    provider_name: str | None = None,
) -> Dict[str, Any]:
    """Create a new log entry structure with credentials masked."""
    safe_body = body
    if isinstance(body, dict):
        safe_body = body.copy()
        for key in ["api_key", "secret", "password"]:
            if key in safe_body:
                safe_body[key] = "REDACTED"

    return {
        "id": str(uuid.uuid4()),
        "provider": provider_name,
        "timestamp_start": datetime.datetime.now().isoformat(),
        "timestamp_end": None,
        "request": {
            "url": url,
            "method": method,
            "headers": redact_headers(headers),
            "body": safe_body,
        },
        "response": {
            "status_code": None,
            "streaming": streaming,
            "chunk_count": 0 if streaming else None,
            "full_content": "" if streaming else None,
            "line_count": 0 if streaming else None,
            "body": None,
            "error": None,
        },
    }


def finish_log_entry(log_entry: Dict[str, Any], **response: Any) -> None:
    """Stamp the end time and merge final response fields.

    With LLMC_LLM_DUMP set, the finished entry is appended to the dump file too.
    """
    log_entry["timestamp_end"] = datetime.datetime.now().isoformat()
    log_entry["response"].update(response)
    if os.getenv("LLMC_LLM_DUMP") == "1":
        _dump_entry(log_entry)
