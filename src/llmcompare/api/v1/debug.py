# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Inspection of the raw provider traffic captured during comparisons.

Every provider call, streamed or single-shot, leaves one entry in
``llm_logs`` with redacted request headers and the final response state.
"""

from typing import Optional

from fastapi import APIRouter

from llmcompare.services.llm.llm_logging import llm_logs

router = APIRouter(prefix="/debug", tags=["debug"])


@router.get("/llm_logs")
async def list_llm_logs(provider: Optional[str] = None):
    """Return captured calls, oldest first, optionally for one provider name."""
    if provider is None:
        return llm_logs
    return [entry for entry in llm_logs if entry.get("provider") == provider]


@router.delete("/llm_logs")
async def clear_llm_logs():
    """Clear the captured provider traffic."""
    llm_logs.clear()
    return {"status": "ok"}
