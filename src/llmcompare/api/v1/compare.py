# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the compare unit so this responsibility stays isolated, testable, and easy to evolve.

API endpoints for running comparisons, following them live over SSE, and
browsing the request history.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from llmcompare.api.v1.dependencies import get_coordinator, get_store
from llmcompare.api.v1.http_responses import ok_json
from llmcompare.core.config import public_settings
from llmcompare.models.providers import ProviderDescriptor
from llmcompare.models.responses import (
    CompareRunRequest,
    GenerationRequest,
    PromptSettingsUpdateRequest,
    ResponseRecord,
    RerunRequest,
)
from llmcompare.services.comparison.fanout import ComparisonCoordinator
from llmcompare.services.comparison.response_store import ResponseStore
from llmcompare.utils.stream_helpers import sse_event

log = logging.getLogger(__name__)

router = APIRouter(tags=["Compare"])


def _selected_providers(
    store: ResponseStore, provider_ids: Optional[List[str]]
) -> Optional[List[ProviderDescriptor]]:
    if provider_ids is None:
        return None
    return [store.get_provider(pid) for pid in provider_ids]


@router.post("/compare")
async def api_compare(
    body: CompareRunRequest,
    store: ResponseStore = Depends(get_store),
    coordinator: ComparisonCoordinator = Depends(get_coordinator),
):
    """Run the prompt against all selected providers and return the finished request."""
    request = await coordinator.run_all(
        body.prompt,
        body.system_prompt,
        body.settings,
        _selected_providers(store, body.provider_ids),
        use_streaming=body.use_streaming,
    )
    return {"request": request.model_dump(mode="json")}


@router.post("/compare/stream")
async def api_compare_stream(
    body: CompareRunRequest,
    store: ResponseStore = Depends(get_store),
    coordinator: ComparisonCoordinator = Depends(get_coordinator),
) -> StreamingResponse:
    """Run the prompt and stream every response update as a server-sent event.

    Events: ``request`` (the pending request), ``response`` (one record
    snapshot per update) and finally ``done`` (the finished request).
    """
    request, providers = coordinator.start_request(
        body.prompt,
        body.system_prompt,
        body.settings,
        _selected_providers(store, body.provider_ids),
    )

    queue: asyncio.Queue[Optional[ResponseRecord]] = asyncio.Queue()

    def on_update(request_id: str, record: ResponseRecord) -> None:
        if request_id == request.id:
            queue.put_nowait(record)

    unsubscribe = store.subscribe(on_update)
    task = asyncio.create_task(
        coordinator.run_request(request, providers, use_streaming=body.use_streaming)
    )
    task.add_done_callback(lambda _task: queue.put_nowait(None))

    async def events() -> AsyncIterator[str]:
        try:
            yield sse_event({"type": "request", "request": request.model_dump(mode="json")})
            while True:
                record = await queue.get()
                if record is None:
                    break
                yield sse_event({"type": "response", "record": record.model_dump(mode="json")})
            final: GenerationRequest = task.result()
            yield sse_event({"type": "done", "request": final.model_dump(mode="json")})
        finally:
            unsubscribe()
            if not task.done():
                log.info("Client left request %s early, cancelling", request.id)
                task.cancel()

    return StreamingResponse(events(), media_type="text/event-stream")


@router.post("/compare/rerun/{provider_id}")
async def api_rerun_provider(
    provider_id: str,
    body: RerunRequest,
    use_streaming: bool = True,
    coordinator: ComparisonCoordinator = Depends(get_coordinator),
):
    record = await coordinator.rerun_provider(
        provider_id,
        prompt=body.prompt,
        system_prompt=body.system_prompt,
        model=body.model,
        temperature=body.temperature,
        max_tokens=body.max_tokens,
        top_p=body.top_p,
        use_streaming=use_streaming,
    )
    return {"record": record.model_dump(mode="json")}


@router.get("/compare/current")
async def api_current_request(store: ResponseStore = Depends(get_store)):
    current = store.current_request
    return {"request": current.model_dump(mode="json") if current else None}


@router.get("/history")
async def api_history(store: ResponseStore = Depends(get_store)):
    return {"history": [r.model_dump(mode="json") for r in store.history]}


@router.get("/history/{request_id}")
async def api_history_entry(request_id: str, store: ResponseStore = Depends(get_store)):
    return {"request": store.get_request(request_id).model_dump(mode="json")}


@router.delete("/history")
async def api_clear_history(store: ResponseStore = Depends(get_store)):
    store.clear_history()
    return ok_json()


@router.get("/settings")
async def api_get_settings(
    store: ResponseStore = Depends(get_store),
    coordinator: ComparisonCoordinator = Depends(get_coordinator),
):
    return {
        "prompt_settings": store.prompt_settings.model_dump(mode="json"),
        "system_prompt": store.system_prompt,
        "runtime": public_settings(coordinator.settings),
    }


@router.put("/settings")
async def api_update_settings(
    body: PromptSettingsUpdateRequest,
    store: ResponseStore = Depends(get_store),
):
    updates = body.model_dump(exclude_unset=True)
    system_prompt = updates.pop("system_prompt", None)
    prompt_settings = store.update_prompt_settings(**updates)
    if system_prompt is not None:
        store.set_system_prompt(system_prompt)
    return {
        "prompt_settings": prompt_settings.model_dump(mode="json"),
        "system_prompt": store.system_prompt,
    }
