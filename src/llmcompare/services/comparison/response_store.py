# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the response store unit so this responsibility stays isolated, testable, and easy to evolve.

The shared state every comparison attempt writes into: providers, the
current request, the bounded history, and the prompt settings.

All mutation goes through methods of ``ResponseStore``. None of them await,
so on a single event loop a mutation is never interleaved with another one
and concurrent attempts cannot lose each other's updates.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from llmcompare.models.providers import ProviderDescriptor
from llmcompare.models.responses import (
    GenerationRequest,
    PersistedState,
    PromptSettings,
    ResponseRecord,
    ResponseStatus,
)
from llmcompare.services.comparison.state_persistence import StatePersistence
from llmcompare.services.exceptions import BadRequestError, NotFoundError

log = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100
INTERRUPTED_MESSAGE = "Interrupted before completion"

Listener = Callable[[str, ResponseRecord], None]


def _merge_record(
    responses: List[ResponseRecord],
    record: ResponseRecord,
    replaces: Optional[str] = None,
) -> Optional[List[ResponseRecord]]:
    """Return the updated response list, or None when the update must be dropped.

    With ``replaces`` set, a new record may only take over a row still
    holding that id.
    """
    for index, existing in enumerate(responses):
        if existing.id == record.id:
            if existing == record:
                return responses
            if existing.is_terminal:
                return None
            updated = list(responses)
            updated[index] = record
            return updated

    # A new attempt takes over its provider's row in place.
    for index, existing in enumerate(responses):
        if existing.provider_id == record.provider_id:
            if replaces is not None and existing.id != replaces:
                return None
            updated = list(responses)
            updated[index] = record
            return updated
    return responses + [record]


def _interrupted(request: GenerationRequest) -> GenerationRequest:
    """Partial streaming state is not kept across restarts."""
    if all(r.is_terminal for r in request.responses):
        return request
    responses = [
        r
        if r.is_terminal
        else r.model_copy(
            update={
                "status": ResponseStatus.ERROR,
                "error": INTERRUPTED_MESSAGE,
                "is_streaming": False,
            }
        )
        for r in request.responses
    ]
    return request.model_copy(update={"responses": responses})


class ResponseStore:
    def __init__(
        self,
        persistence: StatePersistence | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self._persistence = persistence
        self.history_limit = max(1, int(history_limit))
        self._providers: List[ProviderDescriptor] = []
        self._history: List[GenerationRequest] = []
        self._current: Optional[GenerationRequest] = None
        # superseded record id -> id of the request it belonged to
        self._retired_ids: Dict[str, str] = {}
        self._listeners: List[Listener] = []
        self.prompt_settings = PromptSettings()
        self.system_prompt = ""
        self._load()

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        if self._persistence is None:
            return
        data = self._persistence.load()
        if not data:
            return
        try:
            state = PersistedState.model_validate(data)
        except ValidationError as exc:
            log.warning("Discarding invalid persisted state: %s", exc)
            return
        self._providers = list(state.providers)
        self._history = [_interrupted(r) for r in state.history][: self.history_limit]
        self.prompt_settings = state.prompt_settings
        self.system_prompt = state.system_prompt

    def snapshot(self) -> PersistedState:
        return PersistedState(
            providers=[p.model_copy() for p in self._providers],
            history=[r.model_copy(deep=True) for r in self._history],
            prompt_settings=self.prompt_settings.model_copy(),
            system_prompt=self.system_prompt,
        )

    def _save(self) -> None:
        if self._persistence is not None:
            self._persistence.save(self.snapshot().model_dump(mode="json"))

    # ------------------------------------------------------------------
    # observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener(request_id, record)``; returns the unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, request_id: str, record: ResponseRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(request_id, record)
            except Exception:
                log.exception("Response listener failed for request %s", request_id)

    # ------------------------------------------------------------------
    # providers
    # ------------------------------------------------------------------

    def list_providers(self) -> List[ProviderDescriptor]:
        return [p.model_copy() for p in self._providers]

    def active_providers(self) -> List[ProviderDescriptor]:
        return [p.model_copy() for p in self._providers if p.is_active]

    def _provider_index(self, provider_id: str) -> int:
        for index, provider in enumerate(self._providers):
            if provider.id == provider_id:
                return index
        raise NotFoundError(f"Provider not found: {provider_id}")

    def get_provider(self, provider_id: str) -> ProviderDescriptor:
        return self._providers[self._provider_index(provider_id)].model_copy()

    def add_provider(self, provider: ProviderDescriptor) -> ProviderDescriptor:
        if any(p.id == provider.id for p in self._providers):
            raise BadRequestError(f"Provider already exists: {provider.id}")
        self._providers.append(provider.model_copy())
        self._save()
        return provider.model_copy()

    def update_provider(self, provider_id: str, **updates: Any) -> ProviderDescriptor:
        index = self._provider_index(provider_id)
        merged = self._providers[index].model_dump()
        merged.update(updates)
        merged["id"] = provider_id
        try:
            provider = ProviderDescriptor.model_validate(merged)
        except ValidationError as exc:
            raise BadRequestError(f"Invalid provider update: {exc}") from exc
        self._providers[index] = provider
        self._save()
        return provider.model_copy()

    def remove_provider(self, provider_id: str) -> None:
        index = self._provider_index(provider_id)
        del self._providers[index]
        self._save()

    def toggle_provider(self, provider_id: str) -> ProviderDescriptor:
        index = self._provider_index(provider_id)
        current = self._providers[index]
        return self.update_provider(provider_id, is_active=not current.is_active)

    # ------------------------------------------------------------------
    # prompt settings
    # ------------------------------------------------------------------

    def update_prompt_settings(self, **updates: Any) -> PromptSettings:
        values = self.prompt_settings.model_dump()
        values.update({k: v for k, v in updates.items() if v is not None})
        self.prompt_settings = PromptSettings.model_validate(values)
        self._save()
        return self.prompt_settings.model_copy()

    def set_system_prompt(self, system_prompt: str) -> None:
        self.system_prompt = system_prompt or ""
        self._save()

    # ------------------------------------------------------------------
    # requests
    # ------------------------------------------------------------------

    @property
    def current_request(self) -> Optional[GenerationRequest]:
        return self._current.model_copy(deep=True) if self._current else None

    @property
    def history(self) -> List[GenerationRequest]:
        return [r.model_copy(deep=True) for r in self._history]

    def get_request(self, request_id: str) -> GenerationRequest:
        if self._current is not None and self._current.id == request_id:
            return self._current.model_copy(deep=True)
        for request in self._history:
            if request.id == request_id:
                return request.model_copy(deep=True)
        raise NotFoundError(f"Request not found: {request_id}")

    def _push_history(self, request: GenerationRequest) -> None:
        history = [r for r in self._history if r.id != request.id]
        self._history = [request] + history[: self.history_limit - 1]
        self._prune_retired()

    def _prune_retired(self) -> None:
        live = {r.id for r in self._history}
        if self._current is not None:
            live.add(self._current.id)
        self._retired_ids = {
            rid: req_id for rid, req_id in self._retired_ids.items() if req_id in live
        }

    def start_request(self, request: GenerationRequest) -> None:
        """Make ``request`` current and the newest history entry in one step."""
        self._current = request.model_copy(deep=True)
        self._push_history(request.model_copy(deep=True))
        self._save()

    def clear_history(self) -> None:
        self._history = []
        self._prune_retired()
        self._save()

    def upsert_response(
        self,
        request_id: str,
        record: ResponseRecord,
        replaces: Optional[str] = None,
    ) -> bool:
        """Insert or replace ``record`` by id in the current request and history.

        A record with a new id replaces the row of the same provider; with
        ``replaces`` given, only while that row still holds the ``replaces``
        id. Updates to a terminal record, or from an attempt whose row was
        taken over by a newer attempt, are dropped. Returns whether the state
        changed.
        """
        if record.id in self._retired_ids:
            log.debug("Dropping update from superseded attempt %s", record.id)
            return False

        targets: List[GenerationRequest] = []
        if self._current is not None and self._current.id == request_id:
            targets.append(self._current)
        targets.extend(r for r in self._history if r.id == request_id)
        if not targets:
            log.warning(
                "Ignoring response %s for unknown request %s", record.id, request_id
            )
            return False

        stored = record.model_copy()
        replacements: Dict[int, GenerationRequest] = {}
        for target in targets:
            merged = _merge_record(target.responses, stored, replaces)
            if merged is None:
                log.debug("Ignoring update to response %s", record.id)
                return False
            if merged is not target.responses:
                replacements[id(target)] = target.model_copy(
                    update={"responses": merged}
                )
        if not replacements:
            return False

        for target in targets:
            for existing in target.responses:
                if (
                    existing.provider_id == record.provider_id
                    and existing.id != record.id
                ):
                    self._retired_ids[existing.id] = request_id

        if self._current is not None and id(self._current) in replacements:
            self._current = replacements[id(self._current)]
        self._history = [replacements.get(id(r), r) for r in self._history]

        self._notify(request_id, stored)
        if stored.is_terminal:
            self._save()
        return True
