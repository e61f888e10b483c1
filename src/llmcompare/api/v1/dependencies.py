# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the dependencies unit so this responsibility stays isolated, testable, and easy to evolve.

Accessors for the per-app singletons that ``create_app`` puts on ``app.state``.
"""

from __future__ import annotations

from typing import Any, Dict

import httpx
from fastapi import Request

from llmcompare.services.comparison.fanout import ComparisonCoordinator
from llmcompare.services.comparison.response_store import ResponseStore
from llmcompare.services.credentials.credential_codec import CredentialCodec


def get_store(request: Request) -> ResponseStore:
    return request.app.state.store


def get_coordinator(request: Request) -> ComparisonCoordinator:
    return request.app.state.coordinator


def get_codec(request: Request) -> CredentialCodec:
    return request.app.state.codec


def get_settings(request: Request) -> Dict[str, Any]:
    return request.app.state.settings


def get_http_client(request: Request) -> httpx.AsyncClient | None:
    return getattr(request.app.state, "http_client", None)
