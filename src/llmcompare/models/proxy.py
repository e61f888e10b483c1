# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""
Pydantic models for the pass-through proxy endpoints.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ProxyStreamRequest(BaseModel):
    url: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    data: Dict[str, Any] = Field(default_factory=dict)


class ProxyCallRequest(BaseModel):
    url: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    data: Optional[Any] = None
    method: str = "POST"
