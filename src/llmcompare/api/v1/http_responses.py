# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the http responses unit so this responsibility stays isolated, testable, and easy to evolve."""

from fastapi.responses import JSONResponse


def ok_json(status_code: int = 200, **extra: object) -> JSONResponse:
    body: dict[str, object] = {"ok": True}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)
