# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the main unit so this responsibility stays isolated, testable, and easy to evolve.

Main application entry point for the LLM comparison API server.
Includes global configuration setup, error handling, and router registration.
"""

from __future__ import annotations

import argparse
import os
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from llmcompare.core.config import get_runtime_settings
from llmcompare.services.comparison.fanout import ComparisonCoordinator
from llmcompare.services.comparison.response_store import ResponseStore
from llmcompare.services.comparison.state_persistence import JsonFileStatePersistence
from llmcompare.services.credentials.credential_codec import CredentialCodec
from llmcompare.services.exceptions import ServiceError

# Import API routers
from llmcompare.api.v1.compare import router as compare_router  # noqa: E402
from llmcompare.api.v1.debug import router as debug_router  # noqa: E402
from llmcompare.api.v1.providers import router as providers_router  # noqa: E402
from llmcompare.api.v1.proxy import router as proxy_router  # noqa: E402


def create_app(
    store: Optional[ResponseStore] = None,
    coordinator: Optional[ComparisonCoordinator] = None,
    settings: Optional[Dict[str, Any]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Create the FastAPI app.

    Uvicorn's reload mode requires an import string; using an app factory keeps
    route registration consistent across reload subprocesses. Tests pass their
    own store, settings and a mock-transport ``http_client``.
    """
    settings = dict(settings) if settings is not None else get_runtime_settings()
    codec = CredentialCodec(str(settings["secret_key"]))
    if store is None:
        store = ResponseStore(
            JsonFileStatePersistence(settings["state_path"]),
            history_limit=int(settings.get("history_limit") or 100),
        )
    if coordinator is None:
        coordinator = ComparisonCoordinator(
            store, settings=settings, client=http_client, codec=codec
        )

    app = FastAPI(title="LLM Compare")
    app.state.settings = settings
    app.state.store = store
    app.state.coordinator = coordinator
    app.state.codec = codec
    app.state.http_client = http_client

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"http://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routers
    api_v1_router = APIRouter(prefix="/api/v1")
    api_v1_router.include_router(providers_router)
    api_v1_router.include_router(compare_router)
    api_v1_router.include_router(proxy_router)
    api_v1_router.include_router(debug_router)

    api_v1_router.add_api_route(
        "/health", endpoint=lambda: {"status": "ok"}, methods=["GET"]
    )

    app.include_router(api_v1_router)

    # --------------- global exception handler ---------------
    @app.exception_handler(ServiceError)
    async def _service_error_handler(
        _request: Request, exc: ServiceError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "detail": exc.detail},
        )

    return app


def build_arg_parser() -> argparse.ArgumentParser:
    """Build Arg Parser."""
    parser = argparse.ArgumentParser(
        prog="llmcompare",
        description="Run the LLM comparison FastAPI server",
    )
    parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port", type=int, default=8000, help="Port to bind (default: 8000)"
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload (development only)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of worker processes (overrides reload)",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug", "trace"],
        help="Log level for the server (default: info)",
    )
    parser.add_argument(
        "--llm-dump",
        action="store_true",
        help="Dump raw provider request/response data to a file",
    )
    parser.add_argument(
        "--llm-dump-path",
        default=None,
        help="Path for raw LLM dump file (overrides default)",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entrypoint to run the server via a normal Python invocation.

    Examples:
      llmcompare --help
      llmcompare --host 0.0.0.0 --port 8000 --reload
    """
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if args.llm_dump:
        os.environ["LLMC_LLM_DUMP"] = "1"
    if args.llm_dump_path:
        os.environ["LLMC_LLM_DUMP_PATH"] = args.llm_dump_path

    # Import uvicorn lazily so that importing this module doesn't require it for tests/tools
    import uvicorn  # type: ignore

    # Reload and multi-worker modes require an import string.
    uvicorn.run(
        "llmcompare.main:create_app",
        host=args.host,
        port=args.port,
        reload=bool(args.reload) if args.workers in (None, 0) else False,
        workers=args.workers,
        log_level=args.log_level,
        factory=True,
    )


if __name__ == "__main__":
    main()
