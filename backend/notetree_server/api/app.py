"""
FastAPI application factory for the Notetree API.

This module creates the FastAPI app with:
- CORS configuration for the web client
- NodeService lifecycle management
- Node, sync and maintenance routes under /api/v1
- Translation of tree errors into HTTP responses
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..config import ServerConfig
from ..tree.errors import (
    ConcurrencyExhaustedError,
    CorruptTreeError,
    CycleDetectedError,
    InvalidKindError,
    InvalidParentError,
    NodeNotFoundError,
    TreeError,
)
from .routes import router
from .service import NodeService
from .settings import Settings

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[TreeError], int] = {
    NodeNotFoundError: 404,
    InvalidParentError: 400,
    InvalidKindError: 400,
    CycleDetectedError: 409,
    ConcurrencyExhaustedError: 503,
    CorruptTreeError: 500,
}


def status_for(exc: TreeError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage NodeService lifecycle."""
    service: NodeService = app.state.node_service
    await service.start()

    yield

    await service.close()


def create_app(
    config: ServerConfig | None = None,
    service: NodeService | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Server configuration (loaded from env if not provided)
        service: Prebuilt service, mainly for tests
        settings: HTTP settings (loaded from env if not provided)
    """
    settings = settings or Settings()
    if service is None:
        service = NodeService.from_config(config or ServerConfig.from_env())

    app = FastAPI(
        title="Notetree",
        description="Owner-scoped spaces, folders and pages over a document store.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.node_service = service
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TreeError)
    async def handle_tree_error(request: Request, exc: TreeError) -> JSONResponse:
        status = status_for(exc)
        headers = {}
        if exc.retryable:
            headers["Retry-After"] = str(settings.retry_after_seconds)
        if status >= 500:
            logger.warning(
                "Request failed",
                extra={"path": request.url.path, "error_code": exc.code, "status": status},
            )
        return JSONResponse(
            status_code=status,
            content={"error": exc.message, "error_code": exc.code, "details": exc.details},
            headers=headers,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": str(exc), "error_code": "INVALID_ARGUMENT", "details": {}},
        )

    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        status = await service.health()
        return {"status": "healthy" if status["healthy"] else "unhealthy", **status}

    return app
