"""
FastAPI application entry point for the file storage service.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from filevault.config import Settings, get_settings
from filevault.dependencies import build_file_service
from filevault.errors import FileVaultError
from filevault.routes import router
from filevault.service import FileService

logger = logging.getLogger(__name__)


def _file_vault_error_handler(request: Request, exc: FileVaultError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [str(error.get("loc", ())[-1]) for error in exc.errors() if error.get("loc")]
    if "file" in fields:
        message = "No file provided"
    elif fields:
        message = f"Invalid value for {', '.join(fields)}"
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(
    settings: Optional[Settings] = None,
    file_service: Optional[FileService] = None,
) -> FastAPI:
    """
    Build the app. Storage backends are opened when the app starts and closed
    when it shuts down; pass ``file_service`` to supply them directly.
    """
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        service = file_service or build_file_service(settings)
        app.state.file_service = service
        try:
            yield
        finally:
            service.close()
            app.state.file_service = None

    app = FastAPI(title="File Vault", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )
    app.add_exception_handler(FileVaultError, _file_vault_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
