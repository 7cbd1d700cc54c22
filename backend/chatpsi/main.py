"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .config import get_settings
from .errors import ChatError, InvalidRequest
from .routes import dispatch, media, messages, websocket
from .services.dispatch import reset_dispatch_gateway
from .services.processor import get_processor_client, shutdown_processor_client
from .services.realtime import get_notifier, shutdown_notifier
from .services.uploads import reset_uploader
from .storage.database import get_db_manager, shutdown_database


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the message store and processor client; release them on shutdown."""

    app_settings = get_settings()
    logger.info("Starting ChatPsi gateway with processor=%s", app_settings.processor.url)

    await get_db_manager()
    await get_processor_client()
    get_notifier()
    yield

    shutdown_notifier()
    reset_dispatch_gateway()
    reset_uploader()
    await shutdown_processor_client()
    await shutdown_database()
    logger.info("Stopping ChatPsi gateway")


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.code.value)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = InvalidRequest("Invalid request body", details={"errors": _describe_validation_errors(exc)})
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


def _describe_validation_errors(exc: RequestValidationError) -> list[str]:
    return [
        ".".join(str(part) for part in err.get("loc", ())) + ": " + str(err.get("msg", ""))
        for err in exc.errors()
    ]


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app_settings = get_settings()
    logging.getLogger("chatpsi").setLevel(app_settings.log_level.upper())

    app = FastAPI(title="ChatPsi", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-webhook-secret"],
    )
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.include_router(dispatch.router)
    app.include_router(messages.router)
    app.include_router(media.router)
    app.include_router(websocket.router)

    media_root = app_settings.media_root
    media_root.mkdir(parents=True, exist_ok=True)
    app.mount("/media", StaticFiles(directory=media_root), name="media")

    return app
