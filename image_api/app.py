"""
FastAPI application entry point for the image API.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from image_api.config import get_settings
from image_api.dependencies import (
    get_app_secrets,
    get_notification_bus,
    get_processing_watcher,
)
from image_api.routes import router, ws_router

logger = logging.getLogger(__name__)


async def _listen(bus) -> None:
    try:
        await bus.listen()
    except Exception:
        logger.exception("Notification listener stopped; cross-instance delivery is off")


@asynccontextmanager
async def lifespan(app: FastAPI):
    bus = get_notification_bus()
    listener = asyncio.create_task(_listen(bus), name="notification-listener")
    try:
        yield
    finally:
        listener.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await listener
        await get_processing_watcher().shutdown()
        await bus.close()


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


def create_app() -> FastAPI:
    settings = get_settings()
    secrets = get_app_secrets()

    app = FastAPI(title="Image Dashboard API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        SessionMiddleware,
        secret_key=secrets.require_session_secret(),
        session_cookie=settings.session_cookie_name,
        max_age=settings.session_max_age_seconds,
        same_site="lax",
        https_only=settings.cookie_secure,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.client_url.rstrip("/")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(ws_router)
    if not secrets.google_configured:
        logger.warning("Google OAuth credentials missing; sign-in is disabled")
    return app
