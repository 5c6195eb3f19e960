"""
ASGI application factory for the gateway

The application is built once per supervisor, before the socket accepts
connections, so the probe routes exist from the first request on.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.routes import gateway, health
from core.exception_handling import ProxyError
from core.proxy import proxy_error_response

logger = logging.getLogger(__name__)


def create_app(supervisor: Any) -> FastAPI:
    """
    Build the FastAPI application for `supervisor`.

    Router order matters: probe routes first, then the catch-all dispatcher.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("LIFESPAN: gateway application started")
        try:
            yield
        finally:
            await supervisor.proxy.aclose()
            logger.info("LIFESPAN: proxy clients closed")

    app = FastAPI(
        title="HitchBuddy Gateway",
        description="Process supervisor and reverse proxy for the HitchBuddy deployable",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.supervisor = supervisor

    app.include_router(health.router)
    app.include_router(gateway.router)

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        logger.warning(f"PROXY: {exc}")
        return proxy_error_response(exc)

    @app.exception_handler(500)
    async def internal_server_error_handler(request: Request, exc: Exception):
        logger.error(f"Internal server error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "detail": "An unexpected error occurred"}
        )

    return app
