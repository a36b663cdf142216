from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reflective_auth.api.error_handling import register_exception_handlers
from reflective_auth.api.routes import router
from reflective_auth.config import Settings, get_settings
from reflective_auth.logging import get_logger, set_correlation_id
from reflective_auth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the runtime's store connections on startup, release them on shutdown."""
    runtime: Runtime = app.state.runtime
    await runtime.connect()
    logger.info("app_started", version=__version__)
    try:
        yield
    finally:
        await runtime.close()
        logger.info("runtime_cleanup_complete")


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the application.

    Serve with ``uvicorn --factory reflective_auth.app:create_app``. Tests pass
    a pre-built :class:`Runtime` whose collaborators are in-memory.
    """
    settings = settings or (runtime.settings if runtime else get_settings())
    app = FastAPI(title="Reflective Pomodoro Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime or Runtime(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with the client's X-Request-ID, or a fresh one."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request):
        runtime: Runtime = request.app.state.runtime
        try:
            checks = await asyncio.wait_for(runtime.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            checks = {"identity_store": "unavailable", "challenge_store": "unavailable"}
        healthy = all(value == "ok" for value in checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "checks": checks,
                "version": __version__,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    return app
