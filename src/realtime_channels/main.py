# src/realtime_channels/main.py
"""Main entry point for the realtime channels service."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from realtime_channels.api.v1 import system_router
from realtime_channels.api.v1.endpoints.system import collect_health
from realtime_channels.core.log_config import configure_logging
from realtime_channels.core.settings import settings
from realtime_channels.db.session import SessionLocal, check_connection
from realtime_channels.realtime.gateway import router as socket_router
from realtime_channels.realtime.runtime import ChatRuntime

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Realtime direct and group messaging over WebSockets",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include routers
app.include_router(system_router, prefix="/api/v1")
app.include_router(socket_router)


@app.on_event("startup")
async def on_startup() -> None:
    configure_logging()

    # A runtime may be installed ahead of time (tests, embedding).
    runtime: ChatRuntime | None = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = ChatRuntime(settings, SessionLocal)

    try:
        check_connection(runtime.session_factory)
    except Exception:
        logger.critical("Database is unreachable; refusing to start")
        raise
    logger.info("Database connection established")

    await runtime.start()
    app.state.runtime = runtime
    logger.info(
        "%s %s listening for sockets on %s",
        settings.app_name,
        settings.app_version,
        settings.socket_path,
    )


@app.on_event("shutdown")
async def on_shutdown() -> None:
    runtime: ChatRuntime | None = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.shutdown()
    app.state.runtime = None
    logger.info("Shutdown complete")


@app.get("/healthz")
async def health_check() -> JSONResponse:
    """Report database, Redis and socket health; 500 when degraded."""
    health = await collect_health(app.state.runtime)
    status_code = 200 if health["status"] == "ok" else 500
    return JSONResponse(status_code=status_code, content=health)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the service."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Realtime direct and group messaging over WebSockets",
        "socket": settings.socket_path,
        "health": "/healthz",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("realtime_channels.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
