"""TalkAI Avatar - FastAPI Application Entry Point.

Realtime session orchestration for voice chat with a lip-synced
streaming avatar.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from talkai import __version__
from talkai.api.routes import health, sessions, voice
from talkai.config.settings import get_settings
from talkai.observability.logging import get_logger, init_logging
from talkai.observability.metrics import set_build_info

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown of components.
    """
    settings = get_settings()
    init_logging(
        json_format=settings.environment == "production",
        level=settings.log_level,
    )
    logger.info(
        "talkai_starting",
        version=__version__,
        environment=settings.environment,
        port=settings.api_port,
    )

    try:
        set_build_info(__version__)

        session_manager = sessions.get_session_manager()
        health.set_component_health("session_manager", True)
        logger.info("session_manager_initialized", max_sessions=session_manager.max_sessions)

        health.set_component_health(
            "voice_credentials",
            bool(settings.hume_api_key and settings.hume_secret_key),
        )
        health.set_component_health(
            "avatar_credentials",
            bool(settings.heygen_api_key and settings.heygen_avatar_id),
        )
        health.set_component_health("history_store", settings.history_store_configured)

        health.set_ready(True)
        logger.info("talkai_ready", components=health.get_component_health())

    except Exception as e:
        logger.error("talkai_startup_failed", error=str(e))
        raise

    yield  # Application runs here

    logger.info("talkai_shutting_down")
    health.set_ready(False)

    session_manager = sessions.get_session_manager()
    ended_count = await session_manager.close(reason="shutdown")
    sessions.reset_session_manager()
    logger.info("sessions_ended", count=ended_count)

    logger.info("talkai_shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="TalkAI Avatar",
        description="Realtime voice sessions with a lip-synced streaming avatar",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
    )

    # The access-token route is fetched cross-origin by the browser client
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.environment == "development" else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(voice.router)
    app.include_router(sessions.router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, "WARNING" if settings.log_level == "WARN" else settings.log_level),
    )

    uvicorn.run(
        "talkai.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower().replace("warn", "warning"),
        reload=settings.environment == "development",
    )
