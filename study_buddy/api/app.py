"""
Study Buddy FastAPI application.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from study_buddy.api.middleware.rate_limit import RateLimitMiddleware
from study_buddy.api.responses import error_response
from study_buddy.api.routes import chat, feedback, health, privacy, sessions
from study_buddy.core.pipeline import StudyBuddyPipeline
from study_buddy.shared.config import settings
from study_buddy.shared.exceptions import (
    InvalidInputError,
    SafetyError,
    SessionError,
    UnauthorizedError,
    UpstreamUnavailableError,
)
from study_buddy.shared.logging import get_logger, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info("Starting Study Buddy API")

    pipeline: Optional[StudyBuddyPipeline] = getattr(app.state, "pipeline", None)
    if pipeline is None:
        pipeline = StudyBuddyPipeline.from_settings()
        app.state.pipeline = pipeline

    try:
        await pipeline.startup()
    except Exception as e:
        logger.warning("Knowledge seed load failed: %s", e)

    # Session health sweep and idle eviction
    monitor_task = asyncio.create_task(pipeline.monitor.run_forever())

    health.set_start_time(time.time())
    logger.info("Study Buddy API ready")
    yield

    logger.info("Shutting down Study Buddy API")
    await pipeline.shutdown()
    if not monitor_task.done():
        monitor_task.cancel()
        try:
            await monitor_task
        except asyncio.CancelledError:
            pass
    logger.info("Study Buddy API stopped")


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(InvalidInputError)
    async def invalid_input(request: Request, exc: InvalidInputError):
        return error_response(400, str(exc))

    @app.exception_handler(SafetyError)
    async def safety(request: Request, exc: SafetyError):
        return error_response(400, str(exc))

    @app.exception_handler(UnauthorizedError)
    async def unauthorized(request: Request, exc: UnauthorizedError):
        return error_response(403, str(exc))

    @app.exception_handler(SessionError)
    async def session_error(request: Request, exc: SessionError):
        return error_response(404, str(exc))

    @app.exception_handler(UpstreamUnavailableError)
    async def upstream(request: Request, exc: UpstreamUnavailableError):
        retry_after = exc.retry_after or 30
        logger.warning(f"Upstream unavailable: {str(exc)}", extra={"action": "upstream_unavailable"})
        return error_response(503, "Service temporarily unavailable", retry_after=retry_after)


def create_app(pipeline: Optional[StudyBuddyPipeline] = None) -> FastAPI:
    """Create and configure FastAPI application. A prebuilt pipeline skips from_settings()."""
    app = FastAPI(
        title="Study Buddy",
        description="AI study assistant with context, validation, feedback learning and personalization",
        version="0.1.0",
        lifespan=lifespan,
    )
    if pipeline is not None:
        app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Rate limiting (after CORS so CORS headers applied first)
    app.add_middleware(RateLimitMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(chat.router)
    app.include_router(feedback.router)
    app.include_router(sessions.router)
    app.include_router(privacy.router)

    # Root endpoint (rate limited, for liveness)
    @app.get("/")
    async def root():
        return {"service": "study-buddy", "status": "running"}

    return app


app = create_app()


def main():
    """CLI entry point for uvicorn."""
    import uvicorn

    setup_logging()
    uvicorn.run(
        "study_buddy.api.app:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
