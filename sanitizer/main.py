"""
Article Sanitizer - FastAPI Application

Streams LLM rewrites of long articles using:
- Recursive chunking sized to the backend's context window
- OpenAI-compatible HTTP servers or on-device llama.cpp models
- Per-context sessions with cancellation and keepalive
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sanitizer.core.config import config
from sanitizer.core.sessions import SessionCoordinator
from sanitizer.services import ChunkOrchestrator, LlamaCppProvider, LlamaRuntime, SanitizeService
from sanitizer.api.routes import create_router, AppState

logger = logging.getLogger(__name__)


def create_app(runtime: LlamaRuntime | None = None) -> FastAPI:
    """Create and configure FastAPI application."""

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    # On-device model is loaded lazily on first use and kept in VRAM
    logger.info("[INIT] Preparing on-device runtime...")
    runtime = runtime or LlamaRuntime()

    logger.info("[INIT] Initializing sanitize service...")
    service = SanitizeService(
        coordinator=SessionCoordinator(),
        orchestrator=ChunkOrchestrator(),
        provider_options={LlamaCppProvider.id: {"runtime": runtime}},
    )
    state = AppState(service)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan event handler for startup/shutdown."""
        logger.info("[READY] Application started successfully")

        yield  # App is running

        # Shutdown - stop sessions and release VRAM
        logger.info("[SHUTDOWN] Releasing resources...")
        for session in state.coordinator.active_sessions:
            await state.coordinator.cancel(session.session_id, reason="shutdown")
        runtime.shutdown()
        logger.info("[SHUTDOWN] Done")

    app = FastAPI(
        title="Article Sanitizer",
        description="Streaming LLM orchestration for long articles",
        version="1.0",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routes
    app.include_router(create_router(state))

    return app


# Lazy initialization - only create app when needed
app: FastAPI | None = None


def get_app() -> FastAPI:
    """Get or create the FastAPI application."""
    global app
    if app is None:
        app = create_app()
    return app


def run() -> None:
    """Console entry point."""
    application = get_app()
    logger.info("[INFO] Starting server on http://%s:%d", config.host, config.port)
    uvicorn.run(
        application,
        host=config.host,
        port=config.port,
    )


if __name__ == "__main__":
    run()
