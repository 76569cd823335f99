"""
FastAPI application for the media digest service.
"""

import asyncio
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from media_digest.config import config
from media_digest.api.routes import health_router, router
from media_digest.core.orchestrator import SummaryOrchestrator, create_orchestrator
from media_digest.utils.error_handling import (
    GENERIC_ERROR_MESSAGE,
    MediaDigestError,
    http_status_for,
    user_message,
)
from media_digest.utils.logger import logging

STALE_SWEEP_INTERVAL_SECONDS = 60


async def sweep_stale_streams(orchestrator: SummaryOrchestrator, interval: float = STALE_SWEEP_INTERVAL_SECONDS):
    """Reclaim abandoned media streams until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            reclaimed = await orchestrator.cleanup_stale()
        except MediaDigestError as e:
            logging.error(f"Stale stream sweep failed: {e.message}")
            continue
        if reclaimed:
            logging.info(f"Reclaimed {reclaimed} stale streams")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the services on startup and release every in-flight stream on shutdown."""
    orchestrator = create_orchestrator()
    app.state.orchestrator = orchestrator
    sweeper = asyncio.create_task(sweep_stale_streams(orchestrator))
    logging.info(f"{config.APP_NAME} v{config.APP_VERSION} started")

    try:
        yield
    finally:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
        try:
            await asyncio.wait_for(orchestrator.cleanup_all(), timeout=config.SHUTDOWN_TIMEOUT_SECONDS)
            logging.info("All media streams released")
        except asyncio.TimeoutError:
            logging.warning(
                f"Stream cleanup did not finish within {config.SHUTDOWN_TIMEOUT_SECONDS}s, shutting down anyway"
            )


# FastAPI application
app = FastAPI(
    title=config.APP_NAME,
    version=config.APP_VERSION,
    description="An API for transcribing and summarizing videos by URL or upload",
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


@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Middleware to add processing time header to responses."""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    return response


@app.exception_handler(MediaDigestError)
async def media_digest_exception_handler(request: Request, exc: MediaDigestError):
    """Map domain errors onto HTTP statuses with a user-facing message."""
    status_code = http_status_for(exc)
    if status_code >= 500:
        logging.error(f"{exc.code}: {exc.message} {exc.details}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": user_message(exc), "code": exc.code},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled exceptions."""
    logging.exception(f"Unhandled error on {request.url.path}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={"detail": GENERIC_ERROR_MESSAGE, "code": "UNKNOWN_ERROR"},
    )


# Include API routers
app.include_router(router)
app.include_router(health_router)


# Root
@app.get("/")
async def root():
    """Root endpoint returning basic API information."""
    return {
        "name": config.APP_NAME,
        "version": config.APP_VERSION,
        "description": "Video transcription and summarization API",
    }
