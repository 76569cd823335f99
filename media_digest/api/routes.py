"""
API routes for the media digest application.

Every processing route answers with server-sent events: one ``data:`` line
of JSON per progress event, ending with a done or error event.
"""

import asyncio
import shutil
import uuid
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import urlparse

from fastapi import APIRouter, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import StreamingResponse

from media_digest.config import config
from media_digest.api.schemas import HealthResponse, UploadUrlRequest, UploadUrlResponse
from media_digest.core.orchestrator import SummaryOrchestrator
from media_digest.core.progress import ProgressChannel, ProgressTracker
from media_digest.core.storage import StorageRouter
from media_digest.models.schemas import FileSource, ProgressEvent, RemoteSource, SummaryOptions
from media_digest.utils.helpers import sanitize_filename
from media_digest.utils.logger import logging

router = APIRouter(prefix="/api/v1", tags=["media"])
health_router = APIRouter(tags=["health"])

DISCONNECT_POLL_SECONDS = 1.0

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_orchestrator(request: Request) -> SummaryOrchestrator:
    return request.app.state.orchestrator


def get_storage_router(request: Request) -> Optional[StorageRouter]:
    return getattr(get_orchestrator(request).processors.get("file"), "router", None)


def validate_url(url: str) -> str:
    """Accept only absolute http(s) URLs."""
    parsed = urlparse((url or "").strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise HTTPException(status_code=400, detail="Invalid URL. Provide an http or https video URL.")
    return url.strip()


def format_event(event: ProgressEvent) -> str:
    return f"data: {event.model_dump_json()}\n\n"


async def watch_disconnect(request: Request, task: asyncio.Task) -> None:
    """Cancel the request task as soon as the client goes away."""
    while not task.done():
        if await request.is_disconnected():
            logging.info("Client disconnected, cancelling request")
            task.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def stream_progress(
    request: Request,
    source,
    options: SummaryOptions,
    on_finish: Optional[Callable[[], Awaitable[None]]] = None,
) -> AsyncIterator[str]:
    """
    Run the orchestrator in a task and relay its progress events.

    A client disconnect cancels the task, which releases every resource the
    request acquired. Disconnects are polled independently of the events, so
    long transcription or summary calls do not delay the cancellation.
    """
    orchestrator = get_orchestrator(request)
    channel = ProgressChannel()
    tracker = ProgressTracker(sink=channel.publish)
    task = asyncio.create_task(orchestrator.run(source, options, progress=tracker))
    task.add_done_callback(lambda _: channel.close())
    watcher = asyncio.create_task(watch_disconnect(request, task))

    try:
        async for event in channel:
            yield format_event(event)
    finally:
        watcher.cancel()
        if not task.done():
            task.cancel()
        # Errors were already delivered as the terminal event
        await asyncio.gather(task, watcher, return_exceptions=True)
        if on_finish is not None:
            await on_finish()


def event_stream(request: Request, source, options: SummaryOptions, on_finish=None) -> StreamingResponse:
    return StreamingResponse(
        stream_progress(request, source, options, on_finish=on_finish),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


async def spool_upload(file: UploadFile) -> Path:
    """Copy an uploaded file to the uploads directory."""
    path = Path(config.UPLOADS_DIR) / f"{uuid.uuid4().hex}-{sanitize_filename(file.filename or '')}"

    def copy() -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as handle:
            shutil.copyfileobj(file.file, handle)

    await asyncio.to_thread(copy)
    return path


def remove_spooled(path: Path) -> Callable[[], Awaitable[None]]:
    async def remove() -> None:
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            logging.error(f"Could not delete uploaded file {path}: {str(e)}")

    return remove


async def stream_upload(request: Request, file: UploadFile, options: SummaryOptions) -> StreamingResponse:
    name = file.filename or "upload"
    # Validate before the upload is written to disk
    if not options.transcript_only:
        get_orchestrator(request).summarization.validate_options(options)

    path = await spool_upload(file)
    try:
        source = FileSource(name=name, path=path)
    except ValueError:
        await remove_spooled(path)()
        raise
    return event_stream(request, source, options, on_finish=remove_spooled(path))


@router.get("/summary/youtube/stream")
async def stream_youtube_summary(
    request: Request,
    url: str = Query(..., description="Video URL"),
    words: int = Query(config.DEFAULT_SUMMARY_WORDS, description="Summary length in words"),
    prompt: Optional[str] = Query(None, description="Additional instructions for the summary"),
):
    """Summarize a video by URL, streaming progress as server-sent events."""
    source = RemoteSource(url=validate_url(url))
    options = SummaryOptions(max_words=words, additional_prompt=prompt)
    get_orchestrator(request).validate(source, options)
    return event_stream(request, source, options)


@router.get("/transcript/youtube/stream")
async def stream_youtube_transcript(
    request: Request,
    url: str = Query(..., description="Video URL"),
):
    """Transcribe a video by URL, streaming progress as server-sent events."""
    source = RemoteSource(url=validate_url(url))
    options = SummaryOptions(transcript_only=True)
    get_orchestrator(request).validate(source, options)
    return event_stream(request, source, options)


@router.post("/summary/upload/stream")
async def stream_upload_summary(
    request: Request,
    file: UploadFile = File(...),
    words: int = Form(config.DEFAULT_SUMMARY_WORDS),
    prompt: Optional[str] = Form(None),
):
    """Summarize an uploaded video, streaming progress as server-sent events."""
    options = SummaryOptions(max_words=words, additional_prompt=prompt)
    return await stream_upload(request, file, options)


@router.post("/transcript/upload/stream")
async def stream_upload_transcript(
    request: Request,
    file: UploadFile = File(...),
):
    """Transcribe an uploaded video, streaming progress as server-sent events."""
    return await stream_upload(request, file, SummaryOptions(transcript_only=True))


@router.post("/storage/upload-url", response_model=UploadUrlResponse)
async def create_upload_url(request: Request, body: UploadUrlRequest):
    """Get a presigned URL the client can upload a large video to."""
    storage_router = get_storage_router(request)
    if storage_router is None:
        raise HTTPException(status_code=503, detail="Blob storage is not available")

    blob_name = f"{uuid.uuid4().hex}-{sanitize_filename(body.file_name)}"
    upload_url = await storage_router.generate_upload_url(blob_name, body.expiry_minutes)
    return UploadUrlResponse(**upload_url.model_dump())


@health_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Health check endpoint."""
    orchestrator = get_orchestrator(request)
    active = sum(processor.active_count for processor in orchestrator.processors.values())
    return HealthResponse(status="ok", version=config.APP_VERSION, active_streams=active)
