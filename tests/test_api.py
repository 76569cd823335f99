"""
Tests for the FastAPI application.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from media_digest.api.app import app
from media_digest.api.routes import stream_progress
from media_digest.core.progress import MEDIA
from media_digest.models.schemas import (
    FileSource,
    RemoteSource,
    Summary,
    SummaryMetadata,
    SummaryOptions,
    Transcript,
    UploadUrl,
)
from media_digest.utils.error_handling import ValidationError


def parse_events(body):
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.fixture
def orchestrator():
    orchestrator = MagicMock()
    orchestrator.processors = {
        "remote": MagicMock(active_count=2),
        "file": MagicMock(active_count=1),
    }
    orchestrator.cleanup_stale = AsyncMock(return_value=0)
    orchestrator.cleanup_all = AsyncMock()
    orchestrator.runs = []

    async def run(source, options, progress=None):
        orchestrator.runs.append((source, options))
        progress.update(MEDIA, 0)
        if options.transcript_only:
            progress.complete("the transcript")
            return Transcript(text="the transcript")
        progress.complete("the summary")
        return Summary(
            content="the summary",
            metadata=SummaryMetadata(word_count=2, source_type=source.type, source_id="x"),
        )

    orchestrator.run = run
    return orchestrator


@pytest.fixture
def client(orchestrator):
    with patch("media_digest.api.app.create_orchestrator", return_value=orchestrator):
        with TestClient(app) as client:
            yield client


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["name"] == "Media Digest"
    assert "X-Process-Time" in response.headers


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["active_streams"] == 3


def test_shutdown_releases_streams(orchestrator):
    with patch("media_digest.api.app.create_orchestrator", return_value=orchestrator):
        with TestClient(app):
            pass

    orchestrator.cleanup_all.assert_awaited_once()


@pytest.mark.parametrize("url", ["ftp://example.com/video", "not a url", "javascript:alert(1)"])
def test_invalid_url_is_rejected(client, orchestrator, url):
    response = client.get("/api/v1/summary/youtube/stream", params={"url": url})

    assert response.status_code == 400
    assert orchestrator.runs == []


def test_validation_error_is_a_bad_request(client, orchestrator):
    orchestrator.validate.side_effect = ValidationError("Word count must be between 50 and 1000")

    response = client.get(
        "/api/v1/summary/youtube/stream", params={"url": "https://youtu.be/abc", "words": 5}
    )

    assert response.status_code == 400
    assert response.json() == {
        "detail": "Word count must be between 50 and 1000",
        "code": "VALIDATION_ERROR",
    }


def test_youtube_summary_stream(client, orchestrator):
    response = client.get(
        "/api/v1/summary/youtube/stream",
        params={"url": "https://youtu.be/abc", "words": 200, "prompt": "Focus on numbers"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = parse_events(response.text)
    assert events[0]["status"] == "processing"
    assert events[-1] == {"status": "done", "message": "the summary", "progress": 100, "error": None}

    source, options = orchestrator.runs[0]
    assert source == RemoteSource(url="https://youtu.be/abc")
    assert options.max_words == 200
    assert options.additional_prompt == "Focus on numbers"


def test_youtube_transcript_stream(client, orchestrator):
    response = client.get("/api/v1/transcript/youtube/stream", params={"url": "https://youtu.be/abc"})

    events = parse_events(response.text)
    assert events[-1]["message"] == "the transcript"
    assert orchestrator.runs[0][1].transcript_only


def test_upload_summary_stream_removes_spooled_file(client, orchestrator):
    response = client.post(
        "/api/v1/summary/upload/stream",
        files={"file": ("my clip.mp4", b"\x00\x00\x00\x18ftypmp42", "video/mp4")},
        data={"words": "150"},
    )

    assert response.status_code == 200
    assert parse_events(response.text)[-1]["status"] == "done"

    source, options = orchestrator.runs[0]
    assert isinstance(source, FileSource)
    assert source.name == "my clip.mp4"
    assert source.size == 12
    assert source.path.name.endswith("-my_clip.mp4")
    assert not source.path.exists()
    assert options.max_words == 150


def test_upload_transcript_stream(client, orchestrator):
    response = client.post(
        "/api/v1/transcript/upload/stream",
        files={"file": ("clip.mp4", b"\x00\x00\x00\x18ftypmp42", "video/mp4")},
    )

    assert parse_events(response.text)[-1]["message"] == "the transcript"
    assert orchestrator.runs[0][1].transcript_only


def test_upload_url(client, orchestrator):
    storage_router = orchestrator.processors["file"].router
    storage_router.generate_upload_url = AsyncMock(side_effect=lambda blob_name, minutes: UploadUrl(
        url=f"https://signed.example/{blob_name}", blob_name=blob_name, expires_at="2026-01-01T00:00:00+00:00",
    ))

    response = client.post("/api/v1/storage/upload-url", json={"file_name": "../../etc/big video.mp4"})

    assert response.status_code == 200
    body = response.json()
    assert body["blob_name"].endswith("-big_video.mp4")
    assert body["url"] == f"https://signed.example/{body['blob_name']}"


@pytest.mark.asyncio
async def test_disconnect_cancels_a_request_without_events():
    cancelled = asyncio.Event()

    async def run(source, options, progress=None):
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    request = MagicMock()
    request.app.state.orchestrator.run = run
    request.is_disconnected = AsyncMock(return_value=True)
    on_finish = AsyncMock()

    async def consume():
        return [event async for event in stream_progress(
            request, RemoteSource(url="https://youtu.be/abc"), SummaryOptions(), on_finish=on_finish
        )]

    events = await asyncio.wait_for(consume(), timeout=5)

    assert events == []
    assert cancelled.is_set()
    on_finish.assert_awaited_once()
