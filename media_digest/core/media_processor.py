"""
Module for turning a media source into a stream of mp3 audio.
"""

import asyncio
import functools
import time
import uuid
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from media_digest.config import config
from media_digest.core.credentials import CookieFileProvider
from media_digest.core.pipeline import AudioPipeline, AudioPipelineBuilder
from media_digest.core.progress import bytes_progress_percent
from media_digest.core.storage import StorageRouter
from media_digest.models.schemas import (
    FileSource,
    MediaMetadata,
    ProcessedMedia,
    ProgressStatus,
    RemoteSource,
)
from media_digest.utils.error_handling import (
    BadRequestError,
    DeletionFailedError,
    MediaDigestError,
    StorageError,
    StorageErrorCode,
)
from media_digest.utils.helpers import format_size, sanitize_filename
from media_digest.utils.logger import logging


HEADER_SIZE = 12
CONTAINER_SIGNATURES = (b"ftyp", b"moov", b"mdat", b"RIFF")
EBML_SIGNATURE = bytes.fromhex("1A45DFA3")

MediaProgress = Callable[[float, Optional[ProgressStatus]], None]
Release = Callable[[], Awaitable[None]]


def validate_video_header(header: bytes) -> bool:
    """
    Check the first bytes of a file for a known video container signature.

    ISO-BMFF atoms (ftyp, moov, mdat) and RIFF may appear anywhere in the first
    12 bytes; EBML (Matroska/WebM) must start the file.
    """
    if not header:
        return False
    head = bytes(header[:HEADER_SIZE])
    if head.startswith(EBML_SIGNATURE):
        return True
    return any(signature in head for signature in CONTAINER_SIGNATURES)


async def validate_video_file(path: Path) -> bool:
    """Read the first bytes of a file and validate its signature."""
    def read_header() -> bytes:
        with open(path, "rb") as handle:
            return handle.read(HEADER_SIZE)

    try:
        header = await asyncio.to_thread(read_header)
    except OSError as e:
        logging.warning(f"Could not read header of {path}: {str(e)}")
        return False
    return validate_video_header(header)


async def peek_stream(stream: AsyncIterator[bytes], count: int) -> Tuple[bytes, AsyncIterator[bytes]]:
    """
    Read at least ``count`` bytes from a stream without losing them.

    Returns:
        The first ``count`` bytes and a stream that yields everything, head included
    """
    iterator = stream.__aiter__()
    consumed: List[bytes] = []
    length = 0
    while length < count:
        try:
            chunk = await iterator.__anext__()
        except StopAsyncIteration:
            break
        consumed.append(chunk)
        length += len(chunk)

    async def replay() -> AsyncIterator[bytes]:
        for chunk in consumed:
            yield chunk
        async for chunk in iterator:
            yield chunk

    return b"".join(consumed)[:count], replay()


class _StreamEntry:
    """Release actions of one in-flight media id."""

    def __init__(self):
        self.created_at = time.monotonic()
        self.releases: List[Tuple[str, Release]] = []


class BaseMediaProcessor:
    """
    Shared registry and cleanup logic for the acquisition strategies.

    Each instance tracks its in-flight media ids. Entries older than
    ``stream_ttl`` seconds are reclaimed on the next ``process_media`` call
    or by ``cleanup_stale()``, even when the caller never cleaned them up.
    """

    source_type = "unknown"

    def __init__(
        self,
        pipeline_builder: Optional[AudioPipelineBuilder] = None,
        audio_dir: Optional[Path] = None,
        stream_ttl: float = config.STREAM_TTL_SECONDS,
    ):
        self.pipeline_builder = pipeline_builder or AudioPipelineBuilder(
            credential_provider=CookieFileProvider()
        )
        self.audio_dir = Path(audio_dir or config.AUDIOS_DIR)
        self.stream_ttl = stream_ttl
        self._active: Dict[str, _StreamEntry] = {}

    @property
    def active_count(self) -> int:
        return len(self._active)

    def is_active(self, media_id: str) -> bool:
        return media_id in self._active

    def audio_path_for(self, media_id: str) -> Path:
        return self.audio_dir / f"{media_id}.{config.AUDIO_FORMAT}"

    async def process_media(self, source, on_progress: Optional[MediaProgress] = None) -> ProcessedMedia:
        """
        Turn a media source into an audio stream.

        Args:
            source: RemoteSource or FileSource
            on_progress: Called with an intra-stage percentage and an optional status

        Returns:
            ProcessedMedia whose cleanup releases everything acquired here
        """
        await self.cleanup_stale()

        media_id = uuid.uuid4().hex
        self._active[media_id] = _StreamEntry()
        report = on_progress or (lambda percent, status=None: None)
        try:
            return await self._acquire(media_id, source, report)
        except BaseException:
            try:
                await self.cleanup(media_id)
            except MediaDigestError as e:
                logging.error(f"[{media_id}] cleanup after failed acquisition failed: {e.message}")
            raise

    async def _acquire(self, media_id: str, source, report: MediaProgress) -> ProcessedMedia:
        raise NotImplementedError

    def _track(self, media_id: str, name: str, release: Release) -> None:
        self._active[media_id].releases.append((name, release))

    def _processed(self, media_id: str, pipeline: AudioPipeline, size_bytes: Optional[int] = None) -> ProcessedMedia:
        self._track(media_id, "audio pipeline", pipeline.cleanup)
        return ProcessedMedia(
            id=media_id,
            audio_path=self.audio_path_for(media_id),
            audio_stream=pipeline.stream,
            metadata=MediaMetadata(duration_seconds=0, format=config.AUDIO_FORMAT, size_bytes=size_bytes),
            cleanup=functools.partial(self.cleanup, media_id),
        )

    async def cleanup(self, media_id: str) -> None:
        """
        Release everything held for a media id and delete its audio file.

        Unknown ids and missing files are not errors.

        Raises:
            DeletionFailedError: if a release action or the file deletion failed
        """
        entry = self._active.pop(media_id, None)
        failures: List[str] = []

        if entry is not None:
            for name, release in reversed(entry.releases):
                try:
                    await release()
                except Exception as e:
                    failures.append(f"{name}: {str(e)}")

        path = self.audio_path_for(media_id)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            failures.append(f"{path.name}: {str(e)}")

        if failures:
            raise DeletionFailedError(
                f"Cleanup of {media_id} was incomplete",
                details={"media_id": media_id, "failures": failures},
            )

    async def cleanup_stale(self, max_age: Optional[float] = None) -> int:
        """
        Reclaim registry entries older than the TTL.

        Returns:
            Number of entries reclaimed
        """
        ttl = self.stream_ttl if max_age is None else max_age
        now = time.monotonic()
        stale = [media_id for media_id, entry in self._active.items() if now - entry.created_at > ttl]
        for media_id in stale:
            logging.warning(f"[{media_id}] reclaiming stale {self.source_type} stream")
            try:
                await self.cleanup(media_id)
            except MediaDigestError as e:
                logging.error(f"[{media_id}] stale stream cleanup failed: {e.message}")
        return len(stale)

    async def cleanup_all(self) -> None:
        for media_id in list(self._active):
            try:
                await self.cleanup(media_id)
            except MediaDigestError as e:
                logging.error(f"[{media_id}] cleanup failed: {e.message}")


class RemoteMediaProcessor(BaseMediaProcessor):
    """Streams audio from a URL through yt-dlp and ffmpeg."""

    source_type = "remote"

    async def _acquire(self, media_id: str, source: RemoteSource, report: MediaProgress) -> ProcessedMedia:
        if not isinstance(source, RemoteSource) or not source.url.strip():
            raise BadRequestError("A video URL is required")

        pipeline = await self.pipeline_builder.build_remote(
            source.url,
            on_progress=lambda kilobytes: report(bytes_progress_percent(kilobytes), None),
            label=media_id,
        )
        logging.info(f"[{media_id}] remote audio stream ready")
        return self._processed(media_id, pipeline)


class LocalMediaProcessor(BaseMediaProcessor):
    """
    Converts uploaded files to audio.

    Files above the router's local threshold are staged through blob storage
    and transcoded from the downloaded stream; smaller files must carry a
    known container signature and are transcoded directly.
    """

    source_type = "file"

    def __init__(
        self,
        router: Optional[StorageRouter] = None,
        max_file_size: int = config.MAX_FILE_SIZE,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.router = router
        self.max_file_size = max_file_size

    async def _acquire(self, media_id: str, source: FileSource, report: MediaProgress) -> ProcessedMedia:
        if not isinstance(source, FileSource):
            raise BadRequestError("An uploaded file is required")
        if source.path is not None and not await asyncio.to_thread(Path(source.path).is_file):
            raise BadRequestError("Uploaded file not found")

        size = source.size or 0
        if size == 0:
            raise BadRequestError("Uploaded file is empty")
        if size > self.max_file_size:
            raise BadRequestError(f"File too large. Maximum size is {format_size(self.max_file_size)}")

        payload = next(value for value in (source.data, source.path, source.stream) if value is not None)

        if self.router is not None and self.router.should_route(size):
            payload = await self._stage_through_storage(media_id, source.name, payload, size, report)
        else:
            payload = await self._validated(source, payload)

        def on_feed(kilobytes: float) -> None:
            report(min(99.0, kilobytes * 1024 / size * 100), None)

        pipeline = await self.pipeline_builder.build_local(payload, on_progress=on_feed, label=media_id)
        logging.info(f"[{media_id}] converting {source.name} ({format_size(size)})")
        return self._processed(media_id, pipeline, size_bytes=size)

    async def _validated(self, source: FileSource, payload):
        if source.data is not None:
            valid = validate_video_header(source.data[:HEADER_SIZE])
        elif source.path is not None:
            valid = await validate_video_file(Path(source.path))
        else:
            header, payload = await peek_stream(payload, HEADER_SIZE)
            valid = validate_video_header(header)

        if not valid:
            raise BadRequestError("Unsupported file format. Please upload a video file.")
        return payload

    async def _stage_through_storage(
        self, media_id: str, name: str, payload, size: int, report: MediaProgress
    ) -> AsyncIterator[bytes]:
        blob_name = f"{media_id}-{sanitize_filename(name)}"
        self._track(media_id, "blob", functools.partial(self._delete_blob, blob_name))

        logging.info(f"[{media_id}] {format_size(size)} exceeds local limit, staging through storage")
        report(0, ProgressStatus.UPLOADING)
        await self.router.upload(
            blob_name,
            payload,
            size,
            on_progress=lambda percent: report(percent, ProgressStatus.UPLOADING),
        )
        report(100, ProgressStatus.CONVERTING)
        return self.router.download(blob_name)

    async def _delete_blob(self, blob_name: str) -> None:
        try:
            await self.router.delete(blob_name)
        except StorageError as e:
            if e.storage_code != StorageErrorCode.NOT_FOUND:
                raise


def create_media_processor(
    source_type: str,
    router: Optional[StorageRouter] = None,
    **kwargs,
) -> BaseMediaProcessor:
    """
    Get the acquisition strategy for a source type.

    Args:
        source_type: "remote" or "file"
        router: Storage router used by the file strategy
        **kwargs: Passed to the processor (pipeline_builder, audio_dir, stream_ttl)
    """
    if source_type == RemoteMediaProcessor.source_type:
        return RemoteMediaProcessor(**kwargs)
    if source_type == LocalMediaProcessor.source_type:
        return LocalMediaProcessor(router=router, **kwargs)
    raise BadRequestError(f"Unsupported media source type: {source_type}")
