"""
Runs one summary request end to end: media, transcription, summarization.
"""

import asyncio
import shutil
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, TypeVar, Union

from media_digest.config import config
from media_digest.core.credentials import CookieFileProvider
from media_digest.core.media_processor import BaseMediaProcessor, create_media_processor
from media_digest.core.pipeline import AudioPipelineBuilder
from media_digest.core.progress import (
    INITIALIZATION,
    MEDIA,
    SUMMARIZATION,
    TRANSCRIPTION,
    ProgressTracker,
)
from media_digest.core.resources import ResourceTracker
from media_digest.core.storage import BlobStorage, StorageRouter
from media_digest.core.summarizer import SummarizationStage, TranscriptSummarizer
from media_digest.core.transcriber import AudioTranscriber, TranscriptionStage
from media_digest.models.schemas import (
    FileSource,
    ProgressEvent,
    RemoteSource,
    Summary,
    SummaryOptions,
    Transcript,
)
from media_digest.utils.error_handling import (
    BadRequestError,
    MediaDigestError,
    ProcessingFailedError,
    log_diagnostic_info,
)
from media_digest.utils.logger import logging


T = TypeVar("T")

ProgressSink = Callable[[ProgressEvent], None]


def source_id_of(source: Union[RemoteSource, FileSource]) -> str:
    return source.url if isinstance(source, RemoteSource) else source.name


class SummaryOrchestrator:
    """
    Drives a media source through the three stages and reports progress.

    Every resource acquired for a request (session directory, media
    processing state) is registered with a ResourceTracker and released
    exactly once, on success, failure and cancellation alike.
    """

    def __init__(
        self,
        processors: Dict[str, BaseMediaProcessor],
        transcription: TranscriptionStage,
        summarization: SummarizationStage,
        sessions_dir: Optional[Path] = None,
    ):
        self.processors = processors
        self.transcription = transcription
        self.summarization = summarization
        self.sessions_dir = Path(sessions_dir or config.SESSIONS_DIR)

    def processor_for(self, source) -> BaseMediaProcessor:
        source_type = getattr(source, "type", None)
        if source_type not in self.processors:
            raise BadRequestError(f"Unsupported media source type: {source_type}")
        return self.processors[source_type]

    def validate(self, source, options: SummaryOptions) -> None:
        """Reject a request before any process is spawned or any API is called."""
        if isinstance(source, RemoteSource) and not source.url.strip():
            raise BadRequestError("A video URL is required")
        self.processor_for(source)
        if not options.transcript_only:
            self.summarization.validate_options(options)

    async def run(
        self,
        source: Union[RemoteSource, FileSource],
        options: Optional[SummaryOptions] = None,
        progress: Optional[Union[ProgressTracker, ProgressSink]] = None,
    ) -> Union[Summary, Transcript]:
        """
        Process a source into a summary, or into a transcript when
        ``options.transcript_only`` is set.

        Args:
            source: RemoteSource or FileSource
            options: Summary length, extra prompt, transcript-only flag
            progress: A ProgressTracker, or a sink called with every ProgressEvent

        Returns:
            Summary, or Transcript for transcript-only requests

        Raises:
            MediaDigestError: after the sink received the terminal error event
        """
        options = options or SummaryOptions()
        tracker = progress if isinstance(progress, ProgressTracker) else ProgressTracker(sink=progress)
        request_id = uuid.uuid4().hex
        resources = ResourceTracker(owner=request_id)

        try:
            tracker.update(INITIALIZATION, 0)
            self.validate(source, options)
            processor = self.processor_for(source)
            session_dir = await self._open_session(request_id, resources)
            tracker.update(INITIALIZATION, 100)

            tracker.update(MEDIA, 0)
            media = await self._stage(
                MEDIA,
                processor.process_media(
                    source,
                    on_progress=lambda percent, status=None: tracker.advance(percent, status=status),
                ),
            )
            resources.register("media", media.cleanup)
            tracker.update(MEDIA, 100)

            tracker.update(TRANSCRIPTION, 0)
            transcript = await self._stage(
                TRANSCRIPTION,
                self.transcription.transcribe(
                    media,
                    work_dir=session_dir,
                    on_progress=lambda percent: tracker.advance(percent),
                ),
                media_id=media.id,
            )
            tracker.update(TRANSCRIPTION, 100)

            if options.transcript_only:
                tracker.complete(transcript.text)
                logging.info(f"[{request_id}] transcript ready for {source_id_of(source)}")
                return transcript

            tracker.update(SUMMARIZATION, 0)
            # The audio is no longer needed once the text exists
            summary, _ = await asyncio.gather(
                self._stage(
                    SUMMARIZATION,
                    self.summarization.summarize(transcript, options, source.type, source_id_of(source)),
                    media_id=media.id,
                ),
                resources.release("media"),
                return_exceptions=True,
            )
            if isinstance(summary, BaseException):
                raise summary
            tracker.update(SUMMARIZATION, 100)

            tracker.complete(summary.content)
            logging.info(f"[{request_id}] summary ready for {source_id_of(source)}")
            return summary

        except asyncio.CancelledError:
            logging.warning(f"[{request_id}] request cancelled")
            tracker.fail("Request cancelled")
            raise
        except Exception as e:
            logging.error(f"[{request_id}] request failed: {str(e)}")
            log_diagnostic_info({
                "request_id": request_id,
                "source_type": getattr(source, "type", None),
                "stage": tracker.current_stage,
                "error": e.to_dict() if isinstance(e, MediaDigestError) else repr(e),
            })
            tracker.fail(e)
            raise
        finally:
            await resources.release_all()

    async def _stage(self, stage: str, work: Awaitable[T], media_id: Optional[str] = None) -> T:
        try:
            return await work
        except MediaDigestError as e:
            raise e.add_context(stage=stage, media_id=media_id)
        except Exception as e:
            raise ProcessingFailedError(
                f"Processing failed during {stage}",
                details={"stage": stage, "media_id": media_id, "reason": str(e)},
            ) from e

    async def _open_session(self, request_id: str, resources: ResourceTracker) -> Path:
        session_dir = self.sessions_dir / request_id
        await asyncio.to_thread(session_dir.mkdir, parents=True, exist_ok=True)
        resources.register("session directory", lambda: asyncio.to_thread(_remove_dir, session_dir))
        return session_dir

    async def cleanup_stale(self) -> int:
        reclaimed = 0
        for processor in self.processors.values():
            reclaimed += await processor.cleanup_stale()
        return reclaimed

    async def cleanup_all(self) -> None:
        for processor in self.processors.values():
            await processor.cleanup_all()


def _remove_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)


def create_orchestrator(cfg=config) -> SummaryOrchestrator:
    """
    Wire the default services from configuration.

    Args:
        cfg: Configuration class (defaults to the active config)
    """
    storage = BlobStorage(
        bucket=cfg.STORAGE_BUCKET,
        endpoint_url=cfg.STORAGE_ENDPOINT_URL,
        region=cfg.STORAGE_REGION,
    )
    router = StorageRouter(
        storage,
        local_threshold=cfg.MAX_LOCAL_FILE_SIZE,
        block_size=cfg.STORAGE_BLOCK_SIZE,
        max_concurrency=cfg.STORAGE_MAX_CONCURRENCY,
        block_attempts=cfg.STORAGE_BLOCK_ATTEMPTS,
        retry_delay=cfg.STORAGE_RETRY_DELAY,
        upload_url_expiry_minutes=cfg.UPLOAD_URL_EXPIRY_MINUTES,
    )
    builder = AudioPipelineBuilder(
        ffmpeg_path=cfg.FFMPEG_PATH,
        yt_dlp_path=cfg.YT_DLP_PATH,
        credential_provider=CookieFileProvider(cfg.YOUTUBE_COOKIES_PATH, cfg.YOUTUBE_USE_COOKIES),
        audio_bitrate=cfg.AUDIO_BITRATE,
        audio_channels=cfg.AUDIO_CHANNELS,
        audio_sample_rate=cfg.AUDIO_SAMPLE_RATE,
    )
    processors = {
        source_type: create_media_processor(
            source_type,
            router=router,
            pipeline_builder=builder,
            audio_dir=cfg.AUDIOS_DIR,
            stream_ttl=cfg.STREAM_TTL_SECONDS,
        )
        for source_type in ("remote", "file")
    }
    processors["file"].max_file_size = cfg.MAX_FILE_SIZE

    transcription = TranscriptionStage(
        AudioTranscriber(api_key=cfg.GROQ_API_KEY),
        temp_dir=cfg.AUDIOS_DIR,
        max_bytes=cfg.TRANSCRIPTION_MAX_BYTES,
        words_per_segment=cfg.WORDS_PER_SEGMENT,
    )
    summarization = SummarizationStage(
        TranscriptSummarizer(api_key=cfg.GROQ_API_KEY),
        min_chars=cfg.MIN_TRANSCRIPT_CHARS,
        min_words=cfg.MIN_SUMMARY_WORDS,
        max_words=cfg.MAX_SUMMARY_WORDS,
    )
    return SummaryOrchestrator(processors, transcription, summarization, sessions_dir=cfg.SESSIONS_DIR)
