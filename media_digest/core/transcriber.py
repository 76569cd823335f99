"""
Module for transcribing audio using Groq's API.
"""

import asyncio
import os
from contextlib import aclosing
from pathlib import Path
from typing import Callable, List, Optional

from groq import Groq

from media_digest.config import config
from media_digest.models.schemas import ProcessedMedia, Transcript, TranscriptionConfig, TranscriptSegment
from media_digest.utils.error_handling import ProcessingFailedError
from media_digest.utils.helpers import format_size
from media_digest.utils.logger import logging


class AudioTranscriber:
    """Class to handle audio transcription operations."""

    def __init__(
        self, transcribe_config: Optional[TranscriptionConfig] = None, api_key: Optional[str] = None
    ):
        """
        Initialize the transcriber with API key.

        Args:
            transcribe_config: Model and request settings
            api_key: Groq API key (if None, will try to get from environment)
        """
        self.transcribe_config = transcribe_config or TranscriptionConfig()
        self.api_key = api_key or os.getenv("GROQ_API_KEY")
        if not self.api_key:
            raise ValueError(
                "Groq API key is required. Set it in .env file or pass directly."
            )

        self.client = Groq(api_key=self.api_key)

    def transcribe_file(self, audio_path: Path) -> str:
        """
        Transcribe an audio file.

        Args:
            audio_path: Path of the audio file

        Returns:
            Transcript text
        """
        audio_path = Path(audio_path)
        logging.info(f"Transcribing audio file: {audio_path}")

        options = {}
        if self.transcribe_config.prompt:
            options["prompt"] = self.transcribe_config.prompt
        if self.transcribe_config.language:
            options["language"] = self.transcribe_config.language

        with open(audio_path, "rb") as audio_file:
            transcription = self.client.audio.transcriptions.create(
                file=(audio_path.name, audio_file.read()),
                model=self.transcribe_config.model,
                response_format=self.transcribe_config.response_format,
                temperature=self.transcribe_config.temperature,
                **options,
            )

        text = transcription if isinstance(transcription, str) else getattr(transcription, "text", "")
        logging.info("Transcription complete.")
        return text or ""


def build_segments(text: str, duration: float, words_per_segment: int) -> List[TranscriptSegment]:
    """
    Split a transcript into fixed word-count segments.

    Each segment gets a proportional share of the duration. This is an
    approximation, not an alignment with the audio; with an unknown (zero)
    duration every timestamp is 0.
    """
    words = text.split()
    if not words:
        return []

    total = len(words)
    segments = []
    for start in range(0, total, words_per_segment):
        end = min(start + words_per_segment, total)
        segments.append(TranscriptSegment(
            text=" ".join(words[start:end]),
            start_time=start / total * duration,
            end_time=end / total * duration,
        ))
    return segments


class TranscriptionStage:
    """Turns the audio of a ProcessedMedia into a Transcript."""

    def __init__(
        self,
        transcriber: AudioTranscriber,
        temp_dir: Optional[Path] = None,
        max_bytes: int = config.TRANSCRIPTION_MAX_BYTES,
        words_per_segment: int = config.WORDS_PER_SEGMENT,
    ):
        self.transcriber = transcriber
        self.temp_dir = Path(temp_dir or config.AUDIOS_DIR)
        self.max_bytes = max_bytes
        self.words_per_segment = words_per_segment

    async def transcribe(
        self,
        media: ProcessedMedia,
        work_dir: Optional[Path] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> Transcript:
        """
        Transcribe the audio of a processed media.

        A stream is first written to a temporary file, because the speech API
        needs a file upload. The temporary file is always removed afterwards.

        Args:
            media: ProcessedMedia with an audio stream or an existing audio file
            work_dir: Directory for the temporary file (defaults to temp_dir)
            on_progress: Called with 100 once the audio is materialized

        Returns:
            Transcript with text and approximate segments
        """
        has_file = await asyncio.to_thread(media.audio_path.is_file)
        if media.audio_stream is None and not has_file:
            raise ProcessingFailedError(
                "No audio available for transcription", details={"media_id": media.id}
            )

        temp_path = None
        try:
            if media.audio_stream is not None:
                temp_path = Path(work_dir or self.temp_dir) / f"{media.id}-temp.{config.AUDIO_FORMAT}"
                size = await self._materialize(media, temp_path)
                audio_path = temp_path
            else:
                audio_path = media.audio_path
                size = (await asyncio.to_thread(audio_path.stat)).st_size
                self._check_size(media.id, size)

            if on_progress:
                on_progress(100)
            logging.info(f"[{media.id}] sending {format_size(size)} of audio for transcription")

            try:
                text = await asyncio.to_thread(self.transcriber.transcribe_file, audio_path)
            except Exception as e:
                logging.error(f"[{media.id}] transcription request failed: {str(e)}")
                raise ProcessingFailedError(
                    "Failed to transcribe audio", details={"media_id": media.id, "reason": str(e)}
                ) from e
        finally:
            if temp_path is not None:
                await self._remove(temp_path)

        if not text or not text.strip():
            raise ProcessingFailedError("Transcription produced no text", details={"media_id": media.id})

        text = text.strip()
        segments = build_segments(text, media.metadata.duration_seconds, self.words_per_segment)
        logging.info(f"[{media.id}] transcript ready: {len(text)} chars, {len(segments)} segments")
        return Transcript(text=text, segments=tuple(segments))

    def _check_size(self, media_id: str, size: int) -> None:
        if size == 0:
            raise ProcessingFailedError("Audio stream was empty", details={"media_id": media_id})
        if size > self.max_bytes:
            raise ProcessingFailedError(
                f"Audio is too large to transcribe (limit {format_size(self.max_bytes)})",
                details={"media_id": media_id, "size": size},
            )

    async def _materialize(self, media: ProcessedMedia, path: Path) -> int:
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        size = 0
        async with aclosing(media.audio_stream) as stream:
            with open(path, "wb") as handle:
                async for chunk in stream:
                    size += len(chunk)
                    # Stop reading as soon as the limit is crossed
                    if size > self.max_bytes:
                        self._check_size(media.id, size)
                    await asyncio.to_thread(handle.write, chunk)
        self._check_size(media.id, size)
        return size

    async def _remove(self, path: Path) -> None:
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            logging.error(f"Could not delete temporary audio {path}: {str(e)}")
