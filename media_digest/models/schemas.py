"""
Data models for the media digest application.
"""
import time
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from media_digest.config import config


class RemoteSource(BaseModel):
    """A video reachable by URL (YouTube or anything yt-dlp understands)."""
    type: Literal["remote"] = "remote"
    url: str

    model_config = ConfigDict(frozen=True)


class FileSource(BaseModel):
    """An uploaded video held in memory, on local disk, or as an async byte stream."""
    type: Literal["file"] = "file"
    name: str
    data: Optional[bytes] = None
    path: Optional[Path] = None
    stream: Optional[Any] = None
    size: Optional[int] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @model_validator(mode="before")
    @classmethod
    def fill_size(cls, values):
        if isinstance(values, dict) and values.get("size") is None:
            if values.get("data") is not None:
                values = {**values, "size": len(values["data"])}
            elif values.get("path") is not None and Path(values["path"]).is_file():
                values = {**values, "size": Path(values["path"]).stat().st_size}
        return values

    @model_validator(mode="after")
    def check_payload(self):
        provided = [value for value in (self.data, self.path, self.stream) if value is not None]
        if len(provided) != 1:
            raise ValueError("exactly one of data, path or stream must be given")
        if self.stream is not None and self.size is None:
            raise ValueError("size is required for stream sources")
        return self


MediaSource = Annotated[Union[RemoteSource, FileSource], Field(discriminator="type")]


class MediaMetadata(BaseModel):
    """What is known about the extracted audio."""
    duration_seconds: float = 0.0
    format: str = config.AUDIO_FORMAT
    size_bytes: Optional[int] = None


class ProcessedMedia(BaseModel):
    """Audio ready for transcription plus the handle that releases it."""
    id: str
    audio_path: Path
    audio_stream: Optional[Any] = None
    metadata: MediaMetadata = Field(default_factory=MediaMetadata)
    cleanup: Callable[[], Awaitable[None]]

    model_config = ConfigDict(arbitrary_types_allowed=True)


class TranscriptSegment(BaseModel):
    """An approximate time window of the transcript."""
    text: str
    start_time: float
    end_time: float

    model_config = ConfigDict(frozen=True)


class Transcript(BaseModel):
    """Transcript text with derived segments."""
    text: str
    segments: Tuple[TranscriptSegment, ...] = ()

    model_config = ConfigDict(frozen=True)


class SummaryMetadata(BaseModel):
    """Bookkeeping attached to a summary."""
    word_count: int
    source_type: str
    source_id: str
    timestamp: str = Field(default_factory=lambda: time.strftime("%Y-%m-%d %H:%M:%S"))
    compression_ratio: Optional[float] = None

    model_config = ConfigDict(frozen=True)


class Summary(BaseModel):
    """Generated summary."""
    content: str
    metadata: SummaryMetadata

    model_config = ConfigDict(frozen=True)


class TranscriptionConfig(BaseModel):
    """Configuration for transcription operations."""
    model: str = config.DEFAULT_TRANSCRIPTION_MODEL
    language: Optional[str] = None
    prompt: Optional[str] = None
    response_format: str = "json"
    temperature: float = 0.0


class SummaryConfig(BaseModel):
    """Configuration for summarization operations."""
    model: str = config.DEFAULT_SUMMARY_MODEL
    temperature: float = 0.3
    max_tokens: int = 2048
    chunk_size: int = 12000
    chunk_overlap: int = 400


class SummaryOptions(BaseModel):
    """Per-request summary settings."""
    max_words: int = config.DEFAULT_SUMMARY_WORDS
    additional_prompt: Optional[str] = None
    transcript_only: bool = False


class ProgressStatus(str, Enum):
    """Status values carried by progress events."""
    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    CONVERTING = "converting"
    TRANSCRIBING = "transcribing"
    SUMMARIZING = "summarizing"
    DONE = "done"
    ERROR = "error"


class ProgressEvent(BaseModel):
    """A single progress update sent to the caller."""
    status: ProgressStatus
    message: str
    progress: int = Field(ge=0, le=100)
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ProgressStatus.DONE, ProgressStatus.ERROR)


class StageDescriptor(BaseModel):
    """One row of the stage table: which slice of 0..100 a stage owns."""
    name: str
    status: ProgressStatus
    progress_range: Tuple[int, int]
    message_template: str

    model_config = ConfigDict(frozen=True)

    def render(self, progress: int) -> str:
        return self.message_template.format(progress=progress)


class UploadUrl(BaseModel):
    """A presigned URL a client can PUT one blob to."""
    url: str
    blob_name: str
    expires_at: str


class UploadResult(BaseModel):
    """Outcome of a block upload."""
    blob_name: str
    url: str
    size_bytes: int
    block_count: int
    attempts: Dict[int, int] = Field(default_factory=dict)


ProgressCallback = Callable[[float], None]
