"""
Module for building the yt-dlp -> ffmpeg subprocess chain that turns a video
into an mp3 byte stream.
"""

import asyncio
import collections
import time
from pathlib import Path
from typing import AsyncIterator, Callable, Deque, Dict, List, Optional, Set, Type, Union

from media_digest.config import config
from media_digest.core.adaptive_buffer import AdaptiveBuffer
from media_digest.core.credentials import CookieFileProvider
from media_digest.utils.error_handling import (
    DownloadFailedError,
    MediaDigestError,
    ProcessingFailedError,
)
from media_digest.utils.logger import logging


READ_CHUNK_SIZE = 64 * 1024
STDERR_TAIL_LINES = 20
PROGRESS_INTERVAL = 0.5
TERMINATE_GRACE_SECONDS = 5.0

FETCH = "fetch"
TRANSCODE = "transcode"

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

LocalPayload = Union[bytes, bytearray, str, Path, AsyncIterator[bytes]]


async def iter_stream(reader: asyncio.StreamReader, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Yield chunks from a stream reader until EOF."""
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        yield chunk


async def iter_file(path: Path, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Yield chunks of a local file, reading in a worker thread."""
    with open(path, "rb") as handle:
        while True:
            chunk = await asyncio.to_thread(handle.read, chunk_size)
            if not chunk:
                break
            yield chunk


async def iter_bytes(data: bytes, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Yield an in-memory payload in chunks."""
    view = memoryview(data)
    for offset in range(0, len(view), chunk_size):
        yield bytes(view[offset:offset + chunk_size])


class ByteProgress:
    """Counts bytes and reports kilobytes at most once per interval."""

    def __init__(self, callback: Optional[Callable[[float], None]], interval: float = PROGRESS_INTERVAL):
        self.callback = callback
        self.interval = interval
        self.total_bytes = 0
        self._last_report = 0.0

    def __call__(self, count: int) -> None:
        self.total_bytes += count
        now = time.monotonic()
        if self.callback and now - self._last_report >= self.interval:
            self._last_report = now
            self.callback(self.total_bytes / 1024)


class AudioPipeline:
    """
    A running subprocess chain.

    ``stream`` yields the transcoded audio. Once the transcoder's output is
    exhausted the exit codes are checked, so a failed download or conversion
    surfaces as an error on the stream itself. ``cleanup()`` terminates any
    process still running and may be called any number of times.
    """

    def __init__(self, label: str):
        self.label = label
        self.processes: Dict[str, asyncio.subprocess.Process] = {}
        self.stream: Optional[AsyncIterator[bytes]] = None
        self._stderr: Dict[str, Deque[str]] = {}
        self._stderr_tasks: Dict[str, asyncio.Task] = {}
        self._feed_task: Optional[asyncio.Task] = None
        self._feed_error: Optional[BaseException] = None
        self._input_rejected = False
        self._signalled: Set[str] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, name: str, process: asyncio.subprocess.Process) -> None:
        self.processes[name] = process
        self._stderr[name] = collections.deque(maxlen=STDERR_TAIL_LINES)
        if process.stderr is not None:
            self._stderr_tasks[name] = asyncio.create_task(self._drain_stderr(name, process.stderr))

    def stderr_tail(self, name: str) -> str:
        return "\n".join(self._stderr.get(name, ()))

    async def _drain_stderr(self, name: str, reader: asyncio.StreamReader) -> None:
        while True:
            line = await reader.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr[name].append(text)
                logging.debug(f"[{self.label}] {name}: {text}")

    def start_feed(
        self,
        stdin: asyncio.StreamWriter,
        chunks: AsyncIterator[bytes],
        on_chunk: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._feed_task = asyncio.create_task(self._feed(stdin, chunks, on_chunk))

    async def _feed(
        self,
        stdin: asyncio.StreamWriter,
        chunks: AsyncIterator[bytes],
        on_chunk: Optional[Callable[[int], None]],
    ) -> None:
        try:
            async for chunk in chunks:
                stdin.write(chunk)
                await stdin.drain()
                if on_chunk:
                    on_chunk(len(chunk))
        except (BrokenPipeError, ConnectionResetError):
            logging.warning(f"[{self.label}] transcoder closed its input early")
            self._input_rejected = True
            await self._stop_fetch()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._feed_error = e
            logging.error(f"[{self.label}] feeding the transcoder failed: {str(e)}")
            await self._stop_fetch()
        finally:
            # EOF lets the transcoder finish instead of waiting forever
            if not stdin.is_closing():
                stdin.close()

    async def _stop_fetch(self) -> None:
        """Stop a download nobody reads any more, so it can be reaped."""
        fetch = self.processes.get(FETCH)
        if fetch is None:
            return
        if _send_signal(fetch, fetch.terminate):
            self._signalled.add(FETCH)
        try:
            await asyncio.wait_for(_discard(fetch.stdout), timeout=TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logging.warning(f"[{self.label}] {FETCH} ignored SIGTERM, killing it")
            _send_signal(fetch, fetch.kill)
            await _discard(fetch.stdout)

    async def output(self) -> AsyncIterator[bytes]:
        """Transcoder stdout followed by the exit-code checks."""
        transcoder = self.processes[TRANSCODE]
        async for chunk in iter_stream(transcoder.stdout):
            yield chunk

        if self._feed_task is not None:
            await asyncio.gather(self._feed_task, return_exceptions=True)
        if self._closed:
            raise ProcessingFailedError("Audio stream was closed before it finished")

        # A transcoder that stopped reading is the cause, not the stopped download
        if self._input_rejected:
            await self._check_exit(TRANSCODE, ProcessingFailedError, "Failed to convert audio")
        if FETCH in self.processes:
            await self._check_exit(FETCH, DownloadFailedError, "Failed to download media")
        if self._feed_error is not None:
            raise self._feed_error
        await self._check_exit(TRANSCODE, ProcessingFailedError, "Failed to convert audio")

    async def _check_exit(self, name: str, error_cls: Type[MediaDigestError], message: str) -> None:
        process = self.processes[name]
        code = await process.wait()
        if code == 0 or (code < 0 and name in self._signalled):
            return

        task = self._stderr_tasks.get(name)
        if task is not None:
            await asyncio.wait([task], timeout=1.0)
        stderr = self.stderr_tail(name)
        logging.error(f"[{self.label}] {name} exited with code {code}: {stderr}")
        raise error_cls(
            f"{message} ({name} exited with code {code})",
            details={"returncode": code, "stderr": stderr},
        )

    async def cleanup(self) -> None:
        """Terminate running subprocesses and cancel helper tasks."""
        if self._closed:
            return
        self._closed = True

        # Nothing may read the pipes below while they are being drained
        if isinstance(self.stream, AdaptiveBuffer):
            try:
                await self.stream.aclose()
            except RuntimeError:
                logging.debug(f"[{self.label}] audio stream still in use, closing the processes only")
        if self._feed_task is not None:
            self._feed_task.cancel()
            await asyncio.gather(self._feed_task, return_exceptions=True)

        await self._terminate_all()

        tasks = list(self._stderr_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logging.info(f"[{self.label}] pipeline cleaned up")

    async def _terminate_all(self) -> None:
        """SIGTERM every process, then wait for all of them within one grace period."""
        running = {name: p for name, p in self.processes.items() if p.returncode is None}
        for name, process in running.items():
            if _send_signal(process, process.terminate):
                self._signalled.add(name)

        # wait() only returns once stdout reaches EOF
        drains = [asyncio.create_task(_discard(p.stdout)) for p in self.processes.values()]
        waits = {name: asyncio.create_task(p.wait()) for name, p in running.items()}
        try:
            if waits:
                await asyncio.wait(waits.values(), timeout=TERMINATE_GRACE_SECONDS)
            for name, waiter in waits.items():
                if not waiter.done():
                    logging.warning(f"[{self.label}] {name} ignored SIGTERM, killing it")
                    _send_signal(running[name], running[name].kill)
            await asyncio.gather(*waits.values(), return_exceptions=True)
        finally:
            for drain in drains:
                drain.cancel()
            await asyncio.gather(*drains, return_exceptions=True)


def _send_signal(process: asyncio.subprocess.Process, send: Callable[[], None]) -> bool:
    if process.returncode is not None:
        return False
    try:
        send()
    except ProcessLookupError:
        return False
    return True


async def _discard(reader: Optional[asyncio.StreamReader]) -> None:
    """Read a pipe to EOF and drop the data."""
    if reader is None:
        return
    try:
        while await reader.read(READ_CHUNK_SIZE):
            pass
    except RuntimeError:
        # Another task is reading this pipe, so it is not stalled
        logging.debug("Pipe already has a reader, not draining it")


class AudioPipelineBuilder:
    """Spawns and wires the external processes that produce the audio stream."""

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        yt_dlp_path: Optional[str] = None,
        credential_provider: Optional[CookieFileProvider] = None,
        audio_bitrate: str = config.AUDIO_BITRATE,
        audio_channels: int = config.AUDIO_CHANNELS,
        audio_sample_rate: int = config.AUDIO_SAMPLE_RATE,
        buffer_options: Optional[dict] = None,
    ):
        """
        Initialize the builder.

        Args:
            ffmpeg_path: ffmpeg executable (defaults to config.FFMPEG_PATH)
            yt_dlp_path: yt-dlp executable (defaults to config.YT_DLP_PATH)
            credential_provider: Optional source of a cookie file for yt-dlp
            buffer_options: Keyword arguments for the AdaptiveBuffer around the output
        """
        self.ffmpeg_path = ffmpeg_path or config.FFMPEG_PATH
        self.yt_dlp_path = yt_dlp_path or config.YT_DLP_PATH
        self.credential_provider = credential_provider
        self.audio_bitrate = audio_bitrate
        self.audio_channels = audio_channels
        self.audio_sample_rate = audio_sample_rate
        self.buffer_options = buffer_options or {}

    def fetch_command(self, url: str, cookies_path: Optional[str] = None) -> List[str]:
        command = [
            self.yt_dlp_path,
            "--format", "bestaudio[ext=m4a]/bestaudio[ext=mp3]/bestaudio",
            "--output", "-",
            "--no-playlist",
            "--no-warnings",
            "--quiet",
            "--user-agent", USER_AGENT,
            "--add-header", "Referer:https://www.youtube.com/",
        ]
        if cookies_path:
            command += ["--cookies", cookies_path]
        command += ["--", url]
        return command

    def transcode_command(self) -> List[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "warning",
            "-i", "pipe:0",
            "-vn",
            "-f", config.AUDIO_FORMAT,
            "-ab", self.audio_bitrate,
            "-ac", str(self.audio_channels),
            "-ar", str(self.audio_sample_rate),
            "pipe:1",
        ]

    async def _spawn(
        self,
        command: List[str],
        stdin,
        error_cls: Type[MediaDigestError],
    ) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise error_cls(f"Could not start {command[0]}", details={"error": str(e)}) from e

    def _log_resize(self, label: str) -> Callable[[int, str], None]:
        def on_change(size: int, reason: str) -> None:
            logging.info(f"[{label}] audio buffer now {size // 1024}KB ({reason})")
        return on_change

    def _wrap_output(self, pipeline: AudioPipeline) -> None:
        options = {"on_buffer_size_change": self._log_resize(pipeline.label), **self.buffer_options}
        pipeline.stream = AdaptiveBuffer(pipeline.output(), **options)

    async def build_remote(
        self, url: str, on_progress: Optional[Callable[[float], None]] = None, label: str = "remote"
    ) -> AudioPipeline:
        """
        Start yt-dlp piped into ffmpeg.

        Args:
            url: Video URL
            on_progress: Called with the kilobytes downloaded so far
            label: Name used in log lines (usually the media id)

        Returns:
            AudioPipeline whose stream yields mp3 bytes
        """
        cookies_path = await self.credential_provider.get() if self.credential_provider else None
        pipeline = AudioPipeline(label)
        try:
            fetch = await self._spawn(
                self.fetch_command(url, cookies_path), asyncio.subprocess.DEVNULL, DownloadFailedError
            )
            pipeline.attach(FETCH, fetch)
            transcoder = await self._spawn(
                self.transcode_command(), asyncio.subprocess.PIPE, ProcessingFailedError
            )
            pipeline.attach(TRANSCODE, transcoder)
        except BaseException:
            await pipeline.cleanup()
            raise

        logging.info(f"[{label}] streaming audio from {url}")
        pipeline.start_feed(transcoder.stdin, iter_stream(fetch.stdout), ByteProgress(on_progress))
        self._wrap_output(pipeline)
        return pipeline

    async def build_local(
        self, payload: LocalPayload, on_progress: Optional[Callable[[float], None]] = None, label: str = "local"
    ) -> AudioPipeline:
        """
        Start ffmpeg fed from memory, a local file, or an async byte stream.

        Args:
            payload: bytes, a file path, or an async iterator of bytes
            on_progress: Called with the kilobytes fed to ffmpeg so far
            label: Name used in log lines (usually the media id)

        Returns:
            AudioPipeline whose stream yields mp3 bytes
        """
        if isinstance(payload, (bytes, bytearray)):
            chunks = iter_bytes(bytes(payload))
        elif isinstance(payload, (str, Path)):
            chunks = iter_file(Path(payload))
        else:
            chunks = payload

        pipeline = AudioPipeline(label)
        try:
            transcoder = await self._spawn(
                self.transcode_command(), asyncio.subprocess.PIPE, ProcessingFailedError
            )
            pipeline.attach(TRANSCODE, transcoder)
        except BaseException:
            await pipeline.cleanup()
            raise

        logging.info(f"[{label}] converting local media to {config.AUDIO_FORMAT}")
        pipeline.start_feed(transcoder.stdin, chunks, ByteProgress(on_progress))
        self._wrap_output(pipeline)
        return pipeline
