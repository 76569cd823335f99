"""
Tests for the subprocess pipeline and the cookie provider.
"""

import asyncio
import logging
import time

import pytest

from media_digest.core.credentials import CookieFileProvider
from media_digest.core.pipeline import FETCH, TRANSCODE, AudioPipelineBuilder, ByteProgress
from media_digest.utils.error_handling import DownloadFailedError, ProcessingFailedError

ENDLESS_FETCH = "import sys\nwhile True:\n    sys.stdout.buffer.write(b'x' * 65536)"


async def collect(stream):
    return b"".join([chunk async for chunk in stream])


def test_fetch_command_shape():
    builder = AudioPipelineBuilder(yt_dlp_path="yt-dlp")
    url = "https://youtu.be/abc"

    command = builder.fetch_command(url)

    assert command[0] == "yt-dlp"
    assert command[-2:] == ["--", url]
    assert command[command.index("--output") + 1] == "-"
    assert "--no-playlist" in command
    assert "--cookies" not in command


def test_fetch_command_with_cookies():
    command = AudioPipelineBuilder().fetch_command("https://youtu.be/abc", "/tmp/cookies.txt")
    assert command[command.index("--cookies") + 1] == "/tmp/cookies.txt"
    assert command.index("--cookies") < command.index("--")


def test_url_cannot_be_read_as_an_option():
    command = AudioPipelineBuilder().fetch_command("--exec=rm -rf /")
    assert command[-2:] == ["--", "--exec=rm -rf /"]


def test_transcode_command_shape():
    builder = AudioPipelineBuilder(ffmpeg_path="ffmpeg")

    command = builder.transcode_command()

    assert command[0] == "ffmpeg"
    assert command[command.index("-i") + 1] == "pipe:0"
    assert command[-1] == "pipe:1"
    for flag, value in (("-f", "mp3"), ("-ab", "128k"), ("-ac", "2"), ("-ar", "44100")):
        assert command[command.index(flag) + 1] == value
    assert "-vn" in command


def test_byte_progress_reports_kilobytes():
    reported = []
    progress = ByteProgress(reported.append, interval=0)

    progress(1024)
    progress(2048)

    assert reported == [1.0, 3.0]
    assert progress.total_bytes == 3072


@pytest.mark.asyncio
async def test_remote_pipeline_streams_transcoded_audio(scripted_builder):
    builder = scripted_builder()

    pipeline = await builder.build_remote("https://example.com/video", label="test")
    try:
        audio = await collect(pipeline.stream)
    finally:
        await pipeline.cleanup()

    assert audio == b"audio-bytes" * 1000
    assert set(pipeline.processes) == {FETCH, TRANSCODE}


@pytest.mark.asyncio
async def test_failed_download_surfaces_on_stream(scripted_builder):
    builder = scripted_builder(
        fetch_script="import sys; sys.stderr.write('ERROR: Video unavailable\\n'); sys.exit(1)"
    )

    pipeline = await builder.build_remote("https://example.com/missing")
    try:
        with pytest.raises(DownloadFailedError) as error:
            await collect(pipeline.stream)
    finally:
        await pipeline.cleanup()

    assert error.value.details["returncode"] == 1
    assert "Video unavailable" in error.value.details["stderr"]


@pytest.mark.asyncio
async def test_failed_conversion_surfaces_on_stream(scripted_builder):
    builder = scripted_builder(transcode_script="import sys; sys.stdin.buffer.read(); sys.exit(2)")

    pipeline = await builder.build_local(b"not really a video" * 10)
    try:
        with pytest.raises(ProcessingFailedError) as error:
            await collect(pipeline.stream)
    finally:
        await pipeline.cleanup()

    assert error.value.details["returncode"] == 2


@pytest.mark.asyncio
async def test_local_pipeline_feeds_bytes_and_files(scripted_builder, tmp_path):
    builder = scripted_builder()
    payload = b"\x00\x00\x00\x18ftypmp42" + b"x" * 200_000
    path = tmp_path / "clip.mp4"
    path.write_bytes(payload)

    for source in (payload, path):
        pipeline = await builder.build_local(source)
        try:
            assert await collect(pipeline.stream) == payload
        finally:
            await pipeline.cleanup()


@pytest.mark.asyncio
async def test_cleanup_terminates_processes_and_is_idempotent(scripted_builder):
    builder = scripted_builder(fetch_script="import time; time.sleep(30)")

    pipeline = await builder.build_remote("https://example.com/slow")
    await pipeline.cleanup()
    await pipeline.cleanup()

    assert pipeline.closed
    assert all(process.returncode is not None for process in pipeline.processes.values())


@pytest.mark.asyncio
async def test_transcoder_exit_stops_the_download(scripted_builder):
    builder = scripted_builder(fetch_script=ENDLESS_FETCH, transcode_script="import sys; sys.exit(3)")

    pipeline = await builder.build_remote("https://example.com/endless")
    try:
        with pytest.raises(ProcessingFailedError) as error:
            await asyncio.wait_for(collect(pipeline.stream), timeout=10)
    finally:
        await pipeline.cleanup()

    assert error.value.details["returncode"] == 3
    assert pipeline.processes[FETCH].returncode is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("close_stream_first", [True, False])
async def test_cleanup_after_early_stop_is_prompt(scripted_builder, close_stream_first):
    builder = scripted_builder(fetch_script=ENDLESS_FETCH)

    pipeline = await builder.build_remote("https://example.com/endless")
    async for _ in pipeline.stream:
        break
    if close_stream_first:
        await pipeline.stream.aclose()

    started = time.monotonic()
    await pipeline.cleanup()

    assert time.monotonic() - started < 2
    assert all(process.returncode is not None for process in pipeline.processes.values())


@pytest.mark.asyncio
async def test_missing_binary_is_a_processing_failure():
    builder = AudioPipelineBuilder(ffmpeg_path="/nonexistent/ffmpeg-binary")

    with pytest.raises(ProcessingFailedError):
        await builder.build_local(b"data")


@pytest.mark.asyncio
async def test_cookie_provider(tmp_path):
    cookies = tmp_path / "cookies.txt"
    cookies.write_text("# Netscape HTTP Cookie File\n")

    assert await CookieFileProvider(cookies, enabled=True).get() == str(cookies)
    assert await CookieFileProvider(cookies, enabled=False).get() is None
    assert await CookieFileProvider(tmp_path / "missing.txt", enabled=True).get() is None


@pytest.mark.asyncio
async def test_missing_cookie_file_is_logged_at_debug(tmp_path, caplog):
    with caplog.at_level(logging.DEBUG, logger="mediadigest"):
        await CookieFileProvider(tmp_path / "missing.txt", enabled=True).get()

    records = [record for record in caplog.records if "Cookie file not found" in record.getMessage()]
    assert [record.levelno for record in records] == [logging.DEBUG]
