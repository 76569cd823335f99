"""
Configuration for pytest tests.
"""

import os
import shutil
import sys
import tempfile
from pathlib import Path

import pytest

# Config reads the environment when media_digest is first imported
TEST_DATA_DIR = Path(tempfile.mkdtemp(prefix="media_digest_test_"))
os.environ["DATA_DIR"] = str(TEST_DATA_DIR)
os.environ["LOG_DIR"] = str(TEST_DATA_DIR / "logs")
os.environ["GROQ_API_KEY"] = os.environ.get("GROQ_API_KEY", "test_api_key")
os.environ["ENVIRONMENT"] = "development"
os.environ["YOUTUBE_USE_COOKIES"] = "false"
os.environ.pop("STORAGE_BUCKET", None)

from media_digest.core.pipeline import AudioPipelineBuilder  # noqa: E402


COPY_STDIN = "import sys, shutil; shutil.copyfileobj(sys.stdin.buffer, sys.stdout.buffer)"
EMIT_AUDIO = "import sys; sys.stdout.buffer.write(b'audio-bytes' * 1000)"


class ScriptedPipelineBuilder(AudioPipelineBuilder):
    """Runs small Python scripts in place of yt-dlp and ffmpeg."""

    def __init__(self, fetch_script=EMIT_AUDIO, transcode_script=COPY_STDIN, **kwargs):
        kwargs.setdefault("buffer_options", {"evaluation_interval": 0.05, "max_idle": 0.5})
        super().__init__(**kwargs)
        self.fetch_script = fetch_script
        self.transcode_script = transcode_script

    def fetch_command(self, url, cookies_path=None):
        return [sys.executable, "-c", self.fetch_script]

    def transcode_command(self):
        return [sys.executable, "-c", self.transcode_script]


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Remove the test data directory after the session."""
    yield
    shutil.rmtree(TEST_DATA_DIR, ignore_errors=True)


@pytest.fixture(scope="session")
def test_video_url():
    """Return a test YouTube video URL."""
    return "https://youtu.be/V3TUEeB0kW0?si=-InVol0JhtWji-6R"


@pytest.fixture
def scripted_builder():
    """Factory for pipeline builders backed by Python scripts."""
    return ScriptedPipelineBuilder


@pytest.fixture
def transcript_text():
    """A transcript long enough to be summarized."""
    return " ".join(f"word{i}" for i in range(120))
