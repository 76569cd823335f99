"""
Configuration settings for the media digest application.
"""

import os
from typing import Dict
from pathlib import Path
from dotenv import load_dotenv

from media_digest.utils.logger import logging


# Ensure environment variables are loaded
load_dotenv()

MB = 1024 * 1024


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration class."""

    # Application info
    APP_NAME = "Media Digest"
    APP_VERSION = "0.2.0"

    # Data directories
    BASE_DIR = Path(__file__).resolve().parent.parent.absolute()
    DATA_DIR = Path(os.getenv("DATA_DIR", BASE_DIR / "data"))
    TEMP_DIR = DATA_DIR / "tmp"
    UPLOADS_DIR = TEMP_DIR / "uploads"
    AUDIOS_DIR = TEMP_DIR / "audios"
    SESSIONS_DIR = TEMP_DIR / "sessions"
    COOKIES_DIR = TEMP_DIR / "cookies"

    # API keys
    GROQ_API_KEY = os.getenv("GROQ_API_KEY")

    # Default models
    DEFAULT_TRANSCRIPTION_MODEL = os.getenv("TRANSCRIPTION_MODEL", "whisper-large-v3-turbo")
    DEFAULT_SUMMARY_MODEL = os.getenv("SUMMARY_MODEL", "llama-3.3-70b-versatile")

    # External binaries
    YT_DLP_PATH = os.getenv("YT_DLP_PATH", "yt-dlp")
    FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")

    # Audio target for the transcoder
    AUDIO_FORMAT = "mp3"
    AUDIO_BITRATE = "128k"
    AUDIO_CHANNELS = 2
    AUDIO_SAMPLE_RATE = 44100

    # Cookies handed to yt-dlp
    YOUTUBE_USE_COOKIES = _env_flag("YOUTUBE_USE_COOKIES")
    YOUTUBE_COOKIES_PATH = Path(os.getenv("YOUTUBE_COOKIES_PATH", COOKIES_DIR / "youtube_cookies.txt"))

    # Size limits
    MAX_FILE_SIZE = 500 * MB
    MAX_LOCAL_FILE_SIZE = int(os.getenv("MAX_LOCAL_FILESIZE_MB", "100")) * MB
    TRANSCRIPTION_MAX_BYTES = 26 * MB

    # Blob storage (S3 compatible)
    STORAGE_BUCKET = os.getenv("STORAGE_BUCKET")
    STORAGE_ENDPOINT_URL = os.getenv("STORAGE_ENDPOINT_URL")
    STORAGE_REGION = os.getenv("STORAGE_REGION")
    STORAGE_BLOCK_SIZE = 8 * MB
    STORAGE_MAX_CONCURRENCY = 4
    STORAGE_BLOCK_ATTEMPTS = 3
    STORAGE_RETRY_DELAY = 1.0
    UPLOAD_URL_EXPIRY_MINUTES = 30

    # In-flight stream registry
    STREAM_TTL_SECONDS = 5 * 60

    # Summaries
    DEFAULT_SUMMARY_WORDS = 400
    MIN_SUMMARY_WORDS = 50
    MAX_SUMMARY_WORDS = 1000
    MIN_TRANSCRIPT_CHARS = 50
    WORDS_PER_SEGMENT = 50

    # Progress reporting
    PROGRESS_MIN_DELTA = 5
    PROGRESS_QUEUE_SIZE = 100

    SHUTDOWN_TIMEOUT_SECONDS = 10

    # Create temp directories if they don't exist
    @classmethod
    def initialize(cls):
        """Initialize the application configuration."""
        for directory in cls.get_paths().values():
            directory.mkdir(parents=True, exist_ok=True)

        # Validate required environment variables
        if not cls.GROQ_API_KEY:
            logging.warning("GROQ_API_KEY environment variable not set. "
                            "Please set it in the .env file or environment variables.")

    @classmethod
    def get_paths(cls) -> Dict[str, Path]:
        """Get the per-request temp directories."""
        return {
            "uploads_dir": cls.UPLOADS_DIR,
            "audios_dir": cls.AUDIOS_DIR,
            "sessions_dir": cls.SESSIONS_DIR,
            "cookies_dir": cls.COOKIES_DIR,
        }


class DevelopmentConfig(Config):
    """Development configuration."""

    DEBUG = True
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    """Production configuration."""

    DEBUG = False
    LOG_LEVEL = "INFO"


# Determine which configuration to use based on environment
def get_config():
    """Get the appropriate configuration based on environment."""
    env = os.getenv("ENVIRONMENT", "development").lower()
    if env == "production":
        return ProductionConfig
    else:
        return DevelopmentConfig


# Create a config instance
config = get_config()
config.initialize()
