"""
Credential material handed to the downloader.
"""

import asyncio
from pathlib import Path
from typing import Optional, Union

from media_digest.config import config
from media_digest.utils.logger import logging


class CookieFileProvider:
    """Supplies a Netscape cookie jar path to yt-dlp when one is configured."""

    def __init__(self, path: Optional[Union[str, Path]] = None, enabled: Optional[bool] = None):
        self.path = Path(path) if path else config.YOUTUBE_COOKIES_PATH
        self.enabled = config.YOUTUBE_USE_COOKIES if enabled is None else enabled

    async def get(self) -> Optional[str]:
        """
        Get the cookie file path.

        Returns:
            Path of the cookie file, or None when cookies are disabled or missing
        """
        if not self.enabled:
            return None

        if not await asyncio.to_thread(self.path.is_file):
            logging.debug(f"Cookie file not found at {self.path}, downloading without cookies")
            return None

        logging.info(f"Using cookies from {self.path}")
        return str(self.path)
