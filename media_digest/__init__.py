"""
Media Digest.

Turns a YouTube URL or an uploaded video into an audio stream, a transcript and
a length-bounded summary, streaming progress events while it works.
"""

from media_digest.config import config

__version__ = config.APP_VERSION
