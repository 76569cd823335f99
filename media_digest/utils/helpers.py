"""
Helper utility functions for the media digest application.
"""

import re
from typing import Optional


def sanitize_filename(filename: str) -> str:
    """
    Sanitize a string to be used as a filename or blob name.

    Args:
        filename: The filename to sanitize

    Returns:
        Sanitized filename
    """
    # Drop any directory part a client may have sent
    sanitized = re.split(r"[\\/]", filename)[-1]
    # Remove invalid characters
    sanitized = re.sub(r'[*?:"<>|\x00-\x1f]', "_", sanitized)
    # Replace spaces with underscores
    sanitized = sanitized.replace(" ", "_").lstrip(".")
    # Limit length
    if len(sanitized) > 100:
        sanitized = sanitized[:100]
    return sanitized or "upload"


def count_words(text: Optional[str]) -> int:
    """Count whitespace separated words."""
    if not text:
        return 0
    return len(text.split())


def format_size(size_bytes: Optional[float]) -> str:
    """Human readable byte count, e.g. 1.5MB."""
    if size_bytes is None:
        return "unknown size"
    size = float(size_bytes)
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}B"
        size /= 1024
    return f"{size:.1f}GB"
