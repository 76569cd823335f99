"""
Centralized error handling for the application.
"""

import json
from enum import Enum
from typing import Optional, Dict, Any

from media_digest.config import config
from media_digest.utils.logger import logging


GENERIC_ERROR_MESSAGE = "An error occurred while processing your request. Please try again."


class MediaDigestError(Exception):
    """Base class for every error the pipeline raises on purpose."""

    code = "UNKNOWN_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def add_context(self, **context: Any) -> "MediaDigestError":
        """Attach stage context (stage name, media id) without overwriting existing keys."""
        for key, value in context.items():
            if value is not None:
                self.details.setdefault(key, value)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}

    def __str__(self) -> str:
        return self.message


class BadRequestError(MediaDigestError):
    """Invalid or missing URL or file, or an unsupported format."""

    code = "BAD_REQUEST"


class ValidationError(BadRequestError):
    """Input rejected before any external call was made."""

    code = "VALIDATION_ERROR"


class DownloadFailedError(MediaDigestError):
    """The fetch subprocess failed."""

    code = "DOWNLOAD_FAILED"


class ProcessingFailedError(MediaDigestError):
    """Transcoding, transcription or summarization produced no usable output."""

    code = "PROCESSING_FAILED"


class DeletionFailedError(MediaDigestError):
    """A temporary artifact could not be removed."""

    code = "DELETION_FAILED"


class StorageErrorCode(str, Enum):
    """Failure kinds surfaced by the blob storage layer."""
    NOT_INITIALIZED = "NOT_INITIALIZED"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    UNKNOWN = "UNKNOWN"


class StorageError(MediaDigestError):
    """Blob storage failure carrying a StorageErrorCode."""

    def __init__(
        self,
        message: str,
        storage_code: StorageErrorCode = StorageErrorCode.UNKNOWN,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.storage_code = StorageErrorCode(storage_code)

    @property
    def code(self) -> str:
        return f"STORAGE_{self.storage_code.value}"


def user_message(error: BaseException) -> str:
    """
    Get the message that may be shown to an end user for an error.

    Domain errors carry a message written for users; anything else is replaced
    by a generic message so internal details never leave the server.
    """
    if isinstance(error, MediaDigestError) and error.message:
        return error.message
    return GENERIC_ERROR_MESSAGE


def http_status_for(error: BaseException) -> int:
    """Map an error onto the HTTP status used by the API layer."""
    if isinstance(error, BadRequestError):
        return 400
    if isinstance(error, StorageError):
        if error.storage_code == StorageErrorCode.NOT_FOUND:
            return 404
        if error.storage_code == StorageErrorCode.UNAUTHORIZED:
            return 401
    return 500


def log_diagnostic_info(context: Dict[str, Any]):
    """
    Log diagnostic information for debugging.

    Args:
        context: Dictionary of diagnostic information
    """
    if not getattr(config, "DEBUG", False):
        return

    logging.info(f"Diagnostic info: {json.dumps(context, default=str)}")
