from pydantic import BaseModel
from typing import Optional


class UploadUrlRequest(BaseModel):
    """Model for requesting a presigned upload URL."""
    file_name: str
    expiry_minutes: Optional[int] = None


class UploadUrlResponse(BaseModel):
    """Model for presigned upload URL responses."""
    url: str
    blob_name: str
    expires_at: str


class HealthResponse(BaseModel):
    """Model for health check responses."""
    status: str
    version: str
    active_streams: int = 0


class ErrorResponse(BaseModel):
    """Model for error responses."""
    detail: str
    code: str
