"""Error taxonomy shared by the review engines and the HTTP adapter."""
from __future__ import annotations

from typing import Any, Optional


class ReviewError(Exception):
    """Base error. ``code`` is the stable, user-facing identifier."""

    code = "error"
    status_code = 500

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None, data: Any = None):
        if code is not None:
            self.code = code
        self.data = data
        super().__init__(message or self.code)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self), "data": self.data}


class ConfigError(ReviewError):
    code = "config_error"


class NotFound(ReviewError):
    code = "not_found"
    status_code = 404


class InvalidPath(ReviewError):
    code = "invalid_path"
    status_code = 400


class InvalidRequest(ReviewError):
    code = "invalid_request"
    status_code = 400


class MoveFailed(ReviewError):
    code = "move_failed"


class MissingSource(ReviewError):
    code = "missing_source"
    status_code = 409


class DirectoryUnreadable(ReviewError):
    code = "directory_unreadable"


class ToolUnavailable(ReviewError):
    code = "ffmpeg_missing"
    status_code = 503


class ProcessingFailed(ReviewError):
    code = "processing_failed"


class MissingCredentials(ReviewError):
    code = "missing_key"
    status_code = 400


class InvalidResponse(ReviewError):
    code = "invalid_response"
    status_code = 502


class ProviderError(ReviewError):
    code = "provider_error"
    status_code = 502


class AlreadyRunning(ReviewError):
    code = "job_running"
    status_code = 409


__all__ = [
    "ReviewError",
    "ConfigError",
    "NotFound",
    "InvalidPath",
    "InvalidRequest",
    "MoveFailed",
    "MissingSource",
    "DirectoryUnreadable",
    "ToolUnavailable",
    "ProcessingFailed",
    "MissingCredentials",
    "InvalidResponse",
    "ProviderError",
    "AlreadyRunning",
]
