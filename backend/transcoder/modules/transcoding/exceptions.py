"""Errors raised by the transcoding job pipeline."""

from typing import Optional


class TranscodingError(Exception):
    """Base exception for transcoding errors."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        self.message = message
        self.job_id = job_id
        super().__init__(message)


class UploadFailureError(TranscodingError):
    """Object store rejected an original or transcoded artifact write."""

    def __init__(self, message: str, key: str, job_id: Optional[str] = None):
        self.key = key
        super().__init__(message, job_id)


class EncodeFailureError(TranscodingError):
    """Encode engine reported an error; message is the engine's own output."""
    pass


class EncodeTimeoutError(TranscodingError):
    """Job exceeded the maximum allowed encode duration."""

    def __init__(self, timeout_seconds: float, job_id: Optional[str] = None):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Encode exceeded {timeout_seconds:g}s timeout", job_id)


class JobNotFoundError(TranscodingError):
    """Status query for an unknown job ID."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", job_id)


class QueueFullError(TranscodingError):
    """Bounded queue cannot accept another job."""

    def __init__(self, max_length: int):
        self.max_length = max_length
        super().__init__(f"Transcode queue is full ({max_length} jobs waiting)")
