"""Job records for the transcoding queue.

Jobs live in the job store (Redis hash per job), so these are pydantic
models with a flat string encoding rather than ORM rows.
"""

import json
import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class JobState(str, Enum):
    """Lifecycle state of a transcode job."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED})


class ErrorKind(str, Enum):
    """Why a job ended in the failed state."""
    UPLOAD_FAILURE = "upload_failure"
    ENCODE_FAILURE = "encode_failure"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


class JobSpec(BaseModel):
    """Requested output. Fixed when the job is created."""
    target_format: str
    container: str
    codec: str
    bitrate: str
    resolution: str

    class Config:
        frozen = True


class JobResult(BaseModel):
    original_location: str
    transcoded_location: str
    transcoded_key: str
    download_url: str


class JobError(BaseModel):
    kind: ErrorKind
    message: str


class TranscodeJob(BaseModel):
    """One transcode request plus its lifecycle state."""
    id: str
    state: JobState = JobState.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    spec: JobSpec
    filename: str
    original_key: str
    original_location: str = ""
    transcoded_key: str
    input_path: str = ""
    created_at: float = Field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    deadline_at: Optional[float] = None
    worker_id: Optional[str] = None
    result: Optional[JobResult] = None
    error: Optional[JobError] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_hash(self) -> dict[str, str]:
        """Flatten to a Redis hash mapping. Unset optionals are omitted."""
        data = {
            "id": self.id,
            "state": self.state.value,
            "progress": str(self.progress),
            "spec": self.spec.model_dump_json(),
            "filename": self.filename,
            "original_key": self.original_key,
            "original_location": self.original_location,
            "transcoded_key": self.transcoded_key,
            "input_path": self.input_path,
            "created_at": repr(self.created_at),
        }
        for name in ("started_at", "finished_at", "deadline_at"):
            value = getattr(self, name)
            if value is not None:
                data[name] = repr(value)
        if self.worker_id:
            data["worker_id"] = self.worker_id
        if self.result is not None:
            data["result"] = self.result.model_dump_json()
        if self.error is not None:
            data["error"] = self.error.model_dump_json()
        return data

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "TranscodeJob":
        """Rebuild a job from the mapping produced by ``to_hash``."""
        payload = dict(data)
        payload["spec"] = json.loads(payload["spec"])
        for name in ("result", "error"):
            if payload.get(name):
                payload[name] = json.loads(payload[name])
        return cls.model_validate(payload)
