"""Pydantic schemas for the transcoding API."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from transcoder.modules.transcoding.ffmpeg import select_profile
from transcoder.modules.transcoding.models import (
    ErrorKind,
    JobSpec,
    JobState,
    TranscodeJob,
)


class TranscodeRequest(BaseModel):
    """Requested output for an upload.

    ``bitrate`` and ``resolution`` are handed to the encoder as-is.
    """
    format: str = Field(..., min_length=1, max_length=16)
    bitrate: str = Field(default="", max_length=32)
    resolution: str = Field(default="", max_length=32)

    def to_job_spec(self) -> JobSpec:
        profile = select_profile(self.format)
        return JobSpec(
            target_format=self.format,
            container=profile.extension,
            codec=profile.video_codec,
            bitrate=self.bitrate,
            resolution=self.resolution,
        )


class SubmitResponse(BaseModel):
    job_id: str = Field(..., alias="jobId")

    class Config:
        populate_by_name = True


class JobResultResponse(BaseModel):
    original_location: str
    transcoded_location: str
    download_url: str


class JobErrorResponse(BaseModel):
    kind: ErrorKind
    message: str


class JobStatusResponse(BaseModel):
    """Snapshot of a job's state, progress and outcome."""
    job_id: str = Field(..., alias="jobId")
    state: JobState
    progress: int
    filename: str
    format: str
    codec: str
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[JobResultResponse] = None
    error: Optional[JobErrorResponse] = None

    class Config:
        populate_by_name = True

    @classmethod
    def from_job(cls, job: TranscodeJob) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            state=job.state,
            progress=job.progress,
            filename=job.filename,
            format=job.spec.container,
            codec=job.spec.codec,
            created_at=_from_timestamp(job.created_at),
            started_at=_from_timestamp(job.started_at),
            finished_at=_from_timestamp(job.finished_at),
            result=JobResultResponse(
                original_location=job.result.original_location,
                transcoded_location=job.result.transcoded_location,
                download_url=job.result.download_url,
            ) if job.result else None,
            error=JobErrorResponse(
                kind=job.error.kind,
                message=job.error.message,
            ) if job.error else None,
        )


class QueueStatsResponse(BaseModel):
    capacity: int
    running: int
    queued: int
    free_slots: int


def _from_timestamp(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)
