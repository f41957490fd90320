"""Transcoding API router.

Upload endpoint, job status and queue statistics.
"""

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status

from transcoder.modules.transcoding.exceptions import (
    JobNotFoundError,
    QueueFullError,
    UploadFailureError,
)
from transcoder.modules.transcoding.schemas import (
    JobStatusResponse,
    QueueStatsResponse,
    SubmitResponse,
    TranscodeRequest,
)
from transcoder.modules.transcoding.service import (
    AdmissionController,
    StatusReporter,
    TranscodingServices,
)

router = APIRouter(tags=["transcoding"])


def get_services(request: Request) -> TranscodingServices:
    """Services built at startup and stored on the application state."""
    return request.app.state.transcoding


def get_admission(services: TranscodingServices = Depends(get_services)) -> AdmissionController:
    return services.admission


def get_reporter(services: TranscodingServices = Depends(get_services)) -> StatusReporter:
    return services.reporter


@router.post(
    "/upload",
    response_model=SubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def upload_video(
    video_file: UploadFile = File(..., alias="videoFile"),
    output_format: str = Form(..., alias="format"),
    bitrate: str = Form(""),
    resolution: str = Form(""),
    admission: AdmissionController = Depends(get_admission),
):
    """Upload a video and start a transcode job.

    Returns as soon as the job is running or queued; poll
    ``GET /job/{jobId}`` for progress and the download link.
    """
    try:
        request = TranscodeRequest(format=output_format, bitrate=bitrate, resolution=resolution)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    content = await video_file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")

    try:
        job_id = await admission.submit(content, video_file.filename or "video", request)
    except UploadFailureError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)
    except QueueFullError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)

    return SubmitResponse(job_id=job_id)


@router.get("/job/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    reporter: StatusReporter = Depends(get_reporter),
):
    """Get job status, progress and result or error."""
    try:
        job = await reporter.get_status(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobStatusResponse.from_job(job)


@router.get("/jobs/stats", response_model=QueueStatsResponse)
async def get_queue_stats(reporter: StatusReporter = Depends(get_reporter)):
    """Worker pool capacity and queue depth."""
    return await reporter.get_stats()
