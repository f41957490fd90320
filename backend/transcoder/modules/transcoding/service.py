"""Admission and status services for transcode jobs.

``AdmissionController`` accepts uploads and either starts them on a free
worker slot or queues them. ``StatusReporter`` answers status queries.
``build_services`` wires both, plus the store, storage and worker pool,
from settings at application startup.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from transcoder.core.config import Settings
from transcoder.core.logging import log_error, log_info, log_warning
from transcoder.core.metrics import JOBS_REJECTED_TOTAL, JOBS_SUBMITTED_TOTAL, QUEUE_DEPTH
from transcoder.core.redis import create_redis_client
from transcoder.core.storage import StorageConfig, StorageService, create_storage_backend
from transcoder.modules.transcoding.exceptions import (
    JobNotFoundError,
    QueueFullError,
    UploadFailureError,
)
from transcoder.modules.transcoding.ffmpeg import FFmpegTranscoder
from transcoder.modules.transcoding.models import TranscodeJob
from transcoder.modules.transcoding.repository import (
    InMemoryJobStore,
    JobStore,
    RedisJobStore,
)
from transcoder.modules.transcoding.schemas import QueueStatsResponse, TranscodeRequest
from transcoder.modules.transcoding.storage import (
    build_artifact_keys,
    cleanup_local_file,
    guess_content_type,
    temp_input_path,
    write_temp_file,
)
from transcoder.modules.transcoding.worker import TranscodeExecutor, WorkerPool

logger = logging.getLogger(__name__)


class AdmissionController:
    """Accepts transcode submissions."""

    def __init__(
        self,
        store: JobStore,
        storage: StorageService,
        pool: WorkerPool,
        temp_dir: str,
        max_queue_length: int = 0,
    ):
        self.store = store
        self.storage = storage
        self.pool = pool
        self.temp_dir = temp_dir
        self.max_queue_length = max_queue_length

    async def submit(self, content: bytes, filename: str, request: TranscodeRequest) -> str:
        """Create a job for an uploaded file and return its ID.

        The original is stored first; if that fails nothing is created.
        The job then runs at once on a free slot or waits in the queue.
        Never waits for the encode itself.

        Raises:
            UploadFailureError: The original could not be stored
            QueueFullError: The queue is bounded and full
        """
        await self._check_backpressure()

        spec = request.to_job_spec()
        keys = build_artifact_keys(filename, spec.container)
        job_id = uuid.uuid4().hex

        upload = await self.storage.put(keys.original_key, content, guess_content_type(filename))
        if not upload.success:
            JOBS_REJECTED_TOTAL.labels(reason="upload_failure").inc()
            raise UploadFailureError(
                f"Failed to store original upload: {upload.error_message}",
                keys.original_key,
            )

        input_path = temp_input_path(self.temp_dir, job_id, filename)
        await asyncio.to_thread(write_temp_file, input_path, content)

        job = TranscodeJob(
            id=job_id,
            spec=spec,
            filename=filename,
            original_key=keys.original_key,
            original_location=upload.url,
            transcoded_key=keys.transcoded_key,
            input_path=input_path,
        )
        try:
            await self.store.create(job)
            if await self.pool.try_dispatch(job_id):
                JOBS_SUBMITTED_TOTAL.labels(path="direct").inc()
                log_info(logger, f"Job {job_id} dispatched directly", job_id=job_id)
                return job_id
            position = await self.store.enqueue(job_id, self.max_queue_length)
        except QueueFullError:
            log_warning(logger, f"Queue filled up before job {job_id} could be queued", job_id=job_id)
            await self._abandon(job, reason="queue_full")
            raise
        except Exception as e:
            log_error(logger, f"Could not admit job {job_id}", e, job_id=job_id)
            await self._abandon(job, reason="store_error")
            raise

        self.pool.notify()
        JOBS_SUBMITTED_TOTAL.labels(path="queued").inc()
        QUEUE_DEPTH.set(position)
        log_info(logger, f"Job {job_id} queued at position {position}", job_id=job_id)
        return job_id

    async def _check_backpressure(self) -> None:
        if not self.max_queue_length or self.pool.free_slots() > 0:
            return
        if await self.store.queue_length() >= self.max_queue_length:
            JOBS_REJECTED_TOTAL.labels(reason="queue_full").inc()
            raise QueueFullError(self.max_queue_length)

    async def _abandon(self, job: TranscodeJob, reason: str) -> None:
        """Undo a submission that was stored but never queued or started.

        Removes the record, the stored original and the spooled file so
        nothing is left waiting on a slot. A failure here is logged and the
        caller re-raises the admission error.
        """
        JOBS_REJECTED_TOTAL.labels(reason=reason).inc()
        cleanup_local_file(job.input_path)
        try:
            await self.store.discard(job.id)
        except Exception as e:
            log_error(logger, f"Could not discard abandoned job {job.id}", e, job_id=job.id)
        await self.storage.delete(job.original_key)


class StatusReporter:
    """Read-only job status queries."""

    def __init__(self, store: JobStore, pool: WorkerPool):
        self.store = store
        self.pool = pool

    async def get_status(self, job_id: str) -> TranscodeJob:
        """Current snapshot of a job.

        Raises:
            JobNotFoundError: No job with this ID was ever created
        """
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def get_stats(self) -> QueueStatsResponse:
        running = await self.store.running_count()
        return QueueStatsResponse(
            capacity=self.pool.capacity,
            running=running,
            queued=await self.store.queue_length(),
            free_slots=self.pool.free_slots(),
        )


@dataclass
class TranscodingServices:
    """Process-wide collaborators, built once at startup."""
    store: JobStore
    storage: StorageService
    pool: WorkerPool
    admission: AdmissionController
    reporter: StatusReporter
    create_bucket: bool = False
    redis_client: Optional[object] = None

    async def start(self) -> None:
        if self.create_bucket:
            await self.storage.ensure_bucket()
        await self.pool.start()

    async def stop(self) -> None:
        await self.pool.stop()
        if self.redis_client is not None:
            await self.redis_client.aclose()


def build_services(config: Settings) -> TranscodingServices:
    """Construct the store, storage, engine, pool and services from settings."""
    redis_client = None
    if config.JOB_STORE_BACKEND == "memory":
        store: JobStore = InMemoryJobStore()
    elif config.JOB_STORE_BACKEND == "redis":
        redis_client = create_redis_client(config.REDIS_URL)
        store = RedisJobStore(redis_client, prefix=config.JOB_KEY_PREFIX)
    else:
        raise ValueError(f"Unsupported job store backend: {config.JOB_STORE_BACKEND}")

    storage = StorageService(create_storage_backend(StorageConfig.from_settings(config)))
    lease_seconds = config.ENCODE_TIMEOUT_SECONDS + config.STALE_JOB_GRACE_SECONDS
    executor = TranscodeExecutor(
        store=store,
        storage=storage,
        engine=FFmpegTranscoder(config.FFMPEG_PATH, config.FFPROBE_PATH),
        temp_dir=config.TEMP_DIR,
        encode_timeout=config.ENCODE_TIMEOUT_SECONDS,
        signed_url_expires=config.SIGNED_URL_EXPIRES_SECONDS,
        audio_bitrate=config.AUDIO_BITRATE,
        lease_seconds=lease_seconds,
    )
    pool = WorkerPool(
        store=store,
        executor=executor,
        capacity=config.WORKER_CAPACITY,
        poll_interval=config.QUEUE_POLL_INTERVAL_SECONDS,
        lease_seconds=lease_seconds,
        shutdown_grace=config.SHUTDOWN_GRACE_SECONDS,
    )
    return TranscodingServices(
        store=store,
        storage=storage,
        pool=pool,
        admission=AdmissionController(
            store=store,
            storage=storage,
            pool=pool,
            temp_dir=config.TEMP_DIR,
            max_queue_length=config.MAX_QUEUE_LENGTH,
        ),
        reporter=StatusReporter(store=store, pool=pool),
        create_bucket=config.STORAGE_CREATE_BUCKET,
        redis_client=redis_client,
    )
