"""Worker pool for transcode jobs.

A fixed number of slots run jobs concurrently. Each slot drives one job end
to end (encode, upload, record the terminal state) and is released in a
``finally`` block whatever happens. Freed slots are refilled from the FIFO
queue by a dispatch loop woken by an ``asyncio.Event``, with a poll every
``poll_interval`` seconds (at most 1s) as a safety net.

While a slot holds a job it keeps renewing the job's lease in the store.
Jobs still running when ``stop`` gives up waiting are failed so they do not
keep holding shared capacity.
"""

import asyncio
import logging
import os
import socket
import time
from contextlib import aclosing
from typing import Optional

from transcoder.core.logging import job_id_var, log_error, log_info, log_warning
from transcoder.core.metrics import (
    QUEUE_DEPTH,
    WORKER_SLOTS_BUSY,
    WORKER_SLOTS_CAPACITY,
    record_job_finished,
)
from transcoder.core.storage import StorageService
from transcoder.modules.transcoding.exceptions import (
    EncodeFailureError,
    EncodeTimeoutError,
    TranscodingError,
    UploadFailureError,
)
from transcoder.modules.transcoding.ffmpeg import (
    EncodeEventType,
    FFmpegConfig,
    FFmpegTranscoder,
    select_profile,
)
from transcoder.modules.transcoding.models import (
    ErrorKind,
    JobError,
    JobResult,
    JobState,
    TranscodeJob,
)
from transcoder.modules.transcoding.repository import JobStore
from transcoder.modules.transcoding.storage import (
    cleanup_local_file,
    guess_content_type,
    temp_input_path,
    temp_output_path,
)

logger = logging.getLogger(__name__)


class TranscodeExecutor:
    """Runs a single claimed job inside a worker slot."""

    def __init__(
        self,
        store: JobStore,
        storage: StorageService,
        engine: FFmpegTranscoder,
        temp_dir: str,
        encode_timeout: float,
        signed_url_expires: int = 3600,
        audio_bitrate: str = "128k",
        lease_seconds: float = 0.0,
    ):
        self.store = store
        self.storage = storage
        self.engine = engine
        self.temp_dir = temp_dir
        self.encode_timeout = encode_timeout
        self.signed_url_expires = signed_url_expires
        self.audio_bitrate = audio_bitrate
        # 0 disables renewal; the claim-time deadline then stands
        self.lease_seconds = lease_seconds

    async def execute(self, job: TranscodeJob) -> JobState:
        """Run ``job`` to a terminal state and return that state.

        Per-job failures are recorded on the job, not raised. Temporary
        files are removed after the terminal transition.
        """
        token = job_id_var.set(job.id)
        started = time.monotonic()
        input_path = job.input_path
        output_path = temp_output_path(self.temp_dir, job.id, job.spec.container)
        error: Optional[JobError] = None
        heartbeat: Optional[asyncio.Task] = None
        if self.lease_seconds > 0 and job.worker_id:
            heartbeat = asyncio.create_task(self._keep_lease(job), name=f"lease-{job.id}")

        try:
            log_info(logger, f"Starting job {job.id}", job_id=job.id, codec=job.spec.codec)
            try:
                input_path = await self._ensure_input(job)
                await self._encode(job, input_path, output_path)
                result = await self._publish(job, output_path)
            except EncodeTimeoutError as e:
                error = JobError(kind=ErrorKind.TIMEOUT, message=e.message)
            except EncodeFailureError as e:
                error = JobError(kind=ErrorKind.ENCODE_FAILURE, message=e.message)
            except UploadFailureError as e:
                error = JobError(kind=ErrorKind.UPLOAD_FAILURE, message=e.message)
            except Exception as e:
                log_error(logger, f"Unexpected error while running job {job.id}", e, job_id=job.id)
                error = JobError(kind=ErrorKind.INTERNAL, message=str(e) or type(e).__name__)

            if error is None:
                state = await self._finish(job, JobState.SUCCEEDED, self.store.complete(job.id, result))
            else:
                log_warning(
                    logger,
                    f"Job {job.id} failed: {error.message}",
                    job_id=job.id,
                    error_kind=error.kind.value,
                )
                state = await self._finish(job, JobState.FAILED, self.store.fail(job.id, error))

            record_job_finished(
                state.value,
                error.kind.value if error else "",
                time.monotonic() - started,
            )
            return state
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)
            cleanup_local_file(input_path)
            cleanup_local_file(output_path)
            job_id_var.reset(token)

    async def _keep_lease(self, job: TranscodeJob) -> None:
        """Renew the job's lease while this slot works on it.

        The deadline moves forward every third of a lease, so the stale-job
        reaper only sees it expire once the owning process stops renewing.
        """
        interval = self.lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self.store.renew_lease(
                    job.id, job.worker_id, time.time() + self.lease_seconds
                )
            except Exception as e:
                log_warning(logger, f"Could not renew lease of job {job.id}: {e}", job_id=job.id)
                continue
            if not renewed:
                # Finalized elsewhere; nothing left to keep alive
                return

    async def _finish(self, job: TranscodeJob, target: JobState, transition) -> JobState:
        if await transition:
            log_info(logger, f"Job {job.id} {target.value}", job_id=job.id)
            return target

        # Someone else (the stale-job reaper) finalized the job first
        current = await self.store.get(job.id)
        actual = current.state if current else target
        log_warning(
            logger,
            f"Job {job.id} was already {actual.value}; dropping {target.value} result",
            job_id=job.id,
        )
        return actual

    async def _ensure_input(self, job: TranscodeJob) -> str:
        """Local path of the source file, fetched from storage if missing."""
        if job.input_path and os.path.exists(job.input_path):
            return job.input_path

        path = temp_input_path(self.temp_dir, job.id, job.filename)
        os.makedirs(self.temp_dir, exist_ok=True)
        if not await self.storage.download(job.original_key, path):
            cleanup_local_file(path)
            raise TranscodingError(f"Original {job.original_key} is not available", job.id)
        return path

    async def _encode(self, job: TranscodeJob, input_path: str, output_path: str) -> None:
        try:
            await asyncio.wait_for(
                self._run_engine(job, input_path, output_path),
                timeout=self.encode_timeout,
            )
        except asyncio.TimeoutError:
            raise EncodeTimeoutError(self.encode_timeout, job.id)

    async def _run_engine(self, job: TranscodeJob, input_path: str, output_path: str) -> None:
        profile = select_profile(job.spec.target_format)
        config = FFmpegConfig(
            input_path=input_path,
            output_path=output_path,
            muxer=profile.muxer,
            video_codec=job.spec.codec,
            bitrate=job.spec.bitrate,
            resolution=job.spec.resolution,
            audio_bitrate=self.audio_bitrate,
        )
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)

        async with aclosing(self.engine.encode(config)) as events:
            async for event in events:
                if event.type == EncodeEventType.PROGRESS:
                    await self.store.update_progress(job.id, event.progress)
                elif event.type == EncodeEventType.COMPLETED:
                    return
                elif event.type == EncodeEventType.FAILED:
                    raise EncodeFailureError(event.message, job.id)

        raise EncodeFailureError("Encoder stopped without reporting a result", job.id)

    async def _publish(self, job: TranscodeJob, output_path: str) -> JobResult:
        upload = await self.storage.put_file(
            output_path, job.transcoded_key, guess_content_type(output_path)
        )
        if not upload.success:
            raise UploadFailureError(
                f"Failed to upload transcoded output: {upload.error_message}",
                job.transcoded_key,
                job.id,
            )

        download_url = await self.storage.signed_url(job.transcoded_key, self.signed_url_expires)
        return JobResult(
            original_location=job.original_location,
            transcoded_location=upload.url,
            transcoded_key=job.transcoded_key,
            download_url=download_url,
        )


class WorkerPool:
    """Bounded pool of concurrent job slots."""

    def __init__(
        self,
        store: JobStore,
        executor: TranscodeExecutor,
        capacity: int = 2,
        poll_interval: float = 1.0,
        lease_seconds: float = 1860.0,
        shutdown_grace: float = 30.0,
        worker_name: Optional[str] = None,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if not 0 < poll_interval <= 1.0:
            raise ValueError("poll_interval must be in (0, 1]")

        self.store = store
        self.executor = executor
        self.capacity = capacity
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self.shutdown_grace = shutdown_grace
        self.worker_name = worker_name or f"{socket.gethostname()}-{os.getpid()}"

        self._slots: list[Optional[asyncio.Task]] = [None] * capacity
        self._slot_jobs: list[Optional[str]] = [None] * capacity
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._dispatcher: Optional[asyncio.Task] = None
        self._running = False

    # ==================== Lifecycle ====================

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        WORKER_SLOTS_CAPACITY.set(self.capacity)
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="transcode-dispatcher")
        log_info(logger, f"Worker pool {self.worker_name} started", capacity=self.capacity)

    async def stop(self) -> None:
        """Stop dispatching and wait for in-flight jobs up to the grace period."""
        if not self._running:
            return
        self._running = False
        self._wakeup.set()

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None

        # Slots clear their own entries, so capture job IDs first
        in_flight = {
            task: job_id
            for task, job_id in zip(self._slots, self._slot_jobs)
            if task is not None
        }
        if in_flight:
            _, pending = await asyncio.wait(list(in_flight), timeout=self.shutdown_grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in pending:
                await self._fail_interrupted(in_flight[task])

        log_info(logger, f"Worker pool {self.worker_name} stopped")

    async def _fail_interrupted(self, job_id: str) -> None:
        """Fail a job cut off by shutdown so it stops holding shared capacity."""
        error = JobError(kind=ErrorKind.INTERNAL, message="Worker shut down before the job finished")
        try:
            if await self.store.fail(job_id, error):
                record_job_finished(JobState.FAILED.value, ErrorKind.INTERNAL.value)
                log_warning(logger, f"Job {job_id} interrupted by shutdown", job_id=job_id)
        except Exception as e:
            # Left running; the stale-job reaper fails it once its lease expires
            log_error(logger, f"Could not mark job {job_id} failed", e, job_id=job_id)

    # ==================== Slots ====================

    def busy_slots(self) -> int:
        return sum(1 for task in self._slots if task is not None)

    def free_slots(self) -> int:
        return self.capacity - self.busy_slots()

    def active_job_ids(self) -> list[str]:
        return [job_id for job_id in self._slot_jobs if job_id is not None]

    def _free_slot(self) -> Optional[int]:
        for index, task in enumerate(self._slots):
            if task is None:
                return index
        return None

    def _slot_worker_id(self, slot: int) -> str:
        return f"{self.worker_name}/slot-{slot}"

    def notify(self) -> None:
        """Wake the dispatch loop (new job queued or slot freed)."""
        self._wakeup.set()

    async def try_dispatch(self, job_id: str) -> bool:
        """Hand a freshly created job directly to a free slot.

        Returns False when no slot is free, leaving the job queued.
        """
        if not self._running:
            return False

        async with self._lock:
            slot = self._free_slot()
            if slot is None:
                return False
            claimed = await self.store.claim(
                job_id, self._slot_worker_id(slot), self.capacity, self.lease_seconds
            )
            if not claimed:
                return False
            job = await self.store.get(job_id)
            self._start_slot(slot, job)
            return True

    def _start_slot(self, slot: int, job: TranscodeJob) -> None:
        self._slot_jobs[slot] = job.id
        self._slots[slot] = asyncio.create_task(
            self._run_slot(slot, job), name=f"transcode-slot-{slot}"
        )
        WORKER_SLOTS_BUSY.inc()

    async def _run_slot(self, slot: int, job: TranscodeJob) -> None:
        try:
            await self.executor.execute(job)
        except Exception as e:
            # Executor could not record a terminal state (store unreachable)
            log_error(logger, f"Slot {slot} crashed while running job {job.id}", e, job_id=job.id)
            await self._record_crash(job, e)
        finally:
            self._slots[slot] = None
            self._slot_jobs[slot] = None
            WORKER_SLOTS_BUSY.dec()
            self._wakeup.set()

    async def _record_crash(self, job: TranscodeJob, exc: Exception) -> None:
        error = JobError(kind=ErrorKind.INTERNAL, message=str(exc) or type(exc).__name__)
        try:
            await self.store.fail(job.id, error)
        except Exception as e:
            # Left running; the stale-job reaper fails it once its lease expires
            log_error(logger, f"Could not mark job {job.id} failed", e, job_id=job.id)

    # ==================== Dispatch ====================

    async def _dispatch_loop(self) -> None:
        while self._running:
            self._wakeup.clear()
            try:
                await self.drain()
            except Exception as e:
                log_error(logger, "Dispatch loop could not drain the queue", e)

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def drain(self) -> int:
        """Fill free slots from the queue. Returns how many jobs started."""
        started = 0
        async with self._lock:
            while self._running:
                slot = self._free_slot()
                if slot is None:
                    break
                job = await self.store.dequeue(
                    self._slot_worker_id(slot), self.capacity, self.lease_seconds
                )
                if job is None:
                    break
                self._start_slot(slot, job)
                started += 1

        QUEUE_DEPTH.set(await self.store.queue_length())
        return started
