"""Celery tasks for transcode job maintenance.

Worker slots enforce their own encode timeout. The reaper covers jobs whose
owning process died mid-encode: their lease expires, the reaper fails them
with a timeout and their capacity in the shared store is released.
"""

import asyncio
import logging
import time
from typing import Optional

from transcoder.core.celery_app import celery_app
from transcoder.core.config import settings
from transcoder.core.logging import log_warning
from transcoder.core.metrics import record_job_finished
from transcoder.core.redis import create_redis_client
from transcoder.modules.transcoding.models import ErrorKind, JobError, JobState
from transcoder.modules.transcoding.repository import JobStore, RedisJobStore

logger = logging.getLogger(__name__)


async def reap_expired_jobs(store: JobStore, now: Optional[float] = None) -> list[str]:
    """Fail running jobs whose lease has expired.

    Returns:
        IDs of the jobs that were failed
    """
    now = time.time() if now is None else now
    reaped = []

    for job_id in await store.running_job_ids():
        job = await store.get(job_id)
        if job is None or job.deadline_at is None or job.deadline_at > now:
            continue

        error = JobError(
            kind=ErrorKind.TIMEOUT,
            message=f"Worker {job.worker_id} did not finish the job before its lease expired",
        )
        if await store.fail(job_id, error):
            reaped.append(job_id)
            record_job_finished(JobState.FAILED.value, ErrorKind.TIMEOUT.value)
            log_warning(logger, f"Reaped stale job {job_id}", job_id=job_id, worker_id=job.worker_id)

    return reaped


async def _reap_stale_jobs_async() -> dict:
    client = create_redis_client(settings.REDIS_URL)
    try:
        store = RedisJobStore(client, prefix=settings.JOB_KEY_PREFIX)
        reaped = await reap_expired_jobs(store)
    finally:
        await client.aclose()
    return {"reaped": reaped, "count": len(reaped)}


@celery_app.task(name="transcoding.reap_stale_jobs")
def reap_stale_jobs() -> dict:
    """Periodic task: fail transcode jobs abandoned by a dead worker."""
    return asyncio.run(_reap_stale_jobs_async())
