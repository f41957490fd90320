"""Job store for transcode jobs.

The store is the single source of truth for job existence and state. Every
state change is a compare-and-set on the job's current state, so two paths
(a worker slot and the stale-job reaper, say) can never both finalize the
same job.

Redis layout (``<prefix>`` defaults to ``transcode``):

- ``<prefix>:job:<id>``  hash holding the job record
- ``<prefix>:queue``     list of queued job IDs, FIFO (RPUSH / LPOP)
- ``<prefix>:running``   set of job IDs currently held by a worker slot
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Optional

import redis.asyncio as redis

from transcoder.modules.transcoding.exceptions import QueueFullError
from transcoder.modules.transcoding.models import (
    JobError,
    JobResult,
    JobState,
    TranscodeJob,
)


class JobStore(ABC):
    """Atomic operations on transcode job records and the FIFO queue."""

    @abstractmethod
    async def create(self, job: TranscodeJob) -> None:
        """Persist a new job in the queued state."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[TranscodeJob]:
        """Snapshot of a job, or None if it does not exist."""

    @abstractmethod
    async def discard(self, job_id: str) -> None:
        """Drop a job abandoned during admission.

        Also releases its running-set entry in case a claim went through
        before admission failed.
        """

    @abstractmethod
    async def claim(
        self, job_id: str, worker_id: str, capacity: int, lease_seconds: float
    ) -> bool:
        """Move a queued job straight to running.

        Fails if the job is not queued or ``capacity`` jobs already run.
        """

    @abstractmethod
    async def enqueue(self, job_id: str, max_length: int = 0) -> int:
        """Append a queued job to the FIFO. Returns the new queue length.

        Raises:
            QueueFullError: ``max_length`` > 0 and the queue is at that length
        """

    @abstractmethod
    async def dequeue(
        self, worker_id: str, capacity: int, lease_seconds: float
    ) -> Optional[TranscodeJob]:
        """Pop the oldest queued job and mark it running, in one atomic step.

        Returns None when the queue is empty or ``capacity`` jobs already run.
        """

    @abstractmethod
    async def renew_lease(self, job_id: str, worker_id: str, deadline_at: float) -> bool:
        """Push back the lease deadline of a job ``worker_id`` is running.

        False if the job is no longer running or is held by another worker.
        """

    @abstractmethod
    async def update_progress(self, job_id: str, progress: int) -> bool:
        """Raise a running job's progress. Lower values are ignored."""

    @abstractmethod
    async def complete(self, job_id: str, result: JobResult) -> bool:
        """running -> succeeded. False if the job was not running."""

    @abstractmethod
    async def fail(self, job_id: str, error: JobError) -> bool:
        """running -> failed. False if the job was not running."""

    @abstractmethod
    async def queue_length(self) -> int:
        pass

    @abstractmethod
    async def running_count(self) -> int:
        pass

    @abstractmethod
    async def running_job_ids(self) -> list[str]:
        pass


# ==================== Redis ====================

# KEYS: job hash, running set
# ARGV: job id, capacity, worker id, started_at, deadline_at
_CLAIM_LUA = """
if redis.call('HGET', KEYS[1], 'state') ~= 'queued' then
    return -1
end
if redis.call('SCARD', KEYS[2]) >= tonumber(ARGV[2]) then
    return 0
end
redis.call('HSET', KEYS[1], 'state', 'running', 'worker_id', ARGV[3],
           'started_at', ARGV[4], 'deadline_at', ARGV[5])
redis.call('SADD', KEYS[2], ARGV[1])
return 1
"""

# KEYS: queue list, job hash
# ARGV: job id, max length (0 = unbounded)
_ENQUEUE_LUA = """
if redis.call('HGET', KEYS[2], 'state') ~= 'queued' then
    return -2
end
local max_length = tonumber(ARGV[2])
if max_length > 0 and redis.call('LLEN', KEYS[1]) >= max_length then
    return -1
end
return redis.call('RPUSH', KEYS[1], ARGV[1])
"""

# KEYS: queue list, running set
# ARGV: job key prefix, capacity, worker id, started_at, deadline_at
# IDs whose record is gone or no longer queued are dropped from the head.
_DEQUEUE_LUA = """
if redis.call('SCARD', KEYS[2]) >= tonumber(ARGV[2]) then
    return false
end
while true do
    local job_id = redis.call('LPOP', KEYS[1])
    if not job_id then
        return false
    end
    local job_key = ARGV[1] .. job_id
    if redis.call('HGET', job_key, 'state') == 'queued' then
        redis.call('HSET', job_key, 'state', 'running', 'worker_id', ARGV[3],
                   'started_at', ARGV[4], 'deadline_at', ARGV[5])
        redis.call('SADD', KEYS[2], job_id)
        return job_id
    end
end
"""

# KEYS: job hash, running set
# ARGV: job id, new state, payload field, payload json, finished_at, progress or ''
_FINISH_LUA = """
if redis.call('HGET', KEYS[1], 'state') ~= 'running' then
    return 0
end
redis.call('HSET', KEYS[1], 'state', ARGV[2], ARGV[3], ARGV[4], 'finished_at', ARGV[5])
if ARGV[6] ~= '' then
    redis.call('HSET', KEYS[1], 'progress', ARGV[6])
end
redis.call('SREM', KEYS[2], ARGV[1])
return 1
"""

# KEYS: job hash
# ARGV: worker id, deadline_at
_RENEW_LUA = """
if redis.call('HGET', KEYS[1], 'state') ~= 'running' then
    return 0
end
if redis.call('HGET', KEYS[1], 'worker_id') ~= ARGV[1] then
    return 0
end
redis.call('HSET', KEYS[1], 'deadline_at', ARGV[2])
return 1
"""

# KEYS: job hash
# ARGV: progress
_PROGRESS_LUA = """
if redis.call('HGET', KEYS[1], 'state') ~= 'running' then
    return 0
end
local current = tonumber(redis.call('HGET', KEYS[1], 'progress') or '0')
if tonumber(ARGV[1]) <= current then
    return 0
end
redis.call('HSET', KEYS[1], 'progress', ARGV[1])
return 1
"""


class RedisJobStore(JobStore):
    """Job store shared by every process through Redis.

    All multi-step transitions run as Lua scripts, which Redis executes
    atomically.
    """

    def __init__(self, client: redis.Redis, prefix: str = "transcode"):
        self.client = client
        self.prefix = prefix
        self.queue_key = f"{prefix}:queue"
        self.running_key = f"{prefix}:running"
        self._claim = client.register_script(_CLAIM_LUA)
        self._enqueue = client.register_script(_ENQUEUE_LUA)
        self._dequeue = client.register_script(_DEQUEUE_LUA)
        self._finish = client.register_script(_FINISH_LUA)
        self._progress = client.register_script(_PROGRESS_LUA)
        self._renew = client.register_script(_RENEW_LUA)

    def job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    async def create(self, job: TranscodeJob) -> None:
        await self.client.hset(self.job_key(job.id), mapping=job.to_hash())

    async def get(self, job_id: str) -> Optional[TranscodeJob]:
        data = await self.client.hgetall(self.job_key(job_id))
        if not data:
            return None
        return TranscodeJob.from_hash(data)

    async def discard(self, job_id: str) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(self.job_key(job_id))
            pipe.srem(self.running_key, job_id)
            await pipe.execute()

    async def claim(
        self, job_id: str, worker_id: str, capacity: int, lease_seconds: float
    ) -> bool:
        started_at = time.time()
        outcome = await self._claim(
            keys=[self.job_key(job_id), self.running_key],
            args=[job_id, capacity, worker_id, repr(started_at), repr(started_at + lease_seconds)],
        )
        return int(outcome) == 1

    async def enqueue(self, job_id: str, max_length: int = 0) -> int:
        outcome = int(await self._enqueue(
            keys=[self.queue_key, self.job_key(job_id)],
            args=[job_id, max_length],
        ))
        if outcome == -1:
            raise QueueFullError(max_length)
        if outcome == -2:
            raise ValueError(f"Job {job_id} is not in the queued state")
        return outcome

    async def dequeue(
        self, worker_id: str, capacity: int, lease_seconds: float
    ) -> Optional[TranscodeJob]:
        started_at = time.time()
        job_id = await self._dequeue(
            keys=[self.queue_key, self.running_key],
            args=[
                f"{self.prefix}:job:",
                capacity,
                worker_id,
                repr(started_at),
                repr(started_at + lease_seconds),
            ],
        )
        if job_id is None:
            return None
        return await self.get(job_id)

    async def renew_lease(self, job_id: str, worker_id: str, deadline_at: float) -> bool:
        outcome = await self._renew(
            keys=[self.job_key(job_id)], args=[worker_id, repr(deadline_at)]
        )
        return int(outcome) == 1

    async def update_progress(self, job_id: str, progress: int) -> bool:
        outcome = await self._progress(keys=[self.job_key(job_id)], args=[int(progress)])
        return int(outcome) == 1

    async def complete(self, job_id: str, result: JobResult) -> bool:
        return await self._finish_job(
            job_id, JobState.SUCCEEDED, "result", result.model_dump_json(), progress="100"
        )

    async def fail(self, job_id: str, error: JobError) -> bool:
        return await self._finish_job(
            job_id, JobState.FAILED, "error", error.model_dump_json()
        )

    async def _finish_job(
        self, job_id: str, state: JobState, field: str, payload: str, progress: str = ""
    ) -> bool:
        outcome = await self._finish(
            keys=[self.job_key(job_id), self.running_key],
            args=[job_id, state.value, field, payload, repr(time.time()), progress],
        )
        return int(outcome) == 1

    async def queue_length(self) -> int:
        return int(await self.client.llen(self.queue_key))

    async def running_count(self) -> int:
        return int(await self.client.scard(self.running_key))

    async def running_job_ids(self) -> list[str]:
        return sorted(await self.client.smembers(self.running_key))


# ==================== In-memory ====================

class InMemoryJobStore(JobStore):
    """Single-process job store with the same semantics as ``RedisJobStore``.

    Used for local development (``JOB_STORE_BACKEND=memory``) and tests.
    """

    def __init__(self):
        self._jobs: dict[str, TranscodeJob] = {}
        self._queue: deque[str] = deque()
        self._running: set[str] = set()
        self._lock = asyncio.Lock()

    async def create(self, job: TranscodeJob) -> None:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)

    async def get(self, job_id: str) -> Optional[TranscodeJob]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def discard(self, job_id: str) -> None:
        async with self._lock:
            self._jobs.pop(job_id, None)
            self._running.discard(job_id)

    def _start(self, job_id: str, worker_id: str, lease_seconds: float) -> TranscodeJob:
        started_at = time.time()
        job = self._jobs[job_id].model_copy(update={
            "state": JobState.RUNNING,
            "worker_id": worker_id,
            "started_at": started_at,
            "deadline_at": started_at + lease_seconds,
        })
        self._jobs[job_id] = job
        self._running.add(job_id)
        return job

    async def claim(
        self, job_id: str, worker_id: str, capacity: int, lease_seconds: float
    ) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.QUEUED:
                return False
            if len(self._running) >= capacity:
                return False
            self._start(job_id, worker_id, lease_seconds)
            return True

    async def enqueue(self, job_id: str, max_length: int = 0) -> int:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.QUEUED:
                raise ValueError(f"Job {job_id} is not in the queued state")
            if max_length > 0 and len(self._queue) >= max_length:
                raise QueueFullError(max_length)
            self._queue.append(job_id)
            return len(self._queue)

    async def dequeue(
        self, worker_id: str, capacity: int, lease_seconds: float
    ) -> Optional[TranscodeJob]:
        async with self._lock:
            if len(self._running) >= capacity:
                return None
            while self._queue:
                job_id = self._queue.popleft()
                job = self._jobs.get(job_id)
                if job is not None and job.state == JobState.QUEUED:
                    return self._start(job_id, worker_id, lease_seconds).model_copy(deep=True)
            return None

    async def renew_lease(self, job_id: str, worker_id: str, deadline_at: float) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.RUNNING or job.worker_id != worker_id:
                return False
            self._jobs[job_id] = job.model_copy(update={"deadline_at": deadline_at})
            return True

    async def update_progress(self, job_id: str, progress: int) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.RUNNING or progress <= job.progress:
                return False
            self._jobs[job_id] = job.model_copy(update={"progress": min(int(progress), 100)})
            return True

    async def complete(self, job_id: str, result: JobResult) -> bool:
        return await self._finish_job(
            job_id, {"state": JobState.SUCCEEDED, "result": result, "progress": 100}
        )

    async def fail(self, job_id: str, error: JobError) -> bool:
        return await self._finish_job(job_id, {"state": JobState.FAILED, "error": error})

    async def _finish_job(self, job_id: str, update: dict) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.RUNNING:
                return False
            update["finished_at"] = time.time()
            self._jobs[job_id] = job.model_copy(update=update, deep=True)
            self._running.discard(job_id)
            return True

    async def queue_length(self) -> int:
        return len(self._queue)

    async def running_count(self) -> int:
        return len(self._running)

    async def running_job_ids(self) -> list[str]:
        return sorted(self._running)
