"""Shared fakes for transcoding tests.

The worker pool, admission controller and status reporter are wired with a
job store (in-memory, or Redis on fakeredis), an in-memory storage backend
and a scripted encoder, so tests control exactly when each encode finishes
and how.
"""

import asyncio
import os
import time
from typing import BinaryIO, Optional

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from transcoder.core.storage import StorageBackend, StorageResult, StorageService
from transcoder.modules.transcoding.ffmpeg import EncodeEvent, EncodeEventType, FFmpegConfig
from transcoder.modules.transcoding.models import JobState, TranscodeJob
from transcoder.modules.transcoding.repository import InMemoryJobStore, JobStore, RedisJobStore
from transcoder.modules.transcoding.schemas import TranscodeRequest
from transcoder.modules.transcoding.service import AdmissionController, StatusReporter
from transcoder.modules.transcoding.worker import TranscodeExecutor, WorkerPool


class MemoryStorageBackend(StorageBackend):
    """Storage backend keeping objects in a dict."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.fail_prefixes: set[str] = set()
        self.deleted: list[str] = []
        self.bucket_ensured = False
        # Seconds each file upload blocks its worker thread
        self.upload_delay = 0.0
        # Downloads write a truncated file, then report failure
        self.fail_downloads = False

    def _rejected(self, key: str) -> Optional[StorageResult]:
        if any(key.startswith(prefix) for prefix in self.fail_prefixes):
            return StorageResult(success=False, key=key, url="", error_message="AccessDenied")
        return None

    def upload(self, file_path: str, key: str, content_type: str = "application/octet-stream") -> StorageResult:
        rejected = self._rejected(key)
        if rejected:
            return rejected
        if self.upload_delay:
            time.sleep(self.upload_delay)
        with open(file_path, "rb") as f:
            self.objects[key] = f.read()
        return StorageResult(success=True, key=key, url=f"s3://bucket/{key}", file_size=len(self.objects[key]))

    def upload_fileobj(self, fileobj: BinaryIO, key: str, content_type: str = "application/octet-stream") -> StorageResult:
        rejected = self._rejected(key)
        if rejected:
            return rejected
        self.objects[key] = fileobj.read()
        return StorageResult(success=True, key=key, url=f"s3://bucket/{key}", file_size=len(self.objects[key]))

    def download(self, key: str, destination: str) -> bool:
        if key not in self.objects:
            return False
        if self.fail_downloads:
            with open(destination, "wb") as f:
                f.write(self.objects[key][:1])
            return False
        with open(destination, "wb") as f:
            f.write(self.objects[key])
        return True

    def delete(self, key: str) -> bool:
        self.deleted.append(key)
        return self.objects.pop(key, None) is not None

    def get_url(self, key: str, expires_in: int = 3600) -> str:
        return f"https://signed.example/{key}?expires={expires_in}"

    def ensure_bucket(self) -> None:
        self.bucket_ensured = True


def job_id_from_path(path: str) -> str:
    return os.path.basename(path).split(".")[0]


class ScriptedEngine:
    """Encoder whose outcome per job is decided by the test.

    In gated mode every encode reports STARTED and some progress, then
    waits until the test calls ``finish`` / ``fail`` / leaves it hanging.
    Otherwise each encode completes at once.
    """

    def __init__(self, gated: bool = False):
        self.gated = gated
        self.started: list[str] = []
        self.configs: dict[str, FFmpegConfig] = {}
        self.closed: list[str] = []
        self._gates: dict[str, asyncio.Future] = {}
        self.default_outcome = ("completed", "")

    def _gate(self, job_id: str) -> asyncio.Future:
        if job_id not in self._gates:
            self._gates[job_id] = asyncio.get_running_loop().create_future()
        return self._gates[job_id]

    def finish(self, job_id: str) -> None:
        self._gate(job_id).set_result(("completed", ""))

    def fail(self, job_id: str, message: str) -> None:
        self._gate(job_id).set_result(("failed", message))

    async def encode(self, config: FFmpegConfig):
        job_id = job_id_from_path(config.input_path)
        self.started.append(job_id)
        self.configs[job_id] = config
        try:
            yield EncodeEvent(EncodeEventType.STARTED)
            yield EncodeEvent(EncodeEventType.PROGRESS, progress=10)
            if self.gated:
                outcome, message = await self._gate(job_id)
            else:
                outcome, message = self.default_outcome
            if outcome == "completed":
                with open(config.output_path, "wb") as f:
                    f.write(b"transcoded:" + job_id.encode())
                yield EncodeEvent(EncodeEventType.PROGRESS, progress=60)
                yield EncodeEvent(EncodeEventType.COMPLETED, progress=100)
            else:
                yield EncodeEvent(EncodeEventType.FAILED, message=message)
        finally:
            self.closed.append(job_id)


class Harness:
    """One worker pool with its admission controller and status reporter."""

    def __init__(
        self,
        temp_dir: str,
        capacity: int = 2,
        gated: bool = True,
        encode_timeout: float = 5.0,
        max_queue_length: int = 0,
        store: Optional[JobStore] = None,
        lease_seconds: Optional[float] = None,
    ):
        if lease_seconds is None:
            lease_seconds = encode_timeout + 1
        self.temp_dir = temp_dir
        self.store = store or InMemoryJobStore()
        self.backend = MemoryStorageBackend()
        self.storage = StorageService(self.backend)
        self.engine = ScriptedEngine(gated=gated)
        self.executor = TranscodeExecutor(
            store=self.store,
            storage=self.storage,
            engine=self.engine,
            temp_dir=temp_dir,
            encode_timeout=encode_timeout,
            lease_seconds=lease_seconds,
        )
        self.pool = WorkerPool(
            store=self.store,
            executor=self.executor,
            capacity=capacity,
            poll_interval=0.05,
            lease_seconds=lease_seconds,
            shutdown_grace=0.5,
            worker_name="test-worker",
        )
        self.admission = AdmissionController(
            store=self.store,
            storage=self.storage,
            pool=self.pool,
            temp_dir=temp_dir,
            max_queue_length=max_queue_length,
        )
        self.reporter = StatusReporter(store=self.store, pool=self.pool)

    async def submit(
        self,
        filename: str = "clip.mov",
        fmt: str = "mp4",
        bitrate: str = "1000k",
        resolution: str = "1280x720",
        content: bytes = b"original-bytes",
    ) -> str:
        request = TranscodeRequest(format=fmt, bitrate=bitrate, resolution=resolution)
        return await self.admission.submit(content, filename, request)

    async def status(self, job_id: str) -> TranscodeJob:
        return await self.reporter.get_status(job_id)

    async def wait_for(self, job_id: str, *states: JobState, timeout: float = 2.0) -> TranscodeJob:
        """Poll until the job reaches one of ``states``."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            job = await self.status(job_id)
            if job.state in states:
                return job
            if loop.time() > deadline:
                raise AssertionError(f"job {job_id} stuck in {job.state.value}, wanted {states}")
            await asyncio.sleep(0.01)

    async def wait_started(self, job_id: str, timeout: float = 2.0) -> None:
        """Wait until the encoder has been invoked for ``job_id``."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while job_id not in self.engine.started:
            if loop.time() > deadline:
                raise AssertionError(f"encoder never started job {job_id}")
            await asyncio.sleep(0.01)

    async def settle(self) -> None:
        """Let pending slot tasks and the dispatcher run."""
        for _ in range(5):
            await asyncio.sleep(0)


@pytest.fixture(params=["memory", "redis"])
async def make_job_store(request):
    """Factory for empty job stores of one backend; each gets its own server."""
    clients: list[FakeRedis] = []

    def _make() -> JobStore:
        if request.param == "memory":
            return InMemoryJobStore()
        client = FakeRedis(server=FakeServer(), decode_responses=True)
        clients.append(client)
        return RedisJobStore(client, prefix="test")

    yield _make

    for client in clients:
        await client.aclose()


@pytest.fixture
async def make_harness(tmp_path, make_job_store):
    """Factory for started harnesses; their pools are stopped after the test."""
    harnesses: list[Harness] = []

    async def _make(**kwargs) -> Harness:
        if kwargs.get("store") is None:
            kwargs["store"] = make_job_store()
        harness = Harness(str(tmp_path / f"work{len(harnesses)}"), **kwargs)
        await harness.pool.start()
        harnesses.append(harness)
        return harness

    yield _make

    for harness in harnesses:
        await harness.pool.stop()
