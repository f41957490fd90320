"""HTTP tests for the transcoding API."""

import pytest
from httpx import ASGITransport, AsyncClient

from transcoder.core.config import settings
from transcoder.main import create_app
from transcoder.modules.transcoding.models import JobState
from transcoder.modules.transcoding.service import TranscodingServices

PREFIX = settings.API_V1_PREFIX


def services_for(harness) -> TranscodingServices:
    return TranscodingServices(
        store=harness.store,
        storage=harness.storage,
        pool=harness.pool,
        admission=harness.admission,
        reporter=harness.reporter,
    )


@pytest.fixture
async def api(make_harness):
    """Client and harness; the harness pool is already running."""
    harness = await make_harness(capacity=1)
    app = create_app(services=services_for(harness))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, harness


async def upload(client: AsyncClient, fmt: str = "mp4", content: bytes = b"video-bytes"):
    return await client.post(
        f"{PREFIX}/upload",
        files={"videoFile": ("clip.mov", content, "video/quicktime")},
        data={"format": fmt, "bitrate": "1000k", "resolution": "1280x720"},
    )


class TestUpload:

    @pytest.mark.asyncio
    async def test_upload_returns_job_id_immediately(self, api) -> None:
        client, harness = api

        response = await upload(client)

        assert response.status_code == 202
        job_id = response.json()["jobId"]
        # Gated encoder: the job is still running when the response arrives
        assert (await harness.status(job_id)).state == JobState.RUNNING

    @pytest.mark.asyncio
    async def test_second_upload_is_queued(self, api) -> None:
        client, harness = api

        first = (await upload(client)).json()["jobId"]
        second = (await upload(client)).json()["jobId"]

        assert (await harness.status(first)).state == JobState.RUNNING
        assert (await harness.status(second)).state == JobState.QUEUED

    @pytest.mark.asyncio
    async def test_missing_file_is_rejected(self, api) -> None:
        client, _ = api

        response = await client.post(f"{PREFIX}/upload", data={"format": "mp4"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_empty_file_is_rejected(self, api) -> None:
        client, _ = api

        response = await upload(client, content=b"")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_storage_failure_maps_to_bad_gateway(self, api) -> None:
        client, harness = api
        harness.backend.fail_prefixes.add("uploads/")

        response = await upload(client)

        assert response.status_code == 502
        assert "AccessDenied" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_full_queue_maps_to_service_unavailable(self, make_harness) -> None:
        harness = await make_harness(capacity=1, max_queue_length=1)
        app = create_app(services=services_for(harness))

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            assert (await upload(client)).status_code == 202
            assert (await upload(client)).status_code == 202
            response = await upload(client)

        assert response.status_code == 503


class TestJobStatus:

    @pytest.mark.asyncio
    async def test_unknown_job_is_not_found(self, api) -> None:
        client, _ = api

        response = await client.get(f"{PREFIX}/job/does-not-exist")

        assert response.status_code == 404
        assert response.json()["detail"] == "Job not found"

    @pytest.mark.asyncio
    async def test_finished_job_reports_download_url(self, api) -> None:
        client, harness = api
        job_id = (await upload(client, fmt="mkv")).json()["jobId"]

        await harness.wait_started(job_id)
        harness.engine.finish(job_id)
        await harness.wait_for(job_id, JobState.SUCCEEDED)
        body = (await client.get(f"{PREFIX}/job/{job_id}")).json()

        assert body["jobId"] == job_id
        assert body["state"] == "succeeded"
        assert body["progress"] == 100
        assert body["format"] == "mkv"
        assert body["codec"] == "libx265"
        assert body["result"]["download_url"].startswith("https://signed.example/transcoded/clip_")
        assert body["error"] is None

    @pytest.mark.asyncio
    async def test_failed_job_reports_error(self, api) -> None:
        client, harness = api
        job_id = (await upload(client)).json()["jobId"]

        await harness.wait_started(job_id)
        harness.engine.fail(job_id, "Invalid data found when processing input")
        await harness.wait_for(job_id, JobState.FAILED)
        body = (await client.get(f"{PREFIX}/job/{job_id}")).json()

        assert body["state"] == "failed"
        assert body["error"] == {
            "kind": "encode_failure",
            "message": "Invalid data found when processing input",
        }
        assert body["result"] is None


class TestOperationalEndpoints:

    @pytest.mark.asyncio
    async def test_queue_stats(self, api) -> None:
        client, _ = api
        await upload(client)
        await upload(client)

        body = (await client.get(f"{PREFIX}/jobs/stats")).json()

        assert body == {"capacity": 1, "running": 1, "queued": 1, "free_slots": 0}

    @pytest.mark.asyncio
    async def test_health(self, api) -> None:
        client, _ = api

        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_metrics_exposes_job_counters(self, api) -> None:
        client, _ = api
        await upload(client)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "transcode_jobs_submitted_total" in response.text

    @pytest.mark.asyncio
    async def test_correlation_id_is_echoed(self, api) -> None:
        client, _ = api

        response = await client.get("/health", headers={"X-Correlation-ID": "abc-123"})

        assert response.headers["X-Correlation-ID"] == "abc-123"
