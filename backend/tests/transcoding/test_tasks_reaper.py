"""Tests for the stale job reaper."""

import pytest

from transcoder.modules.transcoding.models import ErrorKind, JobSpec, JobState, TranscodeJob
from transcoder.modules.transcoding.repository import InMemoryJobStore
from transcoder.modules.transcoding.tasks import reap_expired_jobs, reap_stale_jobs


def make_job(job_id: str) -> TranscodeJob:
    return TranscodeJob(
        id=job_id,
        spec=JobSpec(
            target_format="mp4", container="mp4", codec="libx264", bitrate="", resolution=""
        ),
        filename="clip.mov",
        original_key=f"uploads/clip_{job_id}.mov",
        transcoded_key=f"transcoded/clip_{job_id}.mp4",
    )


async def claimed_store(*job_ids: str, lease_seconds: float = 60) -> InMemoryJobStore:
    store = InMemoryJobStore()
    for job_id in job_ids:
        await store.create(make_job(job_id))
        assert await store.claim(job_id, "dead-host-1/slot-0", capacity=5, lease_seconds=lease_seconds)
    return store


class TestReapExpiredJobs:

    @pytest.mark.asyncio
    async def test_expired_lease_fails_job_with_timeout(self) -> None:
        store = await claimed_store("a")
        deadline = (await store.get("a")).deadline_at

        reaped = await reap_expired_jobs(store, now=deadline + 1)

        assert reaped == ["a"]
        job = await store.get("a")
        assert job.state == JobState.FAILED
        assert job.error.kind == ErrorKind.TIMEOUT
        assert "dead-host-1/slot-0" in job.error.message
        assert await store.running_count() == 0

    @pytest.mark.asyncio
    async def test_live_lease_is_left_alone(self) -> None:
        store = await claimed_store("a")
        started = (await store.get("a")).started_at

        assert await reap_expired_jobs(store, now=started + 1) == []
        assert (await store.get("a")).state == JobState.RUNNING

    @pytest.mark.asyncio
    async def test_only_expired_jobs_are_reaped(self) -> None:
        store = await claimed_store("short", lease_seconds=10)
        await store.create(make_job("long"))
        await store.claim("long", "w", capacity=5, lease_seconds=1000)
        started = (await store.get("short")).started_at

        reaped = await reap_expired_jobs(store, now=started + 100)

        assert reaped == ["short"]
        assert (await store.get("long")).state == JobState.RUNNING

    @pytest.mark.asyncio
    async def test_queued_and_finished_jobs_are_ignored(self) -> None:
        store = InMemoryJobStore()
        await store.create(make_job("queued"))
        await store.enqueue("queued")

        assert await reap_expired_jobs(store, now=10**12) == []
        assert (await store.get("queued")).state == JobState.QUEUED

    @pytest.mark.asyncio
    async def test_reaped_capacity_can_be_claimed_again(self) -> None:
        store = await claimed_store("a")
        await store.create(make_job("b"))
        assert not await store.claim("b", "w", capacity=1, lease_seconds=60)

        await reap_expired_jobs(store, now=10**12)

        assert await store.claim("b", "w", capacity=1, lease_seconds=60)


def test_reaper_task_is_registered_under_stable_name() -> None:
    assert reap_stale_jobs.name == "transcoding.reap_stale_jobs"
