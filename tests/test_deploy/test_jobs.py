"""Tests for background deployment jobs (buildfactory.deploy.jobs).

Covers:
- Successful, failing and error-recording job bodies
- Finaliser runs on every outcome, including cancellation
- cancel / wait / shutdown / jobs_for / active, including cancel before the body starts
- Retention-based pruning of finished jobs
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from buildfactory.deploy.jobs import DeployJob, JobKind, JobRunner, JobStatus

pytestmark = pytest.mark.unit


def _job(tenant_id: str = "t-1", kind: JobKind = JobKind.DEPLOY) -> DeployJob:
    return DeployJob(tenant_id=tenant_id, kind=kind)


class Recorder:
    def __init__(self) -> None:
        self.finalized: list[JobStatus] = []

    async def finalize(self, job: DeployJob) -> None:
        self.finalized.append(job.status)


class TestJobStatus:
    def test_terminal(self):
        assert JobStatus.SUCCEEDED.terminal
        assert JobStatus.CANCELLED.terminal
        assert not JobStatus.RUNNING.terminal

    def test_error_list(self):
        job = _job()
        job.errors["backend"] = "boom"
        assert job.error_list() == ["backend: boom"]


class TestJobRunner:
    @pytest.mark.asyncio
    async def test_success(self):
        runner, recorder = JobRunner(), Recorder()

        async def work(job: DeployJob) -> None:
            job.result["done"] = True

        job = runner.submit(_job(), work, recorder.finalize)
        finished = await runner.wait(job.id)

        assert finished.status == JobStatus.SUCCEEDED
        assert finished.result == {"done": True}
        assert finished.finished_at is not None
        assert recorder.finalized == [JobStatus.SUCCEEDED]
        assert runner.active() == []

    @pytest.mark.asyncio
    async def test_recorded_errors_mean_failure(self):
        runner, recorder = JobRunner(), Recorder()

        async def work(job: DeployJob) -> None:
            job.errors["frontend"] = "static site refused"

        job = runner.submit(_job(), work, recorder.finalize)
        await runner.wait(job.id)
        assert job.status == JobStatus.FAILED
        assert recorder.finalized == [JobStatus.FAILED]

    @pytest.mark.asyncio
    async def test_exception_is_captured(self):
        runner, recorder = JobRunner(), Recorder()

        async def work(job: DeployJob) -> None:
            raise RuntimeError("render exploded")

        job = runner.submit(_job(), work, recorder.finalize)
        await runner.wait(job.id)
        assert job.status == JobStatus.FAILED
        assert job.errors == {"job": "render exploded"}
        assert recorder.finalized == [JobStatus.FAILED]

    @pytest.mark.asyncio
    async def test_cancel_runs_finaliser(self):
        runner, recorder = JobRunner(), Recorder()
        started = asyncio.Event()

        async def work(job: DeployJob) -> None:
            started.set()
            await asyncio.sleep(60)

        job = runner.submit(_job(), work, recorder.finalize)
        await started.wait()
        assert runner.active() == [job]

        assert await runner.cancel(job.id) is True
        assert job.status == JobStatus.CANCELLED
        assert recorder.finalized == [JobStatus.CANCELLED]
        assert await runner.cancel(job.id) is False

    @pytest.mark.asyncio
    async def test_cancel_before_first_step_still_finalises(self):
        runner, recorder = JobRunner(), Recorder()
        ran: list[str] = []

        async def work(job: DeployJob) -> None:
            ran.append(job.id)

        job = runner.submit(_job(), work, recorder.finalize)
        assert await runner.cancel(job.id) is True

        assert ran == []
        assert job.status == JobStatus.CANCELLED
        assert job.errors == {"job": "cancelled"}
        assert job.finished_at is not None
        assert recorder.finalized == [JobStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_shutdown_before_jobs_start(self):
        runner, recorder = JobRunner(), Recorder()

        async def work(job: DeployJob) -> None:
            await asyncio.sleep(60)

        jobs = [runner.submit(_job(f"t-{i}"), work, recorder.finalize) for i in range(2)]
        await runner.shutdown()
        assert all(j.status == JobStatus.CANCELLED for j in jobs)
        assert recorder.finalized == [JobStatus.CANCELLED, JobStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_finished_jobs_pruned_after_retention(self):
        runner, recorder = JobRunner(retention=60), Recorder()

        async def work(job: DeployJob) -> None:
            return None

        old = runner.submit(_job("t-1"), work, recorder.finalize)
        await runner.wait(old.id)
        old.finished_at -= timedelta(minutes=5)
        recent = runner.submit(_job("t-1"), work, recorder.finalize)
        await runner.wait(recent.id)

        assert runner.get(old.id) is None
        assert runner.get(recent.id) is recent
        assert runner.prune() == 0

    @pytest.mark.asyncio
    async def test_finaliser_failure_is_contained(self):
        runner = JobRunner()

        async def work(job: DeployJob) -> None:
            return None

        async def bad_finalize(job: DeployJob) -> None:
            raise RuntimeError("disk full")

        job = runner.submit(_job(), work, bad_finalize)
        await runner.wait(job.id)
        assert job.status == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_jobs_for_and_get(self):
        runner, recorder = JobRunner(), Recorder()

        async def work(job: DeployJob) -> None:
            return None

        first = runner.submit(_job("t-1"), work, recorder.finalize)
        runner.submit(_job("t-2"), work, recorder.finalize)
        second = runner.submit(_job("t-1", JobKind.REDEPLOY), work, recorder.finalize)
        for job in (first, second):
            await runner.wait(job.id)

        assert [j.id for j in runner.jobs_for("t-1")] == [first.id, second.id]
        assert runner.get(first.id) is first
        assert runner.get("missing") is None
        assert await runner.wait("missing") is None

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self):
        runner, recorder = JobRunner(), Recorder()

        async def work(job: DeployJob) -> None:
            await asyncio.sleep(60)

        jobs = [runner.submit(_job(f"t-{i}"), work, recorder.finalize) for i in range(3)]
        await asyncio.sleep(0)
        await runner.shutdown()
        assert all(j.status == JobStatus.CANCELLED for j in jobs)
        assert len(recorder.finalized) == 3
