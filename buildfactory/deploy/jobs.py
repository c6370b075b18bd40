"""Tracked background deployment jobs.

A ``DeployJob`` is the record of one deploy, redeploy or rollback.  The
``JobRunner`` owns the asyncio task for each job, can cancel it, and always
runs the job's finaliser so the tenant never stays stuck in ``deploying``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class JobKind(str, Enum):
    DEPLOY = "deploy"
    REDEPLOY = "redeploy"
    ROLLBACK = "rollback"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeployJob(BaseModel):
    """One background deployment operation for a tenant."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    kind: JobKind
    status: JobStatus = Field(default=JobStatus.PENDING)
    errors: dict[str, str] = Field(default_factory=dict, description="Sub-service -> error")
    result: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None

    def error_list(self) -> list[str]:
        return [f"{name}: {message}" for name, message in self.errors.items()]


JobWork = Callable[[DeployJob], Awaitable[None]]
JobFinalizer = Callable[[DeployJob], Awaitable[None]]

class JobRunner:
    """Runs ``DeployJob`` work as owned asyncio tasks.

    Finished jobs are kept for *retention* seconds so callers can still read
    their outcome, then dropped the next time a job is submitted.
    """

    def __init__(self, retention: float = 24 * 60 * 60) -> None:
        self.retention = retention
        self._jobs: dict[str, DeployJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._finalizers: dict[str, JobFinalizer] = {}

    def submit(self, job: DeployJob, work: JobWork, finalize: JobFinalizer) -> DeployJob:
        """Start *work* in the background; *finalize* runs however it ends."""
        self.prune()
        self._jobs[job.id] = job
        self._finalizers[job.id] = finalize
        task = asyncio.create_task(self._run(job, work), name=f"{job.kind.value}-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job.id, None))
        return job

    def get(self, job_id: str) -> DeployJob | None:
        return self._jobs.get(job_id)

    def jobs_for(self, tenant_id: str) -> list[DeployJob]:
        return sorted(
            (j for j in self._jobs.values() if j.tenant_id == tenant_id),
            key=lambda j: j.created_at,
        )

    def active(self) -> list[DeployJob]:
        return [self._jobs[jid] for jid in self._tasks if jid in self._jobs]

    def prune(self) -> int:
        """Forget terminal jobs that finished more than ``retention`` seconds ago."""
        cutoff = _utcnow() - timedelta(seconds=self.retention)
        stale = [
            jid for jid, job in self._jobs.items()
            if job.status.terminal and job.finished_at is not None and job.finished_at < cutoff
        ]
        for jid in stale:
            del self._jobs[jid]
        return len(stale)

    async def cancel(self, job_id: str) -> bool:
        """Cancel a running job and wait for its finaliser.  ``False`` if not running."""
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        job = self._jobs.get(job_id)
        if job is not None and job.status == JobStatus.PENDING:
            # Cancelled before its first step: _run never entered its try block.
            job.status = JobStatus.CANCELLED
            job.errors.setdefault("job", "cancelled")
            await self._finish(job)
        return True

    async def wait(self, job_id: str) -> DeployJob | None:
        """Wait for a job to reach a terminal state."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._jobs.get(job_id)

    async def shutdown(self) -> None:
        """Cancel every running job."""
        for job_id in list(self._tasks):
            await self.cancel(job_id)

    # -- Internal ----------------------------------------------------------

    async def _run(self, job: DeployJob, work: JobWork) -> None:
        job.status = JobStatus.RUNNING
        try:
            await work(job)
            job.status = JobStatus.FAILED if job.errors else JobStatus.SUCCEEDED
        except asyncio.CancelledError:
            job.status = JobStatus.CANCELLED
            job.errors.setdefault("job", "cancelled")
            raise
        except Exception as exc:
            job.status = JobStatus.FAILED
            job.errors.setdefault("job", str(exc))
            logger.exception("%s job %s for tenant %s failed", job.kind.value, job.id, job.tenant_id)
        finally:
            await self._finish(job)

    async def _finish(self, job: DeployJob) -> None:
        job.finished_at = _utcnow()
        finalize = self._finalizers.pop(job.id, None)
        if finalize is None:
            return
        try:
            await finalize(job)
        except Exception:
            logger.exception("Finalising job %s failed", job.id)
