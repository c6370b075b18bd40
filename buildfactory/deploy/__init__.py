"""Deployment to GitHub + Render and the tenant deployment state machine."""

from buildfactory.deploy.github import GitHubClient, RepoInfo
from buildfactory.deploy.jobs import DeployJob, JobKind, JobRunner, JobStatus
from buildfactory.deploy.orchestrator import DeploymentOrchestrator, aggregate_status
from buildfactory.deploy.render import RenderClient

__all__ = [
    "DeployJob",
    "DeploymentOrchestrator",
    "GitHubClient",
    "JobKind",
    "JobRunner",
    "JobStatus",
    "RenderClient",
    "RepoInfo",
    "aggregate_status",
]
