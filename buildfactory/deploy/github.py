"""GitHub repository creation and source push.

Repositories are created over the REST API (organisation first, falling
back to the token owner's account) and populated with the ``git`` CLI.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, Field

from buildfactory.config import DeployConfig
from buildfactory.errors import DeploymentError

logger = logging.getLogger(__name__)

COMMIT_AUTHOR_NAME = "Build Factory"
COMMIT_AUTHOR_EMAIL = "factory@buildfactory.invalid"


class GitError(DeploymentError):
    """A ``git`` subprocess failed or timed out."""

    def __init__(self, message: str, command: str = "", stderr: str = "") -> None:
        self.command = command
        self.stderr = stderr
        super().__init__(message)


class RepoInfo(BaseModel):
    """The repository a tenant's code is pushed to."""

    full_name: str
    html_url: str = Field(default="")
    existed: bool = Field(default=False)

    @property
    def url(self) -> str:
        return self.html_url or f"https://github.com/{self.full_name}"


# ---------------------------------------------------------------------------
# git subprocess helper
# ---------------------------------------------------------------------------


async def _run_git(
    *args: str,
    cwd: str | Path | None = None,
    timeout: float = 60.0,
    redact: str = "",
) -> tuple[str, str]:
    """Run a git command asynchronously and return (stdout, stderr).

    *redact* is masked out of every message so tokens embedded in remote
    URLs never reach logs or errors.

    Raises:
        GitError: If the command exits non-zero or times out.
    """
    cmd = ["git"] + list(args)
    cmd_str = " ".join(cmd)
    if redact:
        cmd_str = cmd_str.replace(redact, "***")

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd else None,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise GitError(f"Git command timed out after {timeout}s: {cmd_str}", command=cmd_str)

    stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
    stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
    if redact:
        stderr = stderr.replace(redact, "***")

    if process.returncode != 0:
        raise GitError(
            f"Git command failed (exit {process.returncode}): {cmd_str}\n{stderr}",
            command=cmd_str,
            stderr=stderr,
        )
    return stdout, stderr


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GitHubClient:
    """Creates repositories and pushes build sources to them."""

    def __init__(self, config: DeployConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self.base_url = config.github_api_url.rstrip("/")
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.config.http_timeout, connect=10.0),
            headers={
                "Authorization": f"Bearer {self.config.github_token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            transport=self._transport,
        )

    async def create_repo(self, name: str, description: str = "") -> RepoInfo:
        """Create a private repository, reusing one that already exists.

        Raises:
            DeploymentError: If neither the organisation nor the user
                endpoint accepted the request.
        """
        org = self.config.github_org
        payload: dict[str, Any] = {
            "name": name,
            "description": description or f"Build Factory tenant: {name}",
            "private": True,
            "auto_init": False,
        }
        owner = org
        try:
            async with self._client() as client:
                response = await client.post(f"/orgs/{org}/repos", json=payload)
                if response.status_code >= 400 and not _already_exists(response):
                    logger.info("Org repo creation refused (%s); trying user account", response.status_code)
                    response = await client.post("/user/repos", json=payload)
                    if _already_exists(response):
                        owner = await self._user_login(client)
        except httpx.HTTPError as exc:
            raise DeploymentError(f"GitHub request failed: {exc}") from exc

        if _already_exists(response):
            logger.info("Repository %s/%s already exists; reusing it", owner, name)
            return RepoInfo(full_name=f"{owner}/{name}", existed=True)
        if response.status_code >= 400:
            raise DeploymentError(
                f"GitHub repo creation failed ({response.status_code}): {response.text[:500]}",
                status_code=response.status_code,
            )
        data = response.json()
        return RepoInfo(full_name=data["full_name"], html_url=data.get("html_url", ""))

    async def _user_login(self, client: httpx.AsyncClient) -> str:
        """Login of the account that owns the token."""
        response = await client.get("/user")
        if response.status_code >= 400:
            raise DeploymentError(
                f"GitHub user lookup failed ({response.status_code}): {response.text[:500]}",
                status_code=response.status_code,
            )
        return response.json()["login"]

    async def push(self, repo_full_name: str, source_dir: Path, branch: str = "main") -> None:
        """Commit *source_dir* as a fresh history and force-push it to *branch*."""
        token = self.config.github_token
        host = httpx.URL(self.config.github_api_url).host
        host = "github.com" if host in ("api.github.com", "") else host
        remote = f"https://x-access-token:{token}@{host}/{repo_full_name}.git"
        timeout = float(self.config.git_timeout)

        await _run_git("init", "-b", branch, cwd=source_dir, timeout=timeout)
        await _run_git("config", "user.email", COMMIT_AUTHOR_EMAIL, cwd=source_dir, timeout=timeout)
        await _run_git("config", "user.name", COMMIT_AUTHOR_NAME, cwd=source_dir, timeout=timeout)
        await _run_git("add", "-A", cwd=source_dir, timeout=timeout)
        await _run_git("commit", "-m", "Build Factory deployment", cwd=source_dir, timeout=timeout)
        await _run_git("remote", "add", "origin", remote, cwd=source_dir, timeout=timeout, redact=token)
        await _run_git("push", "-u", "origin", branch, "--force", cwd=source_dir, timeout=timeout, redact=token)
        logger.info("Pushed %s to %s@%s", source_dir.name, repo_full_name, branch)


def _already_exists(response: httpx.Response) -> bool:
    if response.status_code != 422:
        return False
    try:
        errors = response.json().get("errors", [])
    except ValueError:
        return False
    return any("already exists" in str(err.get("message", "")) for err in errors if isinstance(err, dict))
