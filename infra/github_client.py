"""GitHub Actions client.

Implements :class:`~infra.ci.CIProvider` against the GitHub REST API v3.
Authentication uses a personal access token (PAT) supplied via the
``GITHUB_TOKEN`` environment variable / config key.

Usage::

    from infra.factory import get_ci_client
    client = get_ci_client("https://github.com/owner/repo")
    runs = client.list_recent_runs("owner/repo")
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from infra.ci import (
    CONCLUSION_CANCELLED,
    CONCLUSION_FAILURE,
    CONCLUSION_SUCCESS,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_QUEUED,
    CIAuthError,
    CIError,
    CIJob,
    CIRun,
    PullRequestInfo,
    parse_timestamp,
)

_GITHUB_API = "https://api.github.com"

_STATUS_MAP = {
    "queued": STATUS_QUEUED,
    "waiting": STATUS_QUEUED,
    "requested": STATUS_QUEUED,
    "pending": STATUS_QUEUED,
    "in_progress": STATUS_IN_PROGRESS,
    "completed": STATUS_COMPLETED,
}

_CONCLUSION_MAP = {
    "success": CONCLUSION_SUCCESS,
    "neutral": CONCLUSION_SUCCESS,
    "skipped": CONCLUSION_SUCCESS,
    "cancelled": CONCLUSION_CANCELLED,
    "failure": CONCLUSION_FAILURE,
    "timed_out": CONCLUSION_FAILURE,
    "startup_failure": CONCLUSION_FAILURE,
    "action_required": CONCLUSION_FAILURE,
    "stale": CONCLUSION_FAILURE,
}


def _status(value: str | None) -> str:
    return _STATUS_MAP.get(value or "", STATUS_QUEUED)


def _conclusion(value: str | None) -> str | None:
    if not value:
        return None
    return _CONCLUSION_MAP.get(value, CONCLUSION_FAILURE)


class GitHubActionsClient:
    """GitHub Actions REST API v3 client.

    Args:
        token: GitHub personal access token.
        base_url: API base URL. Override in tests or for GitHub Enterprise.
        timeout: HTTP timeout in seconds (default 30).
    """

    def __init__(
        self,
        token: str = "",
        base_url: str = _GITHUB_API,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        headers: dict[str, str] = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        # Job log endpoints answer with a redirect to blob storage.
        self._client = httpx.Client(headers=headers, timeout=timeout, follow_redirects=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _request(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            response = self._client.get(url, params=params)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            message = f"GitHub GET {path} failed: {status} {exc.response.text[:200]}"
            if status == 401:
                raise CIAuthError(message, status_code=status) from exc
            raise CIError(message, status_code=status) from exc
        except httpx.RequestError as exc:
            raise CIError(f"GitHub GET {path} network error: {exc}") from exc

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = self._request(path, params)
        try:
            return response.json()
        except ValueError as exc:
            raise CIError(f"GitHub GET {path} returned invalid JSON") from exc

    def _repo_path(self, repo: str) -> str:
        """Return URL-encoded ``/repos/owner/name``."""
        return f"/repos/{quote(repo, safe='/')}"

    def _run_from_dict(self, data: dict[str, Any]) -> CIRun:
        try:
            return CIRun(
                id=data["id"],
                name=data.get("name") or data.get("display_title") or "",
                status=_status(data.get("status")),
                conclusion=_conclusion(data.get("conclusion")),
                head_sha=data.get("head_sha", ""),
                created_at=parse_timestamp(data.get("created_at")),
                url=data.get("html_url", ""),
            )
        except KeyError as exc:
            raise CIError(f"GitHub run payload missing field {exc}") from exc

    def _job_from_dict(self, data: dict[str, Any]) -> CIJob:
        return CIJob(
            id=data["id"],
            name=data.get("name", ""),
            status=_status(data.get("status")),
            conclusion=_conclusion(data.get("conclusion")),
        )

    # ------------------------------------------------------------------
    # CIProvider implementation
    # ------------------------------------------------------------------

    def ensure_authenticated(self) -> None:
        if not self._token:
            raise CIAuthError("GITHUB_TOKEN is not configured")
        self._get("/user")

    def list_recent_runs(self, repo: str, branch: str | None = None) -> list[CIRun]:
        """List the 20 most recent workflow runs, newest first.

        Args:
            repo:   ``owner/name``.
            branch: Optional branch filter.
        """
        params: dict[str, Any] = {"per_page": 20}
        if branch:
            params["branch"] = branch
        data = self._get(f"{self._repo_path(repo)}/actions/runs", params=params)
        return [self._run_from_dict(item) for item in data.get("workflow_runs", [])]

    def get_run(self, repo: str, run_id: int) -> CIRun:
        return self._run_from_dict(self._get(f"{self._repo_path(repo)}/actions/runs/{run_id}"))

    def get_run_jobs(self, repo: str, run_id: int) -> list[CIJob]:
        data = self._get(
            f"{self._repo_path(repo)}/actions/runs/{run_id}/jobs",
            params={"per_page": 100},
        )
        return [self._job_from_dict(item) for item in data.get("jobs", [])]

    def get_job_log(self, repo: str, job_id: int) -> str:
        return self._request(f"{self._repo_path(repo)}/actions/jobs/{job_id}/logs").text

    def get_run_log(self, repo: str, run_id: int, failed_only: bool = True) -> str:
        """Concatenate job logs of a run.

        Each section is headed with the job name so the agent can tell the
        failing jobs apart.
        """
        jobs = self.get_run_jobs(repo, run_id)
        if failed_only:
            jobs = [job for job in jobs if job.failed]
        sections = []
        for job in jobs:
            sections.append(f"===== {job.name} =====\n{self.get_job_log(repo, job.id)}")
        return "\n".join(sections)

    def find_pull_request(self, repo: str, sha: str) -> PullRequestInfo | None:
        data = self._get(f"{self._repo_path(repo)}/commits/{sha}/pulls")
        for item in data:
            if item.get("state") == "open":
                return PullRequestInfo(
                    number=item["number"],
                    url=item.get("html_url", ""),
                    title=item.get("title", ""),
                    state="open",
                )
        return None

    def __repr__(self) -> str:  # pragma: no cover
        return f"GitHubActionsClient(base_url={self._base_url!r})"
