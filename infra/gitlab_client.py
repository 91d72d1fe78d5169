"""GitLab pipelines client.

Implements :class:`~infra.ci.CIProvider` against the GitLab REST API v4.
Works with both gitlab.com and self-hosted GitLab instances; pass the full
base URL (e.g. ``https://gitlab.internal``) via the ``GITLAB_URL`` config key.

Authentication uses a personal access token (PAT) via the ``PRIVATE-TOKEN``
HTTP header.
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

# GitLab status -> (normalized status, normalized conclusion)
_STATUS_MAP: dict[str, tuple[str, str | None]] = {
    "created": (STATUS_QUEUED, None),
    "pending": (STATUS_QUEUED, None),
    "waiting_for_resource": (STATUS_QUEUED, None),
    "preparing": (STATUS_QUEUED, None),
    "scheduled": (STATUS_QUEUED, None),
    "manual": (STATUS_QUEUED, None),
    "running": (STATUS_IN_PROGRESS, None),
    "success": (STATUS_COMPLETED, CONCLUSION_SUCCESS),
    "skipped": (STATUS_COMPLETED, CONCLUSION_SUCCESS),
    "failed": (STATUS_COMPLETED, CONCLUSION_FAILURE),
    "canceled": (STATUS_COMPLETED, CONCLUSION_CANCELLED),
}


def _map_status(value: str | None) -> tuple[str, str | None]:
    return _STATUS_MAP.get(value or "", (STATUS_QUEUED, None))


def _encode_project(project_path: str) -> str:
    """URL-encode a project path (``group/subgroup/project`` -> ``group%2Fsubgroup%2Fproject``)."""
    return quote(project_path, safe="")


class GitLabPipelinesClient:
    """GitLab REST API v4 client.

    Args:
        token:    GitLab personal access token.
        base_url: GitLab instance URL, e.g. ``"https://gitlab.com"``.
        timeout:  HTTP timeout in seconds (default 30).
    """

    def __init__(
        self,
        token: str = "",
        base_url: str = "https://gitlab.com",
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_base = f"{self._base_url}/api/v4"
        self._token = token
        headers: dict[str, str] = {}
        if token:
            headers["PRIVATE-TOKEN"] = token
        self._client = httpx.Client(headers=headers, timeout=timeout, follow_redirects=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _request(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        url = f"{self._api_base}{path}"
        try:
            response = self._client.get(url, params=params)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            message = f"GitLab GET {path} failed: {status} {exc.response.text[:200]}"
            if status == 401:
                raise CIAuthError(message, status_code=status) from exc
            raise CIError(message, status_code=status) from exc
        except httpx.RequestError as exc:
            raise CIError(f"GitLab GET {path} network error: {exc}") from exc

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = self._request(path, params)
        try:
            return response.json()
        except ValueError as exc:
            raise CIError(f"GitLab GET {path} returned invalid JSON") from exc

    def _project_path(self, repo: str) -> str:
        """Return ``/projects/encoded-path``."""
        return f"/projects/{_encode_project(repo)}"

    def _run_from_dict(self, data: dict[str, Any]) -> CIRun:
        status, conclusion = _map_status(data.get("status"))
        try:
            pipeline_id = data["id"]
        except KeyError as exc:
            raise CIError("GitLab pipeline payload missing field 'id'") from exc
        return CIRun(
            id=pipeline_id,
            name=data.get("name") or f"pipeline #{pipeline_id} ({data.get('ref', '')})",
            status=status,
            conclusion=conclusion,
            head_sha=data.get("sha", ""),
            created_at=parse_timestamp(data.get("created_at")),
            url=data.get("web_url", ""),
        )

    # ------------------------------------------------------------------
    # CIProvider implementation
    # ------------------------------------------------------------------

    def ensure_authenticated(self) -> None:
        if not self._token:
            raise CIAuthError("GITLAB_TOKEN is not configured")
        self._get("/user")

    def list_recent_runs(self, repo: str, branch: str | None = None) -> list[CIRun]:
        params: dict[str, Any] = {"per_page": 20, "order_by": "id", "sort": "desc"}
        if branch:
            params["ref"] = branch
        data = self._get(f"{self._project_path(repo)}/pipelines", params=params)
        return [self._run_from_dict(item) for item in data]

    def get_run(self, repo: str, run_id: int) -> CIRun:
        return self._run_from_dict(self._get(f"{self._project_path(repo)}/pipelines/{run_id}"))

    def get_run_jobs(self, repo: str, run_id: int) -> list[CIJob]:
        data = self._get(
            f"{self._project_path(repo)}/pipelines/{run_id}/jobs",
            params={"per_page": 100},
        )
        jobs = []
        for item in data:
            status, conclusion = _map_status(item.get("status"))
            if item.get("allow_failure") and conclusion == CONCLUSION_FAILURE:
                conclusion = CONCLUSION_SUCCESS
            jobs.append(CIJob(id=item["id"], name=item.get("name", ""), status=status, conclusion=conclusion))
        return jobs

    def get_job_log(self, repo: str, job_id: int) -> str:
        return self._request(f"{self._project_path(repo)}/jobs/{job_id}/trace").text

    def get_run_log(self, repo: str, run_id: int, failed_only: bool = True) -> str:
        jobs = self.get_run_jobs(repo, run_id)
        if failed_only:
            jobs = [job for job in jobs if job.failed]
        return "\n".join(f"===== {job.name} =====\n{self.get_job_log(repo, job.id)}" for job in jobs)

    def find_pull_request(self, repo: str, sha: str) -> PullRequestInfo | None:
        data = self._get(f"{self._project_path(repo)}/repository/commits/{sha}/merge_requests")
        for item in data:
            if item.get("state") == "opened":
                return PullRequestInfo(
                    number=item.get("iid", item.get("id", 0)),
                    url=item.get("web_url", ""),
                    title=item.get("title", ""),
                    state="open",
                )
        return None

    def __repr__(self) -> str:  # pragma: no cover
        return f"GitLabPipelinesClient(base_url={self._base_url!r})"
