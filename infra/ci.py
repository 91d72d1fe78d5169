"""Unified CI interface: abstract protocol and shared data models.

All code that needs to talk to a CI provider (GitHub Actions or GitLab
pipelines) must go through a ``CIProvider`` implementation. Statuses and
conclusions are normalized by the clients so the reconciliation loop never
sees provider-specific vocabulary.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from pydantic import BaseModel

# Normalized run/job status values.
STATUS_QUEUED = "queued"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"

# Normalized conclusion values (``None`` while the run is not completed).
CONCLUSION_SUCCESS = "success"
CONCLUSION_FAILURE = "failure"
CONCLUSION_CANCELLED = "cancelled"


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp returned by a CI API into an aware datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


class CIRun(BaseModel):
    """A workflow run (GitHub) or pipeline (GitLab)."""

    id: int
    name: str = ""
    status: str = STATUS_QUEUED
    conclusion: str | None = None
    head_sha: str = ""
    created_at: datetime | None = None
    url: str = ""


class CIJob(BaseModel):
    """A single job inside a run."""

    id: int
    name: str
    status: str = STATUS_QUEUED
    conclusion: str | None = None

    @property
    def failed(self) -> bool:
        return self.conclusion in (CONCLUSION_FAILURE, CONCLUSION_CANCELLED)

    @property
    def active(self) -> bool:
        return self.status == STATUS_IN_PROGRESS


class PullRequestInfo(BaseModel):
    """An open pull request (GitHub) or merge request (GitLab) for a commit."""

    number: int
    url: str = ""
    title: str = ""
    state: str = ""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class CIProvider(Protocol):
    """Minimal CI operations required by the reconciliation loop.

    Both ``GitHubActionsClient`` and ``GitLabPipelinesClient`` implement this
    protocol. Callers should type-hint against ``CIProvider``.

    All methods are synchronous and raise :class:`CIError` on any HTTP or
    parsing error.
    """

    def ensure_authenticated(self) -> None:
        """Verify credentials.

        Raises:
            CIAuthError: If no token is configured or the API rejects it.
        """
        ...

    def list_recent_runs(self, repo: str, branch: str | None = None) -> list[CIRun]:
        """Return the most recent runs, newest first.

        Args:
            repo:   ``owner/name`` for GitHub; project path for GitLab.
            branch: Optional branch filter.
        """
        ...

    def get_run(self, repo: str, run_id: int) -> CIRun:
        """Fetch a single run by id."""
        ...

    def get_run_jobs(self, repo: str, run_id: int) -> list[CIJob]:
        """Return every job of a run with its current status."""
        ...

    def get_job_log(self, repo: str, job_id: int) -> str:
        """Return the raw log text of one job."""
        ...

    def get_run_log(self, repo: str, run_id: int, failed_only: bool = True) -> str:
        """Return the concatenated logs of a run's jobs.

        Args:
            failed_only: Only include jobs whose conclusion is a failure.
        """
        ...

    def find_pull_request(self, repo: str, sha: str) -> PullRequestInfo | None:
        """Return the open PR/MR containing *sha*, if any."""
        ...


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CIError(Exception):
    """Raised for any CI API error (HTTP errors, missing fields, ...)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __repr__(self) -> str:  # pragma: no cover
        return f"{type(self).__name__}({self.args[0]!r}, status_code={self.status_code})"


class CIAuthError(CIError):
    """Missing or rejected CI credentials. Always fatal."""
