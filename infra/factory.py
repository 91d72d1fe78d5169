"""CI client factory.

:func:`get_ci_client` is the single entry-point for obtaining a
``CIProvider`` instance. It auto-detects the platform from the repository's
remote URL and reads credentials from the application config.

Usage::

    from infra.factory import get_ci_client, parse_repo_slug

    remote = "git@github.com:owner/repo.git"
    client = get_ci_client(remote)
    runs = client.list_recent_runs(parse_repo_slug(remote))
"""

from __future__ import annotations

import re
from urllib.parse import urlparse

from greenlight.core.config import Settings, get_settings
from infra.ci import CIError, CIProvider
from infra.github_client import GitHubActionsClient
from infra.gitlab_client import GitLabPipelinesClient

# git@host:owner/name(.git)
_SCP_LIKE = re.compile(r"^[\w.-]+@(?P<host>[^:/]+):(?P<path>.+)$")


def parse_repo_slug(remote_url: str) -> str:
    """Return ``owner/name`` (or ``group/sub/project``) from a remote URL.

    Accepts HTTPS, ``ssh://`` and scp-like ``git@host:path`` forms.

    Raises:
        CIError: If no repository path can be extracted.
    """
    url = remote_url.strip()
    match = _SCP_LIKE.match(url)
    if match:
        path = match.group("path")
    else:
        path = urlparse(url).path
    path = path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    if path.count("/") < 1:
        raise CIError(f"Cannot extract repository path from remote URL {remote_url!r}")
    return path


def _host(remote_url: str) -> str:
    match = _SCP_LIKE.match(remote_url.strip())
    if match:
        return match.group("host").lower()
    return (urlparse(remote_url.strip()).hostname or "").lower()


def get_ci_client(
    url: str,
    platform: str | None = None,
    settings: Settings | None = None,
) -> CIProvider:
    """Return a :class:`~infra.ci.CIProvider` for *url*.

    Platform detection rules (first match wins):

    1. If *platform* (or ``CI_PLATFORM`` when not ``auto``) is ``"github"`` or
       ``"gitlab"``, that client is returned.
    2. If the URL host is ``github.com`` -> GitHub Actions.
    3. If the URL host is ``gitlab.com`` -> GitLab pipelines (gitlab.com).
    4. If the host matches the configured ``GITLAB_URL`` -> GitLab
       (self-hosted instance).
    5. Otherwise raise :class:`~infra.ci.CIError`.

    Args:
        url:      The repository remote URL (HTTPS or SSH).
        platform: Optional override: ``"github"`` or ``"gitlab"``.
        settings: Configuration; defaults to the process-wide settings.

    Raises:
        CIError: If the platform cannot be determined from *url*.
    """
    settings = settings or get_settings()
    github_token = settings.github_token
    gitlab_token = settings.gitlab_token
    gitlab_url = settings.gitlab_url or "https://gitlab.com"

    if platform is None and settings.ci_platform.lower() != "auto":
        platform = settings.ci_platform

    # ── Explicit override ────────────────────────────────────────────────
    if platform is not None:
        platform = platform.lower().strip()
        if platform == "github":
            return GitHubActionsClient(token=github_token)
        if platform == "gitlab":
            return GitLabPipelinesClient(token=gitlab_token, base_url=gitlab_url)
        raise CIError(f"Unknown CI platform {platform!r}. Must be 'github' or 'gitlab'.")

    # ── Auto-detection from URL ──────────────────────────────────────────
    host = _host(url)

    if host == "github.com":
        return GitHubActionsClient(token=github_token)

    if host == "gitlab.com":
        return GitLabPipelinesClient(token=gitlab_token, base_url="https://gitlab.com")

    gitlab_host = (urlparse(gitlab_url).hostname or "").lower()
    if gitlab_host and host == gitlab_host:
        return GitLabPipelinesClient(token=gitlab_token, base_url=gitlab_url)

    raise CIError(
        f"Cannot determine CI platform from URL {url!r}. "
        "Set GITLAB_URL for self-hosted GitLab instances, "
        "or CI_PLATFORM=github/gitlab explicitly."
    )
