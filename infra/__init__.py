"""greenlight infrastructure layer: CI API clients and the target registry.

All external CI communication (GitHub Actions, GitLab pipelines) goes through
this package. Use :func:`~infra.factory.get_ci_client` to obtain a client.

Quick start::

    from infra.factory import get_ci_client, parse_repo_slug

    remote = "https://github.com/owner/repo.git"
    client = get_ci_client(remote)
    client.ensure_authenticated()
    runs = client.list_recent_runs(parse_repo_slug(remote))
"""

from infra.ci import CIAuthError, CIError, CIJob, CIProvider, CIRun, PullRequestInfo
from infra.factory import get_ci_client, parse_repo_slug
from infra.github_client import GitHubActionsClient
from infra.gitlab_client import GitLabPipelinesClient
from infra.registry import TargetEntry, TargetRegistry, load_targets

__all__ = [
    # Protocol & models
    "CIProvider",
    "CIError",
    "CIAuthError",
    "CIRun",
    "CIJob",
    "PullRequestInfo",
    # Clients
    "GitHubActionsClient",
    "GitLabPipelinesClient",
    # Factory
    "get_ci_client",
    "parse_repo_slug",
    # Registry
    "TargetEntry",
    "TargetRegistry",
    "load_targets",
]
