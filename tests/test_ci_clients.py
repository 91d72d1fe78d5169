"""Tests for the CI provider layer.

Covers:
- Data models and protocol satisfaction
- GitHubActionsClient against mocked HTTP (respx)
- GitLabPipelinesClient against mocked HTTP (respx)
- factory.parse_repo_slug and factory.get_ci_client platform detection

No real network calls are made: all HTTP is mocked via respx.
"""

from __future__ import annotations

from datetime import UTC, datetime

import httpx
import pytest
import respx

from greenlight.core.config import Settings
from infra.ci import CIAuthError, CIError, CIJob, CIProvider, CIRun, parse_timestamp
from infra.factory import get_ci_client, parse_repo_slug
from infra.github_client import GitHubActionsClient
from infra.gitlab_client import GitLabPipelinesClient

GITHUB_API = "https://api.github.com"
GITLAB_API = "https://gitlab.example.com/api/v4"
PROJECT = "group%2Fsub%2Fapp"


# ═══════════════════════════════════════════════════════════════════════════
# 1. Data models
# ═══════════════════════════════════════════════════════════════════════════


class TestDataModels:
    def test_run_defaults(self):
        run = CIRun(id=1)
        assert run.status == "queued"
        assert run.conclusion is None

    def test_job_failed_includes_cancelled(self):
        assert CIJob(id=1, name="a", status="completed", conclusion="failure").failed
        assert CIJob(id=2, name="b", status="completed", conclusion="cancelled").failed
        assert not CIJob(id=3, name="c", status="completed", conclusion="success").failed

    def test_job_active(self):
        assert CIJob(id=1, name="a", status="in_progress").active

    def test_parse_timestamp(self):
        assert parse_timestamp("2026-03-01T12:00:00Z") == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        assert parse_timestamp("garbage") is None
        assert parse_timestamp(None) is None

    def test_clients_satisfy_protocol(self):
        assert isinstance(GitHubActionsClient(token="t"), CIProvider)
        assert isinstance(GitLabPipelinesClient(token="t"), CIProvider)


# ═══════════════════════════════════════════════════════════════════════════
# 2. GitHubActionsClient
# ═══════════════════════════════════════════════════════════════════════════


def _gh_run(run_id=7, status="completed", conclusion="failure", sha="abc1234def"):
    return {
        "id": run_id,
        "name": "CI",
        "status": status,
        "conclusion": conclusion,
        "head_sha": sha,
        "created_at": "2026-03-01T12:00:00Z",
        "html_url": f"https://github.com/owner/repo/actions/runs/{run_id}",
    }


@respx.mock
class TestGitHubActionsClient:
    def _client(self) -> GitHubActionsClient:
        return GitHubActionsClient(token="ghp_test_token")

    def test_list_recent_runs(self):
        route = respx.get(f"{GITHUB_API}/repos/owner/repo/actions/runs").mock(
            return_value=httpx.Response(200, json={"workflow_runs": [_gh_run(8, "in_progress", None), _gh_run()]})
        )
        runs = self._client().list_recent_runs("owner/repo", branch="main")
        assert [r.id for r in runs] == [8, 7]
        assert runs[0].status == "in_progress"
        assert runs[0].conclusion is None
        assert runs[1].created_at == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        assert route.calls.last.request.url.params["branch"] == "main"
        assert route.calls.last.request.headers["Authorization"] == "Bearer ghp_test_token"

    def test_status_and_conclusion_normalized(self):
        respx.get(f"{GITHUB_API}/repos/owner/repo/actions/runs/7").mock(
            return_value=httpx.Response(200, json=_gh_run(status="waiting", conclusion=None))
        )
        assert self._client().get_run("owner/repo", 7).status == "queued"

    def test_timed_out_is_failure(self):
        respx.get(f"{GITHUB_API}/repos/owner/repo/actions/runs/7").mock(
            return_value=httpx.Response(200, json=_gh_run(conclusion="timed_out"))
        )
        assert self._client().get_run("owner/repo", 7).conclusion == "failure"

    def test_skipped_is_success(self):
        respx.get(f"{GITHUB_API}/repos/owner/repo/actions/runs/7").mock(
            return_value=httpx.Response(200, json=_gh_run(conclusion="skipped"))
        )
        assert self._client().get_run("owner/repo", 7).conclusion == "success"

    def test_missing_id_raises(self):
        respx.get(f"{GITHUB_API}/repos/owner/repo/actions/runs/7").mock(
            return_value=httpx.Response(200, json={"status": "completed"})
        )
        with pytest.raises(CIError, match="missing field"):
            self._client().get_run("owner/repo", 7)

    def test_run_log_only_failed_jobs(self):
        respx.get(f"{GITHUB_API}/repos/owner/repo/actions/runs/7/jobs").mock(
            return_value=httpx.Response(
                200,
                json={
                    "jobs": [
                        {"id": 1, "name": "build", "status": "completed", "conclusion": "success"},
                        {"id": 2, "name": "lint", "status": "completed", "conclusion": "failure"},
                    ]
                },
            )
        )
        respx.get(f"{GITHUB_API}/repos/owner/repo/actions/jobs/2/logs").mock(
            return_value=httpx.Response(200, text="Error: missing semicolon")
        )
        log = self._client().get_run_log("owner/repo", 7)
        assert log == "===== lint =====\nError: missing semicolon"

    def test_job_log_follows_redirect(self):
        respx.get(f"{GITHUB_API}/repos/owner/repo/actions/jobs/5/logs").mock(
            return_value=httpx.Response(302, headers={"Location": "https://blob.example/log.txt"})
        )
        respx.get("https://blob.example/log.txt").mock(return_value=httpx.Response(200, text="raw log"))
        assert self._client().get_job_log("owner/repo", 5) == "raw log"

    def test_401_raises_auth_error(self):
        respx.get(f"{GITHUB_API}/user").mock(return_value=httpx.Response(401, json={"message": "Bad credentials"}))
        with pytest.raises(CIAuthError) as exc_info:
            self._client().ensure_authenticated()
        assert exc_info.value.status_code == 401

    def test_missing_token_is_auth_error(self):
        with pytest.raises(CIAuthError, match="GITHUB_TOKEN"):
            GitHubActionsClient().ensure_authenticated()

    def test_404_is_plain_ci_error(self):
        respx.get(f"{GITHUB_API}/repos/owner/repo/actions/runs/9").mock(return_value=httpx.Response(404))
        with pytest.raises(CIError) as exc_info:
            self._client().get_run("owner/repo", 9)
        assert not isinstance(exc_info.value, CIAuthError)
        assert exc_info.value.status_code == 404

    def test_network_error(self):
        respx.get(f"{GITHUB_API}/repos/owner/repo/actions/runs").mock(side_effect=httpx.ConnectError("down"))
        with pytest.raises(CIError, match="network error"):
            self._client().list_recent_runs("owner/repo")

    def test_find_open_pull_request(self):
        respx.get(f"{GITHUB_API}/repos/owner/repo/commits/abc/pulls").mock(
            return_value=httpx.Response(
                200,
                json=[
                    {"number": 3, "state": "closed", "html_url": "u3"},
                    {"number": 4, "state": "open", "html_url": "u4", "title": "Fix"},
                ],
            )
        )
        pr = self._client().find_pull_request("owner/repo", "abc")
        assert pr.number == 4
        assert pr.url == "u4"

    def test_no_pull_request(self):
        respx.get(f"{GITHUB_API}/repos/owner/repo/commits/abc/pulls").mock(return_value=httpx.Response(200, json=[]))
        assert self._client().find_pull_request("owner/repo", "abc") is None


# ═══════════════════════════════════════════════════════════════════════════
# 3. GitLabPipelinesClient
# ═══════════════════════════════════════════════════════════════════════════


@respx.mock
class TestGitLabPipelinesClient:
    def _client(self) -> GitLabPipelinesClient:
        return GitLabPipelinesClient(token="glpat-test", base_url="https://gitlab.example.com/")

    def test_list_recent_runs(self):
        route = respx.get(f"{GITLAB_API}/projects/{PROJECT}/pipelines").mock(
            return_value=httpx.Response(
                200,
                json=[
                    {"id": 11, "status": "running", "sha": "abc", "ref": "main", "web_url": "w11"},
                    {"id": 10, "status": "canceled", "sha": "def", "ref": "main", "web_url": "w10"},
                ],
            )
        )
        runs = self._client().list_recent_runs("group/sub/app", branch="main")
        assert [(r.status, r.conclusion) for r in runs] == [("in_progress", None), ("completed", "cancelled")]
        assert runs[0].name == "pipeline #11 (main)"
        assert route.calls.last.request.url.params["ref"] == "main"
        assert route.calls.last.request.headers["PRIVATE-TOKEN"] == "glpat-test"

    def test_pending_is_queued(self):
        respx.get(f"{GITLAB_API}/projects/{PROJECT}/pipelines/11").mock(
            return_value=httpx.Response(200, json={"id": 11, "status": "pending"})
        )
        run = self._client().get_run("group/sub/app", 11)
        assert run.status == "queued"
        assert run.conclusion is None

    def test_allow_failure_jobs_count_as_success(self):
        respx.get(f"{GITLAB_API}/projects/{PROJECT}/pipelines/11/jobs").mock(
            return_value=httpx.Response(
                200,
                json=[
                    {"id": 1, "name": "lint", "status": "failed", "allow_failure": True},
                    {"id": 2, "name": "test", "status": "failed", "allow_failure": False},
                ],
            )
        )
        jobs = self._client().get_run_jobs("group/sub/app", 11)
        assert [j.failed for j in jobs] == [False, True]

    def test_run_log_uses_trace(self):
        respx.get(f"{GITLAB_API}/projects/{PROJECT}/pipelines/11/jobs").mock(
            return_value=httpx.Response(200, json=[{"id": 2, "name": "test", "status": "failed"}])
        )
        respx.get(f"{GITLAB_API}/projects/{PROJECT}/jobs/2/trace").mock(
            return_value=httpx.Response(200, text="FAIL spec/app_spec.rb")
        )
        assert self._client().get_run_log("group/sub/app", 11) == "===== test =====\nFAIL spec/app_spec.rb"

    def test_401_raises_auth_error(self):
        respx.get(f"{GITLAB_API}/user").mock(return_value=httpx.Response(401))
        with pytest.raises(CIAuthError):
            self._client().ensure_authenticated()

    def test_find_merge_request(self):
        respx.get(f"{GITLAB_API}/projects/{PROJECT}/repository/commits/abc/merge_requests").mock(
            return_value=httpx.Response(200, json=[{"iid": 5, "state": "opened", "web_url": "mr5"}])
        )
        mr = self._client().find_pull_request("group/sub/app", "abc")
        assert mr.number == 5
        assert mr.state == "open"


# ═══════════════════════════════════════════════════════════════════════════
# 4. Factory
# ═══════════════════════════════════════════════════════════════════════════


class TestParseRepoSlug:
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://github.com/owner/repo.git", "owner/repo"),
            ("https://github.com/owner/repo", "owner/repo"),
            ("git@github.com:owner/repo.git", "owner/repo"),
            ("ssh://git@gitlab.com/group/sub/app.git", "group/sub/app"),
            ("https://gitlab.example.com/group/app/", "group/app"),
        ],
    )
    def test_forms(self, url, expected):
        assert parse_repo_slug(url) == expected

    def test_unparseable(self):
        with pytest.raises(CIError):
            parse_repo_slug("not-a-remote")


class TestGetCiClient:
    def _settings(self, tmp_path, **overrides) -> Settings:
        return Settings(greenlight_home=str(tmp_path), github_token="gh", gitlab_token="gl", **overrides)

    def test_github_detected(self, tmp_path):
        client = get_ci_client("git@github.com:owner/repo.git", settings=self._settings(tmp_path))
        assert isinstance(client, GitHubActionsClient)

    def test_gitlab_com_detected(self, tmp_path):
        client = get_ci_client("https://gitlab.com/group/app.git", settings=self._settings(tmp_path))
        assert isinstance(client, GitLabPipelinesClient)

    def test_self_hosted_gitlab(self, tmp_path):
        settings = self._settings(tmp_path, gitlab_url="https://gitlab.example.com")
        client = get_ci_client("git@gitlab.example.com:group/app.git", settings=settings)
        assert isinstance(client, GitLabPipelinesClient)

    def test_explicit_platform_wins(self, tmp_path):
        settings = self._settings(tmp_path, ci_platform="gitlab")
        assert isinstance(get_ci_client("https://github.com/owner/repo", settings=settings), GitLabPipelinesClient)

    def test_unknown_host(self, tmp_path):
        with pytest.raises(CIError, match="Cannot determine CI platform"):
            get_ci_client("https://bitbucket.org/owner/repo", settings=self._settings(tmp_path))

    def test_unknown_platform(self, tmp_path):
        with pytest.raises(CIError, match="Unknown CI platform"):
            get_ci_client("https://github.com/owner/repo", platform="jenkins", settings=self._settings(tmp_path))
