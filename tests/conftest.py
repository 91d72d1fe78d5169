"""Shared fixtures: settings pointing at tmp dirs and in-memory collaborators."""

from __future__ import annotations

import pytest

from greenlight.core.config import Settings
from greenlight.core.shutdown import reset_shutdown
from greenlight.core.state import CheckStep, CommandResult
from greenlight.tools.agent import FixOutcome
from infra.ci import CIError, CIJob, CIRun


@pytest.fixture(autouse=True)
def _clear_shutdown():
    reset_shutdown()
    yield
    reset_shutdown()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        greenlight_home=str(tmp_path / "home"),
        analyze_failures=False,
        log_file="",
        local_max_auto_fix_attempts=3,
        ci_max_retries=3,
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


PASS = CommandResult(exit_code=0, stdout="ok")


def fail(text: str) -> CommandResult:
    return CommandResult(exit_code=1, stderr=text)


class FakeRunner:
    """Scripted check runner keyed by command name.

    Each script is a list of results consumed front to back; the last one
    repeats. Unscripted commands pass.
    """

    def __init__(self, scripts: dict[str, list[CommandResult]] | None = None) -> None:
        self.scripts = {name: list(results) for name, results in (scripts or {}).items()}
        self.calls: list[str] = []

    def set(self, command: str, *results: CommandResult) -> None:
        self.scripts[command] = list(results)

    def run(self, command, args=None, cwd="."):
        self.calls.append(command)
        script = self.scripts.get(command)
        if not script:
            return PASS
        if len(script) > 1:
            return script.pop(0)
        return script[0]


class FakeGit:
    """In-memory working tree: dirty after an agent edit, clean after commit."""

    def __init__(self, root) -> None:
        self.root = root
        self.dirty = False
        self.commits: list[str] = []
        self.pushes = 0
        self.unpushed = 0
        self.push_ok = True
        self.on_push = None
        self.remote = "https://github.com/owner/repo.git"

    def status_porcelain(self) -> str:
        return " M src/app.py" if self.dirty else ""

    def stage_all(self):
        return PASS

    def commit(self, message, no_verify=False):
        self.commits.append(message)
        self.dirty = False
        self.unpushed += 1
        return PASS

    def push(self):
        if not self.push_ok:
            return fail("rejected")
        self.pushes += 1
        self.unpushed = 0
        if self.on_push:
            self.on_push()
        return PASS

    def current_commit_id(self) -> str:
        return f"{len(self.commits):07d}abcdef0123456789abcdef0123456789"

    def unpushed_count(self) -> int:
        return self.unpushed

    def remote_url(self) -> str:
        return self.remote

    def diff_staged(self) -> str:
        return ""

    def staged_files(self) -> list[str]:
        return []

    def working_diff(self) -> str:
        return ""

    def outgoing_diff(self) -> str:
        return ""

    def recent_log(self, count=5) -> str:
        return ""


class FakeAgent:
    """Records fix requests; ``on_fix`` simulates edits to the tree."""

    def __init__(self, exit_code: int = 0, on_fix=None, interrupted_calls: int = 0) -> None:
        self.exit_code = exit_code
        self.on_fix = on_fix
        # The first N fix calls end as if the operator pressed Ctrl+C.
        self.interrupted_calls = interrupted_calls
        self.requests = []
        self.interactive_prompts: list[str] = []
        self.on_interactive = None

    def fix(self, request, timeout=None):
        self.requests.append(request)
        if self.interrupted_calls:
            self.interrupted_calls -= 1
            return FixOutcome(exit_code=130, interrupted=True)
        if self.on_fix:
            self.on_fix(request)
        return FixOutcome(exit_code=self.exit_code)

    def interactive(self, prompt):
        self.interactive_prompts.append(prompt)
        if self.on_interactive:
            self.on_interactive()
        return FixOutcome(exit_code=0)

    def complete(self, prompt, timeout=60.0):
        return None


class FakeCI:
    """CI provider whose runs advance one state per observation."""

    def __init__(self) -> None:
        self.timeline: dict[int, list[CIRun]] = {}
        self.jobs: dict[int, list[list[CIJob]]] = {}
        self.run_logs: dict[int, str] = {}
        self.job_logs: dict[int, str] = {}
        self.visible: list[int] = []
        self.errors: list[Exception] = []
        self.authenticated = False

    def add_run(self, run_id: int, sha: str, *statuses: tuple[str, str | None]) -> None:
        self.timeline[run_id] = [
            CIRun(id=run_id, name="CI", status=s, conclusion=c, head_sha=sha, url=f"https://ci.example/runs/{run_id}")
            for s, c in statuses
        ]
        self.visible.insert(0, run_id)

    def _next(self, run_id: int) -> CIRun:
        states = self.timeline[run_id]
        return states.pop(0) if len(states) > 1 else states[0]

    def _maybe_fail(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    def ensure_authenticated(self) -> None:
        self.authenticated = True

    def list_recent_runs(self, repo, branch=None):
        self._maybe_fail()
        return [self._next(run_id) for run_id in self.visible]

    def get_run(self, repo, run_id):
        self._maybe_fail()
        return self._next(run_id)

    def get_run_jobs(self, repo, run_id):
        script = self.jobs.get(run_id)
        if not script:
            return []
        return script.pop(0) if len(script) > 1 else script[0]

    def get_job_log(self, repo, job_id):
        if job_id not in self.job_logs:
            raise CIError("log gone", status_code=410)
        return self.job_logs[job_id]

    def get_run_log(self, repo, run_id, failed_only=True):
        return self.run_logs.get(run_id, "")

    def find_pull_request(self, repo, sha):
        return None


@pytest.fixture
def checks():
    return [
        CheckStep(name="install", command="install"),
        CheckStep(name="lint", command="lint"),
        CheckStep(name="test", command="test"),
    ]


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def git(tmp_path):
    return FakeGit(tmp_path)


@pytest.fixture
def ci():
    return FakeCI()


@pytest.fixture
def agent_factory():
    return FakeAgent


@pytest.fixture
def runner_factory():
    return FakeRunner
