"""End-to-end tests for the convergence controller with in-memory collaborators."""

from datetime import UTC, datetime

import pytest
import yaml

from conftest import PASS, fail
from greenlight.core.controller import (
    ConvergeController,
    ConvergeOptions,
    ConvergeResult,
    overall_exit_code,
    run_cross_repo,
)
from greenlight.core.errors import ConfigurationError
from greenlight.core.state import LocalPhase, RemotePhase
from infra.ci import CIAuthError, CIError
from infra.registry import TargetEntry, TargetRegistry

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def repo(tmp_path):
    config = {
        "checks": [
            {"name": "install", "command": "install"},
            {"name": "lint", "command": "lint"},
            {"name": "test", "command": "test"},
        ]
    }
    (tmp_path / "greenlight.yaml").write_text(yaml.safe_dump(config))
    return tmp_path


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def editing_agent(agent_factory, git):
    def _edit(request):
        git.dirty = True

    return agent_factory(on_fix=_edit)


def _controller(repo, settings, runner, git, agent, ci, sleeps, **options):
    return ConvergeController(
        repo,
        ConvergeOptions(**options),
        settings,
        repo_name="demo",
        runner=runner,
        git=git,
        agent=agent,
        ci=ci,
        sleep=sleeps.append,
        now=lambda: NOW,
    )


class TestConverge:
    def test_lint_fixed_once_then_pushed_and_green(self, repo, settings, runner, git, editing_agent, ci, sleeps):
        runner.set("lint", fail("lint: missing semicolon"), PASS)
        git.on_push = lambda: ci.add_run(1, git.current_commit_id(), ("completed", "success"))

        result = _controller(repo, settings, runner, git, editing_agent, ci, sleeps).run()

        assert result.converged is True
        assert result.exit_code == 0
        assert result.commits == 1
        assert len(git.commits) == 1
        assert git.pushes == 1
        assert ci.authenticated is True
        assert runner.calls == ["install", "lint", "lint", "install", "lint", "test"]
        assert sleeps[0] == settings.ci_start_grace_seconds
        assert result.remote_phase == RemotePhase.SUCCEEDED

    def test_nothing_to_push_still_monitors_ci(self, repo, settings, runner, git, editing_agent, ci, sleeps):
        ci.add_run(1, git.current_commit_id(), ("completed", "success"))

        result = _controller(repo, settings, runner, git, editing_agent, ci, sleeps).run()

        assert result.converged is True
        assert git.pushes == 0
        assert result.polls == 1

    def test_local_exhaustion_skips_push(self, repo, settings, runner, git, agent_factory, ci, sleeps):
        runner.set("lint", fail("lint: missing semicolon"))

        result = _controller(repo, settings, runner, git, agent_factory(), ci, sleeps).run()

        assert result.converged is False
        assert result.exit_code == 1
        assert result.local_phase == LocalPhase.EXHAUSTED
        assert git.pushes == 0
        assert ci.authenticated is False

    def test_ci_failure_reports_given_up(self, repo, settings, runner, git, agent_factory, ci, sleeps):
        ci.add_run(1, git.current_commit_id(), ("completed", "failure"))

        result = _controller(repo, settings, runner, git, agent_factory(), ci, sleeps).run()

        assert result.exit_code == 1
        assert result.remote_phase == RemotePhase.GIVEN_UP

    def test_dry_run_never_pushes(self, repo, settings, runner, git, editing_agent, ci, sleeps):
        result = _controller(repo, settings, runner, git, editing_agent, ci, sleeps, dry_run=True).run()

        assert result.converged is True
        assert runner.calls == []
        assert git.pushes == 0
        assert ci.authenticated is False

    def test_push_failure(self, repo, settings, runner, git, editing_agent, ci, sleeps):
        git.unpushed = 1
        git.push_ok = False

        result = _controller(repo, settings, runner, git, editing_agent, ci, sleeps).run()

        assert result.converged is False
        assert result.stop_reason == "push failed"

    def test_budget_overrides_settings(self, repo, settings, runner, git, editing_agent, ci, sleeps):
        controller = _controller(repo, settings, runner, git, editing_agent, ci, sleeps, max_auto_fixes=7)
        assert controller.budget.local_max_auto_fix_attempts == 7
        assert controller.budget.remote_max_retries == settings.ci_max_retries

    def test_resume_from_operator_checkpoint(self, repo, settings, runner, git, agent_factory, ci, sleeps):
        runner.set("lint", fail("lint: unused import"))
        first = _controller(repo, settings, runner, git, agent_factory(exit_code=1), ci, sleeps, interactive=False)
        assert first.run().local_phase == LocalPhase.NEEDS_OPERATOR

        runner.set("lint", PASS)
        runner.calls.clear()
        ci.add_run(1, git.current_commit_id(), ("completed", "success"))
        result = _controller(repo, settings, runner, git, agent_factory(), ci, sleeps, resume=True).run()

        assert result.converged is True
        assert runner.calls == ["lint", "test"]


class TestProviderUnavailable:
    def test_unreachable_provider_is_a_reported_failure(self, repo, settings, runner, git, editing_agent, ci, sleeps):
        def _unreachable():
            raise CIError("GitHub API network error: connection refused")

        ci.ensure_authenticated = _unreachable

        result = _controller(repo, settings, runner, git, editing_agent, ci, sleeps).run()

        assert result.converged is False
        assert result.exit_code == 1
        assert result.remote_phase == RemotePhase.GIVEN_UP
        assert "connection refused" in result.stop_reason
        assert git.pushes == 0

    def test_rejected_credentials_stay_fatal(self, repo, settings, runner, git, editing_agent, ci, sleeps):
        def _rejected():
            raise CIAuthError("GitHub token rejected", status_code=401)

        ci.ensure_authenticated = _rejected

        with pytest.raises(CIAuthError):
            _controller(repo, settings, runner, git, editing_agent, ci, sleeps).run()


class TestFatalConfiguration:
    def test_missing_remote(self, repo, settings, runner, git, editing_agent, ci, sleeps):
        git.remote = ""
        with pytest.raises(ConfigurationError, match="origin"):
            _controller(repo, settings, runner, git, editing_agent, ci, sleeps).run()

    def test_unparseable_remote(self, repo, settings, runner, git, editing_agent, ci, sleeps):
        git.remote = "not-a-remote"
        with pytest.raises(ConfigurationError):
            _controller(repo, settings, runner, git, editing_agent, ci, sleeps).run()

    def test_invalid_checks_file(self, tmp_path, settings, runner, git, editing_agent, ci, sleeps):
        (tmp_path / "greenlight.yaml").write_text("checks: [unclosed")
        with pytest.raises(ConfigurationError):
            _controller(tmp_path, settings, runner, git, editing_agent, ci, sleeps).run()


class TestCrossRepo:
    def test_targets_without_checks_are_fatal(self, tmp_path, settings):
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        registry = TargetRegistry(
            [
                TargetEntry(name="a", path=str(tmp_path / "a")),
                TargetEntry(name="b", path=str(tmp_path / "b")),
            ]
        )

        results = run_cross_repo(registry, ConvergeOptions(), settings, workers=2)

        assert [r.repo_name for r in results] == ["a", "b"]
        assert all(r.fatal for r in results)
        assert overall_exit_code(results) == 2

    def test_empty_registry(self, settings):
        with pytest.raises(ConfigurationError):
            run_cross_repo(TargetRegistry([]), ConvergeOptions(), settings)

    def test_exit_code_all_converged(self):
        results = [ConvergeResult(repo_name="a", converged=True), ConvergeResult(repo_name="b", converged=True)]
        assert overall_exit_code(results) == 0

    def test_exit_code_one_failed(self):
        results = [ConvergeResult(repo_name="a", converged=True), ConvergeResult(repo_name="b")]
        assert overall_exit_code(results) == 1
