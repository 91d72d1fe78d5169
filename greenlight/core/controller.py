"""Convergence controller: local loop, push, then remote loop.

One controller owns one working tree and its adapters. Cross-repository mode
runs one controller per target on a thread pool; controllers share nothing but
the process-wide shutdown flag.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable

from pydantic import BaseModel

from greenlight.core.analysis import run_pre_commit_scan
from greenlight.core.checkpoints import CheckpointManager
from greenlight.core.config import Settings, get_settings
from greenlight.core.errors import ConfigurationError
from greenlight.core.local_loop import LocalVerificationLoop
from greenlight.core.logging import get_logger
from greenlight.core.remote_loop import RemoteReconciliationLoop
from greenlight.core.snapshots import SnapshotManager
from greenlight.core.state import (
    LocalLoopState,
    LocalPhase,
    RemoteLoopState,
    RemotePhase,
    RetryBudget,
    RunState,
)
from greenlight.core.storage import cleanup_old_data, init_storage
from greenlight.core.validation import validate_before_push
from greenlight.tools.agent import RemediationAgent
from greenlight.tools.build import load_checks
from greenlight.tools.git import GitRepository
from greenlight.tools.shell import CheckRunner
from infra.ci import CIAuthError, CIError
from infra.factory import get_ci_client, parse_repo_slug
from infra.registry import TargetRegistry

logger = get_logger("core.controller")

EXIT_CONVERGED = 0
EXIT_FAILED = 1
EXIT_FATAL = 2


class ConvergeOptions(BaseModel):
    """Per-invocation knobs from the CLI. ``None`` means use the settings."""

    max_auto_fixes: int | None = None
    max_retries: int | None = None
    dry_run: bool = False
    no_verify: bool = False
    pre_commit_scan: bool = False
    interactive: bool = True
    resume: bool = False


class ConvergeResult(BaseModel):
    repo_name: str
    converged: bool = False
    fatal: bool = False
    local_phase: LocalPhase | None = None
    remote_phase: RemotePhase | None = None
    stop_reason: str = ""
    fix_count: int = 0
    commits: int = 0
    polls: int = 0

    @property
    def exit_code(self) -> int:
        if self.converged:
            return EXIT_CONVERGED
        return EXIT_FATAL if self.fatal else EXIT_FAILED


class ConvergeController:
    """Drive one repository to convergence.

    Collaborators default to the real adapters; tests inject fakes.
    """

    def __init__(
        self,
        repo_root: str | Path,
        options: ConvergeOptions | None = None,
        settings: Settings | None = None,
        repo_name: str | None = None,
        runner=None,
        git=None,
        agent=None,
        ci=None,
        checkpoints: CheckpointManager | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.root = Path(repo_root).resolve()
        self.options = options or ConvergeOptions()
        self.settings = settings or get_settings()
        self.repo_name = repo_name or self.root.name
        self.runner = runner or CheckRunner(self.settings)
        self.git = git or GitRepository(self.root, self.settings)
        self.agent = agent or RemediationAgent(self.root, self.settings)
        self.ci = ci
        self.checkpoints = checkpoints or CheckpointManager()
        self.snapshots = SnapshotManager(self.git)
        self.sleep = sleep
        self.now = now

    @property
    def budget(self) -> RetryBudget:
        fixes = self.options.max_auto_fixes
        retries = self.options.max_retries
        return RetryBudget(
            local_max_auto_fix_attempts=fixes if fixes is not None else self.settings.local_max_auto_fix_attempts,
            remote_max_retries=retries if retries is not None else self.settings.ci_max_retries,
        )

    def run(self) -> ConvergeResult:
        """Run both loops.

        Raises:
            ConfigurationError: Invalid check configuration, no usable remote
                or unknown CI platform.
            CIAuthError: CI credentials missing or rejected.
        """
        init_storage(self.root, self.settings)
        cleanup_old_data(self.root, self.settings)

        checks = load_checks(self.root)
        logger.info("[%s] %d local check(s): %s", self.repo_name, len(checks), ", ".join(c.name for c in checks))

        if self.options.pre_commit_scan:
            run_pre_commit_scan(self.agent, self.git)

        local = LocalVerificationLoop(
            self.runner,
            self.git,
            self.agent,
            settings=self.settings,
            snapshots=self.snapshots,
            checkpoints=self.checkpoints,
        ).run(self._initial_local_state(checks))

        result = ConvergeResult(
            repo_name=self.repo_name,
            local_phase=local.phase,
            stop_reason=local.stop_reason,
            fix_count=local.fix_count,
            commits=len(local.commits),
        )
        if local.phase != LocalPhase.ROUND_CLEAN:
            return result

        if self.options.dry_run:
            logger.info("[%s] [DRY RUN] Would push and monitor CI", self.repo_name)
            result.converged = True
            return result

        ci, slug = self._ci_client()
        try:
            ci.ensure_authenticated()
        except CIAuthError:
            raise
        except CIError as exc:
            logger.error("[%s] CI provider unreachable: %s", self.repo_name, exc)
            result.remote_phase = RemotePhase.GIVEN_UP
            result.stop_reason = f"CI provider unreachable: {exc}"
            return result

        if self.git.unpushed_count() > 0:
            validate_before_push(self.git.outgoing_diff(), self.root)
            push = self.git.push()
            if not push.ok:
                logger.error("[%s] Push failed: %s", self.repo_name, push.error_output[:200])
                result.remote_phase = RemotePhase.GIVEN_UP
                result.stop_reason = "push failed"
                return result
        else:
            logger.info("[%s] Nothing to push, checking CI for the current commit", self.repo_name)
        push_time = self.now()

        logger.info("[%s] Waiting %.0fs for CI to start", self.repo_name, self.settings.ci_start_grace_seconds)
        self.sleep(self.settings.ci_start_grace_seconds)

        remote = RemoteReconciliationLoop(
            ci,
            self.git,
            self.agent,
            self.runner,
            checks=checks,
            settings=self.settings,
            snapshots=self.snapshots,
            sleep=self.sleep,
            now=self.now,
        ).run(
            RemoteLoopState(
                repo=slug,
                repo_name=self.repo_name,
                no_verify=self.options.no_verify,
                max_retries=self.budget.remote_max_retries,
                run_state=RunState(commit_id=self.git.current_commit_id()),
                push_time=push_time,
            )
        )

        result.remote_phase = remote.phase
        result.stop_reason = remote.stop_reason
        result.fix_count += remote.fix_count
        result.polls = remote.total_polls
        result.converged = remote.phase == RemotePhase.SUCCEEDED
        if result.converged:
            self._log_summary(result)
        return result

    def _initial_local_state(self, checks) -> LocalLoopState:
        fresh = LocalLoopState(
            repo_root=str(self.root),
            repo_name=self.repo_name,
            checks=checks,
            budget=self.budget,
            dry_run=self.options.dry_run,
            no_verify=self.options.no_verify,
            interactive_allowed=self.options.interactive,
        )
        if not self.options.resume:
            return fresh

        saved = self.checkpoints.load_checkpoint(repo_root=str(self.root))
        if saved is None:
            logger.warning("[%s] No checkpoint to resume, starting from the first check", self.repo_name)
            return fresh
        logger.info("[%s] Resuming at %s", self.repo_name, saved.get_progress_summary())
        resumed = LocalVerificationLoop.resume(saved)
        return resumed.model_copy(
            update={
                "checks": checks,
                "index": min(resumed.index, len(checks)),
                "dry_run": self.options.dry_run,
                "no_verify": self.options.no_verify,
                "interactive_allowed": self.options.interactive,
            }
        )

    def _ci_client(self):
        remote_url = self.git.remote_url()
        if not remote_url:
            raise ConfigurationError(f"{self.repo_name}: no 'origin' remote configured")
        try:
            slug = parse_repo_slug(remote_url)
            ci = self.ci or get_ci_client(remote_url, settings=self.settings)
        except CIAuthError:
            raise
        except CIError as exc:
            raise ConfigurationError(f"{self.repo_name}: {exc}") from exc
        return ci, slug

    def _log_summary(self, result: ConvergeResult) -> None:
        logger.info("[%s] Converged | fixes=%d | polls=%d", self.repo_name, result.fix_count, result.polls)
        snaps = self.snapshots.describe()
        if snaps:
            logger.info("[%s] Recent snapshots:", self.repo_name)
            for line in snaps:
                logger.info("[%s]   %s", self.repo_name, line)


# ---------------------------------------------------------------------------
# Cross-repository mode
# ---------------------------------------------------------------------------


def _converge_target(name: str, path: Path, options: ConvergeOptions, settings: Settings) -> ConvergeResult:
    try:
        return ConvergeController(path, options, settings, repo_name=name).run()
    except (ConfigurationError, CIAuthError) as exc:
        logger.error("[%s] %s", name, exc)
        return ConvergeResult(repo_name=name, fatal=True, stop_reason=str(exc))


def run_cross_repo(
    registry: TargetRegistry,
    options: ConvergeOptions,
    settings: Settings | None = None,
    workers: int = 3,
) -> list[ConvergeResult]:
    """Converge every registered target; interactive fallback is disabled."""
    settings = settings or get_settings()
    options = options.model_copy(update={"interactive": False})
    targets = registry.list_targets()
    if not targets:
        raise ConfigurationError("no targets registered")

    logger.info("Converging %d target(s) with %d worker(s)", len(targets), workers)
    with ThreadPoolExecutor(max_workers=max(workers, 1), thread_name_prefix="greenlight") as pool:
        futures = [
            pool.submit(_converge_target, entry.name, entry.resolved_path, options, settings) for entry in targets
        ]
        results = [future.result() for future in futures]

    for result in results:
        logger.info(
            "%-20s %s (%s)",
            result.repo_name,
            "converged" if result.converged else "not converged",
            result.stop_reason or (result.remote_phase or result.local_phase or "n/a"),
        )
    return results


def overall_exit_code(results: list[ConvergeResult]) -> int:
    if all(r.converged for r in results):
        return EXIT_CONVERGED
    if any(r.fatal for r in results):
        return EXIT_FATAL
    return EXIT_FAILED
