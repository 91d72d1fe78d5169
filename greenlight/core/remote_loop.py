"""Remote reconciliation loop.

After a push, the loop finds the CI run for the pushed commit and polls it.
Jobs that fail while the run is still going are fixed early, highest priority
first, and committed locally. When the run completes the pending commits are
pushed in one go; a run that failed with nothing pending gets one whole-run
fix per retry. The retry counter resets whenever a new commit is pushed.

Graph::

    poll ──queued / no run yet──> poll
      │ in progress                 ^
      v                             │
    fix_jobs ───────────────────────┘
      │
    poll ──completed──> completed ──pushed──> poll (new commit)
                            │
                            └──success / given up──> END
"""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from typing import Callable

from langgraph.errors import GraphRecursionError
from langgraph.graph import END, StateGraph

from greenlight.core.ci_logs import filter_ci_logs, truncate_logs
from greenlight.core.commits import generate_commit_message
from greenlight.core.config import Settings, get_settings
from greenlight.core.fingerprint import fingerprint
from greenlight.core.logging import get_logger
from greenlight.core.polling import next_delay
from greenlight.core.priority import rank
from greenlight.core.prompts import build_ci_job_fix_prompt, build_ci_run_fix_prompt
from greenlight.core.shutdown import is_shutdown_requested
from greenlight.core.snapshots import SnapshotManager
from greenlight.core.state import (
    CheckStep,
    RemoteLoopState,
    RemotePhase,
    RunConclusion,
    RunState,
    RunStatus,
)
from greenlight.core.validation import validate_before_push
from greenlight.tools.agent import FixRequest
from infra.ci import (
    CONCLUSION_CANCELLED,
    CONCLUSION_SUCCESS,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    CIAuthError,
    CIError,
    CIRun,
)

logger = get_logger("core.remote_loop")

_TERMINAL = {RemotePhase.SUCCEEDED, RemotePhase.GIVEN_UP, RemotePhase.STOPPED}

NO_LOGS = "No logs available"


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def _route_after_poll(state: RemoteLoopState) -> str:
    if is_shutdown_requested() or state.phase in _TERMINAL:
        return "end"
    if state.phase == RemotePhase.IN_PROGRESS:
        return "fix_jobs"
    if state.phase == RemotePhase.COMPLETED:
        return "completed"
    return "poll"


def _route_after_fix_jobs(state: RemoteLoopState) -> str:
    if is_shutdown_requested() or state.phase in _TERMINAL:
        return "end"
    return "poll"


def _route_after_completed(state: RemoteLoopState) -> str:
    if is_shutdown_requested() or state.phase in _TERMINAL:
        return "end"
    if state.phase == RemotePhase.COMPLETED:
        return "completed"
    return "poll"


# ---------------------------------------------------------------------------
# Run matching
# ---------------------------------------------------------------------------


def _sha_matches(run_sha: str, commit_id: str) -> bool:
    if not run_sha or not commit_id:
        return False
    return run_sha == commit_id or run_sha.startswith(commit_id[:7]) or commit_id.startswith(run_sha[:7])


def match_run(
    runs: list[CIRun],
    commit_id: str,
    push_time: datetime,
    now: datetime,
    first_attempt: bool,
    settings: Settings,
) -> CIRun | None:
    """Pick the run that most likely belongs to *commit_id*.

    Exact sha (either direction, 7-char prefix) wins. Failing that, the first
    run created no earlier than ``ci_match_window_seconds`` before the push.
    On the first attempt only, the newest run younger than
    ``ci_newest_run_window_seconds`` is accepted as a last resort.
    """
    for run in runs:
        if _sha_matches(run.head_sha, commit_id):
            return run

    window_start = push_time - timedelta(seconds=settings.ci_match_window_seconds)
    for run in runs:
        if run.created_at and run.created_at >= window_start:
            return run

    if first_attempt and runs:
        newest = runs[0]
        if newest.created_at and now - newest.created_at < timedelta(seconds=settings.ci_newest_run_window_seconds):
            return newest
    return None


def _normalize_status(status: str) -> RunStatus:
    if status == STATUS_COMPLETED:
        return RunStatus.COMPLETED
    if status == STATUS_IN_PROGRESS:
        return RunStatus.IN_PROGRESS
    return RunStatus.QUEUED


def _normalize_conclusion(conclusion: str | None) -> RunConclusion | None:
    if conclusion is None:
        return None
    if conclusion == CONCLUSION_SUCCESS:
        return RunConclusion.SUCCESS
    if conclusion == CONCLUSION_CANCELLED:
        return RunConclusion.CANCELLED
    return RunConclusion.FAILURE


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class RemoteReconciliationLoop:
    """Drives the CI run of the pushed commit to success.

    Args:
        ci: ``CIProvider`` for the repository's platform.
        git: Version-control adapter for the working tree.
        agent: Remediation agent adapter.
        runner: Check runner used to re-run local checks after a CI fix.
        checks: Local check list re-run after each CI fix.
        settings: Configuration; defaults to the process-wide settings.
        sleep: Injected wait function (seconds).
        now: Injected clock returning an aware datetime.
    """

    def __init__(
        self,
        ci,
        git,
        agent,
        runner,
        checks: list[CheckStep] | None = None,
        settings: Settings | None = None,
        snapshots: SnapshotManager | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.ci = ci
        self.git = git
        self.agent = agent
        self.runner = runner
        self.checks = checks or []
        self.settings = settings or get_settings()
        self.snapshots = snapshots or SnapshotManager(git)
        self.sleep = sleep
        self.now = now

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def build_graph(self) -> StateGraph:
        graph = StateGraph(RemoteLoopState)

        graph.add_node("poll", self.poll_node)
        graph.add_node("fix_jobs", self.fix_jobs_node)
        graph.add_node("completed", self.completed_node)

        graph.set_entry_point("poll")

        graph.add_conditional_edges(
            "poll",
            _route_after_poll,
            {"poll": "poll", "fix_jobs": "fix_jobs", "completed": "completed", "end": END},
        )
        graph.add_conditional_edges("fix_jobs", _route_after_fix_jobs, {"poll": "poll", "end": END})
        graph.add_conditional_edges(
            "completed",
            _route_after_completed,
            {"poll": "poll", "completed": "completed", "end": END},
        )
        return graph

    def run(self, state: RemoteLoopState) -> RemoteLoopState:
        """Poll until the run succeeds or the loop gives up.

        Raises:
            CIAuthError: If the provider rejects the credentials mid-run.
        """
        compiled = self.build_graph().compile()
        logger.info("[%s] Monitoring CI | %s", state.repo_name, state.get_progress_summary())
        try:
            result = compiled.invoke(
                state.model_dump(),
                config={"recursion_limit": self.settings.graph_recursion_limit},
            )
        except GraphRecursionError:
            limit = self.settings.graph_recursion_limit
            logger.error("[%s] Remote loop exceeded %d transitions", state.repo_name, limit)
            return state.model_copy(update={"phase": RemotePhase.GIVEN_UP, "stop_reason": "transition limit reached"})

        final = RemoteLoopState(**result)
        if is_shutdown_requested() and final.phase not in _TERMINAL:
            final.phase = RemotePhase.STOPPED
            final.stop_reason = final.stop_reason or "shutdown requested"

        rs = final.run_state
        if final.phase == RemotePhase.SUCCEEDED:
            logger.info("[%s] CI passed for %s | %s", final.repo_name, rs.short_sha, rs.run_url or "no url")
        else:
            logger.error(
                "[%s] Remote loop stopped | phase=%s | commit=%s | run=%s | url=%s | retries_left=%d | reason=%s",
                final.repo_name,
                final.phase.value,
                rs.short_sha,
                rs.last_run_id or "none",
                rs.run_url or "none",
                final.retries_remaining,
                final.stop_reason or "none",
            )
        return final

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def poll_node(self, state: RemoteLoopState) -> dict:
        if is_shutdown_requested():
            return {"phase": RemotePhase.STOPPED, "stop_reason": "shutdown requested"}

        rs = state.run_state
        if rs.poll_attempt >= self.settings.ci_max_poll_attempts:
            return self._give_up(state, f"poll cap of {self.settings.ci_max_poll_attempts} reached")

        polled = rs.model_copy(update={"poll_attempt": rs.poll_attempt + 1})
        update: dict = {"total_polls": state.total_polls + 1}

        try:
            if rs.last_run_id is not None:
                run = self.ci.get_run(state.repo, rs.last_run_id)
            else:
                run = self._discover(state)
        except CIAuthError:
            raise
        except CIError as exc:
            delay = next_delay(rs.status.value, rs.poll_attempt)
            logger.warning("[%s] CI poll failed (%s), retrying in %.0fs", state.repo_name, exc, delay)
            self.sleep(delay)
            update["run_state"] = polled
            return update

        if run is None:
            misses = state.discovery_misses + 1
            update["discovery_misses"] = misses
            update["run_state"] = polled
            if misses > state.max_retries:
                update.update(self._give_up(state, f"no CI run found for commit {rs.short_sha}"))
                return update
            delay = self.settings.ci_no_match_delay_seconds
            logger.info("[%s] No matching CI run yet, waiting %.0fs", state.repo_name, delay)
            self.sleep(delay)
            update["phase"] = RemotePhase.DISCOVERING
            return update

        status = _normalize_status(run.status)
        if rs.last_run_id is None:
            logger.info("[%s] Monitoring run %d %r for %s", state.repo_name, run.id, run.name, rs.short_sha)
            self._log_pull_request(state)
        polled = polled.model_copy(
            update={
                "last_run_id": run.id,
                "run_name": run.name,
                "run_url": run.url,
                "status": status,
                "conclusion": _normalize_conclusion(run.conclusion),
            }
        )
        update["run_state"] = polled
        logger.info("[%s] Run %r status: %s", state.repo_name, run.name, run.status)

        if status == RunStatus.COMPLETED:
            update["phase"] = RemotePhase.COMPLETED
            return update
        if status == RunStatus.IN_PROGRESS:
            update["phase"] = RemotePhase.IN_PROGRESS
            return update

        delay = next_delay(RunStatus.QUEUED.value, rs.poll_attempt)
        logger.info("[%s] Waiting for run to start (%.0fs)", state.repo_name, delay)
        self.sleep(delay)
        update["phase"] = RemotePhase.QUEUED
        return update

    def fix_jobs_node(self, state: RemoteLoopState) -> dict:
        rs = state.run_state
        try:
            jobs = self.ci.get_run_jobs(state.repo, rs.last_run_id)
        except CIAuthError:
            raise
        except CIError as exc:
            logger.warning("[%s] Could not fetch jobs for run %s: %s", state.repo_name, rs.last_run_id, exc)
            self.sleep(next_delay(STATUS_IN_PROGRESS, rs.poll_attempt))
            return {"phase": RemotePhase.IN_PROGRESS}

        new_failures = rank([job for job in jobs if job.failed and job.name not in rs.fixed_jobs])
        fixed_jobs = rs.fixed_jobs
        pending = rs.has_pending_commits
        fix_count = state.fix_count

        for job in new_failures:
            if is_shutdown_requested():
                break
            logger.warning(
                "[%s] Job %r failed (%s), fixing while the run continues", state.repo_name, job.name, job.conclusion
            )
            try:
                raw = self.ci.get_job_log(state.repo, job.id) or NO_LOGS
            except CIAuthError:
                raise
            except CIError as exc:
                logger.warning("[%s] Could not fetch log for job %r: %s", state.repo_name, job.name, exc)
                raw = NO_LOGS
            logs = truncate_logs(filter_ci_logs(raw), self.settings.ci_log_max_chars)

            self.snapshots.create(f"before-ci-job-{job.name}")
            prompt = build_ci_job_fix_prompt(job.name, rs.last_run_id, rs.short_sha, job.conclusion or "failure", logs)
            outcome = self.agent.fix(
                FixRequest(error_text=logs, prompt=prompt, job_name=job.name),
                timeout=self.settings.agent_ci_timeout_seconds,
            )
            if outcome.interrupted:
                logger.warning("[%s] Agent call for %r was interrupted, will retry next poll", state.repo_name, job.name)
                continue
            if not outcome.fixed:
                logger.warning(
                    "[%s] Agent did not complete the fix for %r (exit=%d)", state.repo_name, job.name, outcome.exit_code
                )

            self._rerun_local_checks(state)
            if self._commit(state, job.name):
                pending = True
                fix_count += 1
            # Recorded even without a commit so the job is never remediated twice for this run.
            fixed_jobs = fixed_jobs | {job.name}

        has_active = any(job.active for job in jobs)
        delay = next_delay(STATUS_IN_PROGRESS, rs.poll_attempt, has_active)
        logger.info("[%s] %s", state.repo_name, state.get_progress_summary())
        self.sleep(delay)
        return {
            "phase": RemotePhase.IN_PROGRESS,
            "fix_count": fix_count,
            "run_state": rs.model_copy(update={"fixed_jobs": frozenset(fixed_jobs), "has_pending_commits": pending}),
        }

    def completed_node(self, state: RemoteLoopState) -> dict:
        rs = state.run_state
        if rs.conclusion == RunConclusion.SUCCESS:
            return {"phase": RemotePhase.SUCCEEDED}

        conclusion = rs.conclusion.value if rs.conclusion else "unknown"
        logger.error("[%s] CI run %s concluded: %s", state.repo_name, rs.last_run_id, conclusion)

        if rs.has_pending_commits:
            logger.info("[%s] Pushing %d job fix(es)", state.repo_name, len(rs.fixed_jobs))
            return self._push_and_reset(state)

        if state.retries_remaining == 0:
            return self._give_up(state, f"CI still failing after {state.max_retries} attempts")

        run_key = str(rs.last_run_id)
        if run_key in state.attempted_runs:
            return self._give_up(state, f"already attempted a fix for run {rs.last_run_id}")

        try:
            raw = self.ci.get_run_log(state.repo, rs.last_run_id, failed_only=True) or NO_LOGS
        except CIAuthError:
            raise
        except CIError as exc:
            logger.warning("[%s] Could not fetch failure logs: %s", state.repo_name, exc)
            raw = NO_LOGS
        filtered = filter_ci_logs(raw)
        fp = fingerprint(filtered)
        for line in [line.strip() for line in filtered.splitlines() if line.strip()][:10]:
            logger.info("[%s]   %s", state.repo_name, line[:100])

        if fp in state.seen_errors:
            return self._give_up(state, "same CI error pattern as the previous attempt")

        attempted_runs = {**state.attempted_runs, run_key: fp}
        seen_errors = state.seen_errors | {fp}
        base: dict = {"attempted_runs": attempted_runs, "seen_errors": seen_errors}

        self.snapshots.create(f"before-ci-fix-{state.retry_count + 1}")
        logs = truncate_logs(filtered, self.settings.ci_log_max_chars)
        prompt = build_ci_run_fix_prompt(rs.short_sha, state.repo, logs)
        outcome = self.agent.fix(
            FixRequest(error_text=logs, prompt=prompt, job_name=rs.run_name or None),
            timeout=self.settings.agent_ci_timeout_seconds,
        )
        if outcome.interrupted:
            logger.warning("[%s] Agent call for run %s was interrupted, not counted", state.repo_name, rs.last_run_id)
            return {"phase": RemotePhase.COMPLETED}
        if not outcome.fixed:
            logger.warning("[%s] Agent did not complete the CI fix (exit=%d)", state.repo_name, outcome.exit_code)

        self._rerun_local_checks(state)
        if not self._commit(state, rs.run_name or "workflow"):
            logger.warning("[%s] CI fix produced no changes", state.repo_name)
            base["retry_count"] = state.retry_count + 1
            base["phase"] = RemotePhase.COMPLETED
            return base

        base["fix_count"] = state.fix_count + 1
        base.update(self._push_and_reset(state))
        return base

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _discover(self, state: RemoteLoopState) -> CIRun | None:
        runs = self.ci.list_recent_runs(state.repo)
        return match_run(
            runs,
            state.run_state.commit_id,
            state.push_time,
            self.now(),
            first_attempt=state.retry_count == 0,
            settings=self.settings,
        )

    def _rerun_local_checks(self, state: RemoteLoopState) -> None:
        """Re-run local checks after a CI fix so auto-fixers get a chance to run."""
        for check in self.checks:
            if is_shutdown_requested():
                return
            result = self.runner.run(check.command, check.args, cwd=str(self.git.root))
            if not result.ok:
                logger.warning("[%s] Local %s still failing after CI fix", state.repo_name, check.name)

    def _commit(self, state: RemoteLoopState, target: str) -> bool:
        if not self.git.status_porcelain():
            return False
        self.git.stage_all()
        message = generate_commit_message(self.agent, self.git, target, remote=True)
        result = self.git.commit(message, no_verify=state.no_verify)
        if not result.ok:
            logger.warning("[%s] Commit failed: %s", state.repo_name, result.error_output[:200])
            return False
        logger.info("[%s] Fix committed: %s", state.repo_name, message)
        return True

    def _push_and_reset(self, state: RemoteLoopState) -> dict:
        validate_before_push(self.git.outgoing_diff(), self.git.root)
        result = self.git.push()
        if not result.ok:
            return self._give_up(state, f"push failed: {result.error_output[:200]}")

        commit_id = self.git.current_commit_id()
        logger.info("[%s] New commit %s, resetting retry counter", state.repo_name, commit_id[:7])
        delay = self.settings.ci_new_run_grace_seconds
        logger.info("[%s] Waiting %.0fs for the new CI run to start", state.repo_name, delay)
        self.sleep(delay)
        return {
            "phase": RemotePhase.DISCOVERING,
            "run_state": RunState(commit_id=commit_id),
            "push_time": self.now(),
            "retry_count": 0,
            "discovery_misses": 0,
        }

    def _give_up(self, state: RemoteLoopState, reason: str) -> dict:
        rs = state.run_state
        if rs.last_run_id is not None:
            reason = f"{reason} (run {rs.last_run_id}: {rs.run_url or 'no url'})"
        logger.error("[%s] Giving up: %s", state.repo_name, reason)
        return {"phase": RemotePhase.GIVEN_UP, "stop_reason": reason}

    def _log_pull_request(self, state: RemoteLoopState) -> None:
        try:
            pr = self.ci.find_pull_request(state.repo, state.run_state.commit_id)
        except CIAuthError:
            raise
        except CIError as exc:
            logger.debug("[%s] Pull request lookup failed: %s", state.repo_name, exc)
            return
        if pr is not None:
            logger.info("[%s] Commit belongs to #%d %r (%s)", state.repo_name, pr.number, pr.title, pr.url)
