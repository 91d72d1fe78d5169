"""Local verification loop.

Runs the ordered check list. A failing check is fingerprinted and handed to
the remediation agent, then only that check is re-run. A fix that makes the
check pass is committed and validation restarts from the first check, so
later checks never validate against a stale tree. The loop converges when a
full round passes without any fix.

Graph::

    run_check ──pass──> run_check ... ──all passed──> END (round_clean)
        │ fail
        v
       fix ──still failing──> fix ──budget spent──> interactive ──> END
        │ passes                                      │ passes
        v                                             v
     restart ──────────────> run_check <──────────── restart
"""

from __future__ import annotations

from langgraph.errors import GraphRecursionError
from langgraph.graph import END, StateGraph

from greenlight.core.analysis import RootCauseAnalyzer, looks_environmental
from greenlight.core.checkpoints import CheckpointManager
from greenlight.core.commits import generate_commit_message
from greenlight.core.config import Settings, get_settings
from greenlight.core.fingerprint import fingerprint
from greenlight.core.history import ErrorHistory
from greenlight.core.logging import get_logger
from greenlight.core.prompts import build_interactive_prompt, build_local_fix_prompt
from greenlight.core.shutdown import is_shutdown_requested
from greenlight.core.snapshots import SnapshotManager
from greenlight.core.state import FixAttempt, LocalLoopState, LocalPhase, RootCauseAnalysis
from greenlight.tools.agent import FixRequest

logger = get_logger("core.local_loop")

_TERMINAL = {LocalPhase.ROUND_CLEAN, LocalPhase.EXHAUSTED, LocalPhase.NEEDS_OPERATOR, LocalPhase.STOPPED}


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def _route_after_run_check(state: LocalLoopState) -> str:
    if is_shutdown_requested() or state.phase in _TERMINAL:
        return "end"
    if state.phase == LocalPhase.FIXING:
        return "fix"
    if state.phase == LocalPhase.INTERACTIVE:
        return "interactive"
    return "run_check"


def _route_after_fix(state: LocalLoopState) -> str:
    if is_shutdown_requested() or state.phase in _TERMINAL:
        return "end"
    if state.fixes_this_round:
        return "restart"
    if state.phase == LocalPhase.INTERACTIVE:
        return "interactive"
    return "fix"


def _route_after_interactive(state: LocalLoopState) -> str:
    if is_shutdown_requested() or state.phase in _TERMINAL:
        return "end"
    return "restart"


def _route_after_restart(state: LocalLoopState) -> str:
    if is_shutdown_requested() or state.phase in _TERMINAL:
        return "end"
    return "run_check"


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class LocalVerificationLoop:
    """Drives one repository's checks to a clean round.

    Args:
        runner: Check runner (``run(command, args, cwd) -> CommandResult``).
        git: Version-control adapter for the working tree.
        agent: Remediation agent adapter.
        settings: Configuration; defaults to the process-wide settings.
        analyzer: Root-cause analyzer. Built from *agent* when
            ``analyze_failures`` is enabled and none is given.
        history: Persistent error history.
        snapshots: Restore-point manager.
        checkpoints: Checkpoint manager used for ``NeedsOperator`` stops.
    """

    def __init__(
        self,
        runner,
        git,
        agent,
        settings: Settings | None = None,
        analyzer: RootCauseAnalyzer | None = None,
        history: ErrorHistory | None = None,
        snapshots: SnapshotManager | None = None,
        checkpoints: CheckpointManager | None = None,
    ) -> None:
        self.runner = runner
        self.git = git
        self.agent = agent
        self.settings = settings or get_settings()
        self.history = history or ErrorHistory(settings=self.settings)
        if analyzer is None and self.settings.analyze_failures:
            analyzer = RootCauseAnalyzer(agent, self.history, self.settings)
        self.analyzer = analyzer
        self.snapshots = snapshots or SnapshotManager(git)
        self.checkpoints = checkpoints or CheckpointManager()

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def build_graph(self) -> StateGraph:
        graph = StateGraph(LocalLoopState)

        graph.add_node("run_check", self.run_check_node)
        graph.add_node("fix", self.fix_node)
        graph.add_node("interactive", self.interactive_node)
        graph.add_node("restart", self.restart_node)

        graph.set_entry_point("run_check")

        graph.add_conditional_edges(
            "run_check",
            _route_after_run_check,
            {"run_check": "run_check", "fix": "fix", "interactive": "interactive", "end": END},
        )
        graph.add_conditional_edges(
            "fix",
            _route_after_fix,
            {"fix": "fix", "interactive": "interactive", "restart": "restart", "end": END},
        )
        graph.add_conditional_edges("interactive", _route_after_interactive, {"restart": "restart", "end": END})
        graph.add_conditional_edges("restart", _route_after_restart, {"run_check": "run_check", "end": END})
        return graph

    def run(self, state: LocalLoopState) -> LocalLoopState:
        """Execute the loop until a terminal phase and return the final state."""
        compiled = self.build_graph().compile()
        logger.info("[%s] Running local checks | %s", state.repo_name, state.get_progress_summary())
        try:
            result = compiled.invoke(
                state.model_dump(),
                config={"recursion_limit": self.settings.graph_recursion_limit},
            )
        except GraphRecursionError:
            limit = self.settings.graph_recursion_limit
            logger.error("[%s] Local loop exceeded %d transitions", state.repo_name, limit)
            return state.model_copy(
                update={"phase": LocalPhase.EXHAUSTED, "stop_reason": "transition limit reached"}
            )

        final = LocalLoopState(**result)
        if is_shutdown_requested() and final.phase not in _TERMINAL:
            final.phase = LocalPhase.STOPPED
            final.stop_reason = final.stop_reason or "shutdown requested"

        if final.phase == LocalPhase.NEEDS_OPERATOR:
            self.checkpoints.save_checkpoint(final, "needs_operator", repo_root=final.repo_root)
        elif final.phase == LocalPhase.ROUND_CLEAN and final.resumed_from_checkpoint:
            self.checkpoints.clear_latest(repo_root=final.repo_root)

        logger.info(
            "[%s] Local loop finished | phase=%s | fixes=%d | commits=%d | stop_reason=%s",
            final.repo_name,
            final.phase.value,
            final.fix_count,
            len(final.commits),
            final.stop_reason or "none",
        )
        return final

    @staticmethod
    def resume(state: LocalLoopState) -> LocalLoopState:
        """Prepare a checkpointed ``NeedsOperator`` state to re-enter ``Running(i)``."""
        return state.model_copy(
            update={
                "phase": LocalPhase.RUNNING,
                "attempts": 0,
                "seen_errors": set(),
                "failure_output": "",
                "failure_fingerprint": "",
                "analysis": None,
                "stop_reason": "",
            }
        )

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def run_check_node(self, state: LocalLoopState) -> dict:
        if is_shutdown_requested():
            return {"phase": LocalPhase.STOPPED, "stop_reason": "shutdown requested"}

        check = state.current_check
        if check is None:
            logger.info("[%s] All local checks passed", state.repo_name)
            return {"phase": LocalPhase.ROUND_CLEAN}

        last = state.index + 1 >= len(state.checks)
        next_phase = LocalPhase.ROUND_CLEAN if last else LocalPhase.RUNNING

        if state.dry_run:
            logger.info("[%s] [DRY RUN] Would run: %s", state.repo_name, check.display)
            return {"index": state.index + 1, "phase": next_phase}

        logger.info("[%s] %s (%d/%d)", state.repo_name, check.name, state.index + 1, len(state.checks))
        result = self.runner.run(check.command, check.args, cwd=state.repo_root)
        if result.ok:
            logger.info("[%s] %s passed", state.repo_name, check.name)
            if last:
                logger.info("[%s] All local checks passed", state.repo_name)
            return {"index": state.index + 1, "phase": next_phase}

        output = result.error_output
        fp = fingerprint(output)
        logger.warning("[%s] %s failed (exit=%d, fingerprint=%s)", state.repo_name, check.name, result.exit_code, fp)

        if fp in state.seen_errors:
            logger.error("[%s] Detected same error again for %r, not retrying", state.repo_name, check.name)
            return {
                "phase": LocalPhase.EXHAUSTED,
                "failure_output": output,
                "failure_fingerprint": fp,
                "stop_reason": f"same error recurred for {check.name}",
            }

        update = {
            "failure_output": output,
            "failure_fingerprint": fp,
            "seen_errors": state.seen_errors | {fp},
            "analysis": None,
        }
        if state.attempts_remaining == 0:
            update["phase"] = LocalPhase.INTERACTIVE
        else:
            update["phase"] = LocalPhase.FIXING
        return update

    def fix_node(self, state: LocalLoopState) -> dict:
        if is_shutdown_requested():
            return {"phase": LocalPhase.STOPPED, "stop_reason": "shutdown requested"}

        check = state.current_check
        attempts = state.attempts + 1
        total = state.total_attempts + 1
        logger.info(
            "[%s] Auto-fix attempt %d/%d for %s",
            state.repo_name,
            attempts,
            state.budget.local_max_auto_fix_attempts,
            check.name,
        )

        analysis = state.analysis
        if analysis is None and self.analyzer is not None:
            analysis = self.analyzer.analyze(
                state.failure_output,
                state.failure_fingerprint,
                check_name=check.name,
                repo_name=state.repo_name,
                attempts=attempts,
            )
        if looks_environmental(analysis, state.failure_output):
            logger.warning(
                "[%s] This looks like an environmental issue - a code fix may not help", state.repo_name
            )

        self.snapshots.create(f"before-fix-{total}")
        prompt = build_local_fix_prompt(check.display, state.repo_name, state.failure_output, analysis)
        outcome = self.agent.fix(
            FixRequest(error_text=state.failure_output, prompt=prompt, check_name=check.name, analysis=analysis),
            timeout=self.settings.agent_timeout_seconds,
        )

        if outcome.interrupted:
            # Interrupted calls do not consume the auto-fix budget.
            logger.warning("[%s] Agent call for %s was interrupted, not counted", state.repo_name, check.name)
            return {"analysis": analysis, "phase": LocalPhase.FIXING}

        update: dict = {"attempts": attempts, "total_attempts": total, "analysis": analysis}
        budget_left = state.budget.local_max_auto_fix_attempts - attempts > 0

        if not outcome.fixed:
            logger.warning("[%s] Agent did not complete the fix (exit=%d)", state.repo_name, outcome.exit_code)
            self._record(state.failure_fingerprint, check.name, attempts, False, analysis)
            update["phase"] = LocalPhase.FIXING if budget_left else LocalPhase.INTERACTIVE
            return update

        logger.info("[%s] Retrying %s", state.repo_name, check.name)
        result = self.runner.run(check.command, check.args, cwd=state.repo_root)
        if result.ok:
            self._record(state.failure_fingerprint, check.name, attempts, True, analysis)
            logger.info("[%s] %s passed after fix", state.repo_name, check.name)
            update.update(self._commit_fix(state, check.name))
            return update

        self._record(state.failure_fingerprint, check.name, attempts, False, analysis)
        output = result.error_output
        fp = fingerprint(output)
        update["failure_output"] = output
        update["failure_fingerprint"] = fp
        if fp in state.seen_errors:
            logger.error("[%s] Error unchanged after fix for %r, not retrying", state.repo_name, check.name)
            update["phase"] = LocalPhase.EXHAUSTED
            update["stop_reason"] = f"same error recurred for {check.name}"
            return update

        update["seen_errors"] = state.seen_errors | {fp}
        update["analysis"] = None
        if budget_left:
            logger.warning("[%s] Auto-fix attempt %d failed, will retry", state.repo_name, attempts)
            update["phase"] = LocalPhase.FIXING
        else:
            logger.warning(
                "[%s] Auto-fix failed after %d attempts", state.repo_name, state.budget.local_max_auto_fix_attempts
            )
            update["phase"] = LocalPhase.INTERACTIVE
        return update

    def interactive_node(self, state: LocalLoopState) -> dict:
        check = state.current_check
        if not state.interactive_allowed:
            logger.warning(
                "[%s] %s needs manual attention; resume with `greenlight converge --resume`",
                state.repo_name,
                check.name,
            )
            return {"phase": LocalPhase.NEEDS_OPERATOR, "stop_reason": f"{check.name} needs operator"}

        logger.info("[%s] Switching to interactive mode for %s", state.repo_name, check.name)
        prompt = build_interactive_prompt(check.display, state.attempts, state.failure_output)
        self.agent.interactive(prompt)

        if is_shutdown_requested():
            return {"phase": LocalPhase.STOPPED, "stop_reason": "shutdown requested"}

        logger.info("[%s] Final retry of %s", state.repo_name, check.name)
        result = self.runner.run(check.command, check.args, cwd=state.repo_root)
        if not result.ok:
            logger.error("[%s] %s still failing after manual intervention", state.repo_name, check.name)
            return {
                "phase": LocalPhase.EXHAUSTED,
                "failure_output": result.error_output,
                "stop_reason": f"{check.name} still failing after interactive session",
            }
        return self._commit_fix(state, check.name)

    def restart_node(self, state: LocalLoopState) -> dict:
        round_number = state.round_number + 1
        if round_number > state.budget.max_rounds:
            logger.error("[%s] Round cap of %d reached", state.repo_name, state.budget.max_rounds)
            return {"phase": LocalPhase.EXHAUSTED, "stop_reason": "round cap reached", "fixes_this_round": False}

        logger.info("[%s] Fixes applied - rerunning all checks from the beginning", state.repo_name)
        return {
            "phase": LocalPhase.RUNNING,
            "round_number": round_number,
            "index": 0,
            "fixes_this_round": False,
            "seen_errors": set(),
            "attempts": 0,
            "failure_output": "",
            "failure_fingerprint": "",
            "analysis": None,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _commit_fix(self, state: LocalLoopState, target: str) -> dict:
        update: dict = {
            "phase": LocalPhase.RUNNING,
            "fix_count": state.fix_count + 1,
            "fixes_this_round": True,
        }
        if state.dry_run or not self.git.status_porcelain():
            return update

        self.git.stage_all()
        message = generate_commit_message(self.agent, self.git, target)
        result = self.git.commit(message, no_verify=state.no_verify)
        if result.ok:
            update["commits"] = [*state.commits, self.git.current_commit_id()]
            logger.info("[%s] Fix committed: %s", state.repo_name, message)
        else:
            logger.warning("[%s] Commit failed: %s", state.repo_name, result.error_output[:200])
        return update

    def _record(
        self, fp: str, target: str, attempt: int, succeeded: bool, analysis: RootCauseAnalysis | None
    ) -> None:
        top = analysis.top_strategy if analysis else None
        self.history.record(
            FixAttempt(
                fingerprint=fp,
                target=target,
                attempt_number=attempt,
                succeeded=succeeded,
                strategy_name=top.name if top else "auto-fix",
                root_cause=analysis.root_cause if analysis else "",
            )
        )
