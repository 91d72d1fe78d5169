"""Remediation agent adapter: runs the external coding agent as a subprocess.

The agent receives its prompt on stdin and edits the working tree in place.
Any nonzero exit, timeout or interrupt means "not fixed"; the adapter never
inspects why.
"""

from __future__ import annotations

import shlex
import subprocess
import threading
import time
from pathlib import Path

from pydantic import BaseModel

from greenlight.core.config import Settings, get_settings
from greenlight.core.logging import get_logger
from greenlight.core.shutdown import agent_call, shutdown_event
from greenlight.core.state import RootCauseAnalysis
from greenlight.tools.shell import EXIT_NOT_FOUND, EXIT_TIMEOUT

logger = get_logger("tools.agent")

EXIT_INTERRUPTED = 130

# Granularity of the cancellation check while waiting on the agent.
_POLL_SECONDS = 1.0


class FixRequest(BaseModel):
    """Everything the agent gets to know about one failure."""

    error_text: str
    prompt: str
    check_name: str | None = None
    job_name: str | None = None
    analysis: RootCauseAnalysis | None = None


class FixOutcome(BaseModel):
    exit_code: int
    elapsed_seconds: float = 0.0
    timed_out: bool = False
    interrupted: bool = False
    output: str = ""

    @property
    def fixed(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.interrupted


class RemediationAgent:
    """Thin wrapper around the agent CLI.

    Args:
        cwd: Working tree the agent operates on.
        settings: Configuration; defaults to the process-wide settings.
        cancel: Event that aborts a running call. Defaults to the
            process-wide shutdown flag.
    """

    def __init__(
        self,
        cwd: str | Path,
        settings: Settings | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.cwd = Path(cwd).resolve()
        self._settings = settings or get_settings()
        self._cancel = cancel if cancel is not None else shutdown_event()

    def _argv(self, interactive: bool = False) -> list[str]:
        argv = [self._settings.agent_command]
        if not interactive:
            argv.extend(shlex.split(self._settings.agent_args))
        if self._settings.agent_skip_permissions:
            argv.append("--dangerously-skip-permissions")
        return argv

    def _run(self, prompt: str, timeout: float, capture: bool = True) -> FixOutcome:
        argv = self._argv(interactive=not capture)
        if not capture:
            # interactive sessions keep the terminal; the prompt opens the conversation
            argv.append(prompt)
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(self.cwd),
                stdin=subprocess.PIPE if capture else None,
                stdout=subprocess.PIPE if capture else None,
                stderr=subprocess.STDOUT if capture else None,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError:
            logger.error("agent      | command not found: %s", argv[0])
            return FixOutcome(exit_code=EXIT_NOT_FOUND)
        except OSError as exc:
            logger.error("agent      | failed to start %s: %s", argv[0], exc)
            return FixOutcome(exit_code=EXIT_NOT_FOUND)

        pending_input: str | None = prompt if capture else None
        with agent_call() as interrupt:
            while True:
                elapsed = time.monotonic() - start
                if elapsed >= timeout:
                    _kill(proc)
                    logger.warning("agent      | timed out after %.0fs", elapsed)
                    return FixOutcome(exit_code=EXIT_TIMEOUT, elapsed_seconds=elapsed, timed_out=True)
                if interrupt.is_set() or self._cancel.is_set():
                    _kill(proc)
                    logger.warning("agent      | cancelled after %.0fs", elapsed)
                    return FixOutcome(exit_code=EXIT_INTERRUPTED, elapsed_seconds=elapsed, interrupted=True)
                try:
                    out, _ = proc.communicate(input=pending_input, timeout=min(_POLL_SECONDS, timeout - elapsed))
                    break
                except subprocess.TimeoutExpired:
                    # stdin was already written and closed by the first call
                    pending_input = None

        elapsed = time.monotonic() - start
        logger.info("agent      | exit=%d | %.0fs", proc.returncode, elapsed)
        return FixOutcome(exit_code=proc.returncode, elapsed_seconds=elapsed, output=out or "")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fix(self, request: FixRequest, timeout: float | None = None) -> FixOutcome:
        """Ask the agent to repair one failure."""
        target = request.check_name or request.job_name or "unknown"
        logger.info("agent      | fixing %s in %s", target, self.cwd.name)
        return self._run(request.prompt, timeout or self._settings.agent_timeout_seconds)

    def interactive(self, prompt: str) -> FixOutcome:
        """Open a session attached to the operator's terminal."""
        logger.info("agent      | launching interactive session in %s", self.cwd.name)
        return self._run(prompt, self._settings.agent_interactive_timeout_seconds, capture=False)

    def complete(self, prompt: str, timeout: float = 60.0) -> str | None:
        """Run a one-shot query and return stdout, or None on any failure."""
        outcome = self._run(prompt, timeout)
        if not outcome.fixed:
            return None
        return outcome.output.strip()


def _kill(proc: subprocess.Popen) -> None:
    proc.kill()
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        logger.error("agent      | pid %d did not exit after kill", proc.pid)
