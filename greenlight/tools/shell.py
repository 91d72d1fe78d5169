"""Safe check execution: runs commands inside the repo root with blocklist enforcement.

Every command is logged with cwd, exit code, and output length. Failures come
back as a :class:`CommandResult`; the runner never raises for a failing,
missing or hanging command.
"""

from __future__ import annotations

import re
import shlex
import subprocess
from pathlib import Path

from greenlight.core.config import Settings, get_settings
from greenlight.core.logging import get_logger
from greenlight.core.state import CommandResult

logger = get_logger("tools.shell")

EXIT_TIMEOUT = 124
EXIT_BLOCKED = 126
EXIT_NOT_FOUND = 127

# ── Blocklist ────────────────────────────────────────────────────────────
# Patterns that must NEVER be executed, regardless of context.
BLOCKED_PATTERNS: list[re.Pattern] = [
    re.compile(r"\brm\s+(-[rRf]+\s+)*/((?!home)|$)", re.IGNORECASE),  # rm -rf /
    re.compile(r"\bshutdown\b"),
    re.compile(r"\breboot\b"),
    re.compile(r"\bmkfs\b"),
    re.compile(r"\bdd\s+.*of=/dev/", re.IGNORECASE),
    re.compile(r":\(\)\s*\{.*:\|:.*\}"),  # fork bomb
    re.compile(r"\bchmod\s+(-R\s+)?777\s+/"),  # chmod 777 /
    re.compile(r"\bcurl\s+.*\|\s*(ba)?sh", re.IGNORECASE),  # curl | sh
    re.compile(r"\bwget\s+.*\|\s*(ba)?sh", re.IGNORECASE),
    re.compile(r"\bsudo\b"),
    re.compile(r"\bsu\s+"),
    re.compile(r"\bsystemctl\b"),
]


def _is_blocked(command: str) -> str | None:
    """Return a reason string if the command is blocked, else None."""
    for pattern in BLOCKED_PATTERNS:
        if pattern.search(command):
            return f"Blocked by safety rule: {pattern.pattern}"
    return None


def truncate_output(text: str, limit: int) -> str:
    if limit and len(text) > limit:
        half = limit // 2
        return text[:half] + f"\n\n... [truncated {len(text) - limit} chars] ...\n\n" + text[-half:]
    return text


class CheckRunner:
    """Runs :class:`~greenlight.core.state.CheckStep` commands.

    Args:
        settings: Configuration; defaults to the process-wide settings.
        timeout: Per-command timeout in seconds.
    """

    def __init__(self, settings: Settings | None = None, timeout: float | None = None) -> None:
        self._settings = settings or get_settings()
        self._timeout = timeout if timeout is not None else self._settings.check_timeout_seconds

    def run(self, command: str, args: list[str] | None = None, cwd: str = ".") -> CommandResult:
        """Execute ``command args...`` in *cwd* and return its structured result."""
        argv = [command, *(args or [])]
        display = shlex.join(argv)
        root = Path(cwd).resolve()

        if not root.is_dir():
            return CommandResult(exit_code=EXIT_NOT_FOUND, stderr=f"ERROR: directory does not exist: {cwd}")

        reason = _is_blocked(display)
        if reason:
            logger.warning("BLOCKED check | %s | reason: %s", display, reason)
            return CommandResult(exit_code=EXIT_BLOCKED, stderr=f"BLOCKED: {reason}")

        logger.info("run_check  | cwd=%s | cmd=%s", root, display)

        try:
            result = subprocess.run(
                argv,
                shell=False,
                cwd=str(root),
                capture_output=True,
                text=True,
                timeout=self._timeout,
                encoding="utf-8",
                errors="replace",
            )
        except subprocess.TimeoutExpired:
            msg = f"TIMEOUT after {self._timeout:.0f}s: {display}"
            logger.error(msg)
            return CommandResult(exit_code=EXIT_TIMEOUT, stderr=msg)
        except FileNotFoundError:
            msg = f"command not found: {command}"
            logger.error(msg)
            return CommandResult(exit_code=EXIT_NOT_FOUND, stderr=msg)
        except OSError as exc:
            msg = f"ERROR executing command: {exc}"
            logger.error(msg)
            return CommandResult(exit_code=EXIT_NOT_FOUND, stderr=msg)

        limit = self._settings.max_output_chars
        stdout = truncate_output((result.stdout or "").strip(), limit)
        stderr = truncate_output((result.stderr or "").strip(), limit)
        logger.info(
            "run_check  | exit=%d | output_len=%d", result.returncode, len(stdout) + len(stderr)
        )
        return CommandResult(exit_code=result.returncode, stdout=stdout, stderr=stderr)
