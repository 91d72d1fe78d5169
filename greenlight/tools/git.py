"""Safe Git operations with strict allow/blocklist enforcement.

Git commands run inside the target repo root. Merge/rebase/reset --hard and
force pushes are forbidden: the controller only ever adds commits on top of
the current branch.
"""

from __future__ import annotations

import os
import re
import subprocess
from pathlib import Path

from greenlight.core.config import Settings, get_settings
from greenlight.core.logging import get_logger
from greenlight.core.state import CommandResult
from greenlight.tools.shell import EXIT_BLOCKED, EXIT_NOT_FOUND, EXIT_TIMEOUT, truncate_output

logger = get_logger("tools.git")

GIT_TIMEOUT_SECONDS = 60
PUSH_TIMEOUT_SECONDS = 300

# Allowed git sub-commands.
ALLOWED_SUBCOMMANDS = {
    "status",
    "diff",
    "add",
    "commit",
    "push",
    "log",
    "rev-parse",
    "rev-list",
    "remote",
    "show",
    "apply",
}

# Explicitly blocked patterns.
BLOCKED_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\bgit\s+merge\b"),
    re.compile(r"\bgit\s+rebase\b"),
    re.compile(r"\bgit\s+reset\s+--hard\b"),
    re.compile(r"\bgit\s+clean\s+-fd\b"),
    re.compile(r"\bgit\s+push\s+.*--force"),
    re.compile(r"\bgit\s+push\s+.*-f\b"),
]


def _validate_git_args(args: list[str]) -> str | None:
    """Return error message if blocked, else None."""
    if not args:
        return "ERROR: incomplete git command"
    command = " ".join(["git", *args])
    for pattern in BLOCKED_PATTERNS:
        if pattern.search(command):
            return f"BLOCKED: forbidden git operation - {pattern.pattern}"

    sub = args[0].lstrip("-")
    if sub not in ALLOWED_SUBCOMMANDS:
        allowed = ", ".join(sorted(ALLOWED_SUBCOMMANDS))
        return f"BLOCKED: git subcommand '{sub}' is not allowed. Permitted: {allowed}"
    return None


class GitRepository:
    """Version-control operations for one working tree.

    Args:
        root: Repository root directory.
        settings: Configuration; defaults to the process-wide settings.
    """

    def __init__(self, root: str | Path, settings: Settings | None = None) -> None:
        self.root = Path(root).resolve()
        self._settings = settings or get_settings()

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        name = self._settings.git_author_name
        email = self._settings.git_author_email
        if name:
            env["GIT_AUTHOR_NAME"] = env["GIT_COMMITTER_NAME"] = name
        if email:
            env["GIT_AUTHOR_EMAIL"] = env["GIT_COMMITTER_EMAIL"] = email
        return env

    def run(self, *args: str, input_text: str | None = None, timeout: float = GIT_TIMEOUT_SECONDS) -> CommandResult:
        """Execute a validated git command and return its structured result."""
        argv = list(args)
        error = _validate_git_args(argv)
        if error:
            logger.warning("git        | %s | %s", " ".join(argv), error)
            return CommandResult(exit_code=EXIT_BLOCKED, stderr=error)

        if not self.root.is_dir():
            return CommandResult(exit_code=EXIT_NOT_FOUND, stderr=f"ERROR: repo root does not exist: {self.root}")

        logger.debug("git        | git %s", " ".join(argv))
        try:
            result = subprocess.run(
                ["git", *argv],
                shell=False,
                cwd=str(self.root),
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self._env(),
                encoding="utf-8",
                errors="replace",
            )
        except subprocess.TimeoutExpired:
            return CommandResult(exit_code=EXIT_TIMEOUT, stderr=f"TIMEOUT: git command took > {timeout:.0f}s")
        except OSError as exc:
            return CommandResult(exit_code=EXIT_NOT_FOUND, stderr=f"ERROR: {exc}")

        limit = self._settings.max_output_chars
        logger.debug("git        | exit=%d | output_len=%d", result.returncode, len(result.stdout or ""))
        return CommandResult(
            exit_code=result.returncode,
            stdout=truncate_output(result.stdout or "", limit),
            stderr=truncate_output((result.stderr or "").strip(), limit),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def diff_staged(self) -> str:
        return self.run("diff", "--cached").stdout

    def staged_files(self) -> list[str]:
        out = self.run("diff", "--cached", "--name-only").stdout
        return [line.strip() for line in out.splitlines() if line.strip()]

    def status_porcelain(self) -> str:
        return self.run("status", "--porcelain").stdout.strip()

    def current_commit_id(self) -> str:
        return self.run("rev-parse", "HEAD").stdout.strip()

    def current_branch(self) -> str:
        result = self.run("rev-parse", "--abbrev-ref", "HEAD")
        return result.stdout.strip() if result.ok else "HEAD"

    def remote_url(self, remote: str = "origin") -> str:
        result = self.run("remote", "get-url", remote)
        return result.stdout.strip() if result.ok else ""

    def recent_log(self, count: int = 5) -> str:
        return self.run("log", "--oneline", "-n", str(count)).stdout.strip()

    def unpushed_count(self) -> int:
        """Commits on HEAD not yet on the upstream branch.

        A branch without an upstream counts as one pending push so it gets
        published.
        """
        result = self.run("rev-list", "@{upstream}..HEAD", "--count")
        if not result.ok:
            logger.info("git        | no upstream for %s, will push", self.current_branch())
            return 1
        try:
            return int(result.stdout.strip() or "0")
        except ValueError:
            return 0

    def working_diff(self) -> str:
        return self.run("diff", "HEAD").stdout

    def outgoing_diff(self) -> str:
        """Diff of the commits a push would publish."""
        result = self.run("diff", "@{upstream}", "HEAD")
        if result.ok:
            return result.stdout
        return self.run("show", "--format=", "HEAD").stdout

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def stage_all(self) -> CommandResult:
        return self.run("add", "-A")

    def commit(self, message: str, no_verify: bool = False) -> CommandResult:
        args = ["commit", "-m", message]
        if no_verify:
            args.append("--no-verify")
        result = self.run(*args)
        logger.info("git        | commit exit=%d | %s", result.exit_code, message.splitlines()[0] if message else "")
        return result

    def push(self) -> CommandResult:
        branch = self.current_branch()
        if self.run("rev-parse", "--abbrev-ref", "@{upstream}").ok:
            result = self.run("push", timeout=PUSH_TIMEOUT_SECONDS)
        else:
            result = self.run("push", "-u", "origin", branch, timeout=PUSH_TIMEOUT_SECONDS)
        logger.info("git        | push exit=%d | branch=%s", result.exit_code, branch)
        return result
