"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration for greenlight. Reads from .env automatically."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Retry budgets ─────────────────────────────────────────────────
    # Auto-fix attempts per local round before the interactive fallback.
    local_max_auto_fix_attempts: int = 10
    # Remote fix attempts per commit; resets when a new commit is pushed.
    ci_max_retries: int = 3
    # Hard cap on status polls for a single commit.
    ci_max_poll_attempts: int = 360

    # ── CI timing (seconds) ───────────────────────────────────────────
    ci_start_grace_seconds: float = 10.0
    ci_new_run_grace_seconds: float = 15.0
    ci_no_match_delay_seconds: float = 10.0
    # Runs created up to this long before the push still count as ours.
    ci_match_window_seconds: float = 120.0
    # Newest-run fallback only considers runs younger than this.
    ci_newest_run_window_seconds: float = 600.0

    # ── Remediation agent ─────────────────────────────────────────────
    # The agent reads its prompt on stdin, e.g. "claude --print".
    agent_command: str = "claude"
    agent_args: str = "--print"
    agent_skip_permissions: bool = True
    agent_timeout_seconds: float = 120.0
    agent_ci_timeout_seconds: float = 180.0
    agent_interactive_timeout_seconds: float = 1800.0
    analyze_failures: bool = True
    analysis_cache_ttl_seconds: float = 3600.0

    # ── Local checks ──────────────────────────────────────────────────
    check_timeout_seconds: float = 900.0

    # ── CI provider credentials ───────────────────────────────────────
    # GitHub personal access token (PAT) with actions:read on the target repo.
    github_token: str = ""

    # GitLab personal access token.
    gitlab_token: str = ""

    # Base URL of your GitLab instance.
    gitlab_url: str = "https://gitlab.com"

    # "auto" detects the platform from the origin remote; or "github" / "gitlab".
    ci_platform: str = "auto"

    # Git
    git_author_name: str = ""
    git_author_email: str = ""

    # ── Storage ───────────────────────────────────────────────────────
    # User-level state shared across repositories (error history, cache).
    greenlight_home: str = "~/.greenlight"

    @field_validator("greenlight_home")
    @classmethod
    def _resolve_home(cls, value: str) -> str:
        if value:
            return str(Path(value).expanduser().resolve())
        return value

    # Cross-repository registry. Relative paths resolve from CWD.
    targets_yaml_path: str = "targets.yaml"

    snapshot_retention_days: int = 7
    cache_retention_days: int = 30

    # ── Output limits ─────────────────────────────────────────────────
    max_output_chars: int = 12_000
    # CI log excerpt handed to the agent.
    ci_log_max_chars: int = 2_000

    # Upper bound on state-machine transitions per loop invocation.
    graph_recursion_limit: int = 10_000

    # Logging
    log_level: str = "INFO"
    log_file: str = "logs/greenlight.log"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Singleton accessor."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
