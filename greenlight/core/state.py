"""State models shared by the local and remote convergence loops.

Both loops run as LangGraph state machines. Each node receives the current
state and returns a partial update; nothing is kept in module scope, so
several controllers can run side by side in cross-repository mode.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class CheckStep(BaseModel):
    """One ordered local verification command."""

    model_config = {"frozen": True}

    name: str
    command: str
    args: list[str] = Field(default_factory=list)

    @property
    def display(self) -> str:
        return " ".join([self.command, *self.args])


class CommandResult(BaseModel):
    """Structured outcome of a subprocess. Failures are data, not exceptions."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def error_output(self) -> str:
        """Text used to fingerprint and describe a failure."""
        return self.stderr.strip() or self.stdout.strip() or "No error output available"


class FixStrategy(BaseModel):
    name: str
    probability: int = 0
    description: str = ""
    reasoning: str = ""


class RootCauseAnalysis(BaseModel):
    """Structured diagnosis returned by the agent before a fix attempt."""

    model_config = {"populate_by_name": True}

    root_cause: str = Field(default="", alias="rootCause")
    confidence: int = 0
    category: str = "other"
    is_environmental: bool = Field(default=False, alias="isEnvironmental")
    strategies: list[FixStrategy] = Field(default_factory=list)
    environmental_factors: list[str] = Field(default_factory=list, alias="environmentalFactors")
    explanation: str = ""

    @property
    def top_strategy(self) -> FixStrategy | None:
        return self.strategies[0] if self.strategies else None


class FixAttempt(BaseModel):
    """One remediation attempt, persisted to the error history."""

    fingerprint: str
    target: str
    attempt_number: int
    succeeded: bool
    strategy_name: str | None = None
    root_cause: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RetryBudget(BaseModel):
    local_max_auto_fix_attempts: int = 10
    remote_max_retries: int = 3

    @property
    def max_rounds(self) -> int:
        return self.local_max_auto_fix_attempts + 1


# ---------------------------------------------------------------------------
# Local verification loop
# ---------------------------------------------------------------------------


class LocalPhase(StrEnum):
    RUNNING = "running"
    FIXING = "fixing"
    INTERACTIVE = "interactive"
    NEEDS_OPERATOR = "needs_operator"
    ROUND_CLEAN = "round_clean"
    EXHAUSTED = "exhausted"
    STOPPED = "stopped"


class LocalLoopState(BaseModel):
    """The state passed between local-loop nodes."""

    repo_root: str = ""
    repo_name: str = ""
    checks: list[CheckStep] = Field(default_factory=list)
    budget: RetryBudget = Field(default_factory=RetryBudget)
    dry_run: bool = False
    no_verify: bool = False
    interactive_allowed: bool = True

    phase: LocalPhase = LocalPhase.RUNNING
    index: int = 0
    round_number: int = 1
    fixes_this_round: bool = False
    # Fingerprints attempted this round; cleared whenever a round makes progress.
    seen_errors: set[str] = Field(default_factory=set)
    attempts: int = 0
    total_attempts: int = 0
    fix_count: int = 0
    commits: list[str] = Field(default_factory=list)

    # Current failure under repair.
    failure_output: str = ""
    failure_fingerprint: str = ""
    analysis: RootCauseAnalysis | None = None

    stop_reason: str = ""
    resumed_from_checkpoint: bool = False
    # "checkpoint_id" is a reserved LangGraph channel name.
    state_checkpoint_id: str | None = None
    last_checkpoint_path: str = ""

    @property
    def current_check(self) -> CheckStep | None:
        if 0 <= self.index < len(self.checks):
            return self.checks[self.index]
        return None

    @property
    def attempts_remaining(self) -> int:
        return max(self.budget.local_max_auto_fix_attempts - self.attempts, 0)

    def get_progress_summary(self) -> str:
        current = self.current_check
        return (
            f"Phase: {self.phase.value} | "
            f"Round: {self.round_number}/{self.budget.max_rounds} | "
            f"Step: {self.index + 1}/{len(self.checks)} "
            f"({current.name if current else 'none'}) | "
            f"Fixes: {self.fix_count} | "
            f"Auto-fix budget left: {self.attempts_remaining}"
        )

    @property
    def checkpoint_id(self) -> str | None:
        return self.state_checkpoint_id

    @checkpoint_id.setter
    def checkpoint_id(self, value: str | None) -> None:
        self.state_checkpoint_id = value

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LocalLoopState:
        """Deserialize state payloads from checkpoints."""
        if "checkpoint_id" in data and "state_checkpoint_id" not in data:
            data = {**data, "state_checkpoint_id": data["checkpoint_id"]}
        return cls(**data)


# ---------------------------------------------------------------------------
# Remote reconciliation loop
# ---------------------------------------------------------------------------


class RunStatus(StrEnum):
    UNKNOWN = "unknown"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class RunConclusion(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class RunState(BaseModel):
    """Observed CI state for one commit.

    A new instance is created when a new commit is pushed; ``fixed_jobs`` only
    ever grows for the lifetime of an instance.
    """

    commit_id: str
    last_run_id: int | None = None
    run_name: str = ""
    run_url: str = ""
    status: RunStatus = RunStatus.UNKNOWN
    conclusion: RunConclusion | None = None
    poll_attempt: int = 0
    fixed_jobs: frozenset[str] = Field(default_factory=frozenset)
    has_pending_commits: bool = False

    @property
    def short_sha(self) -> str:
        return self.commit_id[:7]


class JobFailure(BaseModel):
    name: str
    conclusion: str
    id: int


class RemotePhase(StrEnum):
    DISCOVERING = "discovering"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SUCCEEDED = "succeeded"
    GIVEN_UP = "given_up"
    STOPPED = "stopped"


class RemoteLoopState(BaseModel):
    """The state passed between remote-loop nodes."""

    repo: str = ""
    repo_name: str = ""
    no_verify: bool = False
    max_retries: int = 3

    phase: RemotePhase = RemotePhase.DISCOVERING
    run_state: RunState
    push_time: datetime = Field(default_factory=lambda: datetime.now(UTC))
    retry_count: int = 0
    discovery_misses: int = 0
    # Run ids whose terminal failure was already handed to the agent.
    attempted_runs: dict[str, str] = Field(default_factory=dict)
    seen_errors: set[str] = Field(default_factory=set)
    fix_count: int = 0
    total_polls: int = 0

    stop_reason: str = ""

    @property
    def retries_remaining(self) -> int:
        return max(self.max_retries - self.retry_count, 0)

    def get_progress_summary(self) -> str:
        rs = self.run_state
        return (
            f"Phase: {self.phase.value} | "
            f"Commit: {rs.short_sha} | "
            f"Run: {rs.last_run_id or 'none'} ({rs.status.value}) | "
            f"Retries left: {self.retries_remaining}/{self.max_retries} | "
            f"Fixed jobs: {len(rs.fixed_jobs)}"
        )
