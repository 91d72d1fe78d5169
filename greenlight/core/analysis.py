"""Root-cause analysis and pre-commit scanning via the remediation agent.

Both are best-effort: any agent, parsing or cache failure yields "no
analysis" and the loops carry on with a plain fix prompt.
"""

from __future__ import annotations

import json
import re
import time
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from greenlight.core.config import Settings, get_settings
from greenlight.core.history import ErrorHistory
from greenlight.core.logging import get_logger
from greenlight.core.prompts import build_pre_commit_scan_prompt, build_root_cause_prompt
from greenlight.core.state import RootCauseAnalysis

logger = get_logger("core.analysis")

ENVIRONMENTAL_CONFIDENCE = 70
SCAN_TIMEOUT_SECONDS = 30.0
SCAN_MIN_CONFIDENCE = 60

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

# Failures caused by the machine rather than the code.
_ENV_FAILURE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"command not found", re.IGNORECASE),
    re.compile(r"is not recognized as an internal or external command", re.IGNORECASE),
    re.compile(r"error: externally-managed-environment", re.IGNORECASE),
    re.compile(r"Could not find.*executable", re.IGNORECASE),
    re.compile(r"No such file or directory.*python", re.IGNORECASE),
    re.compile(r"\bENOSPC\b|No space left on device", re.IGNORECASE),
    re.compile(r"\bECONNRESET\b|\bETIMEDOUT\b|\bEAI_AGAIN\b", re.IGNORECASE),
    re.compile(r"rate limit exceeded|API rate limit", re.IGNORECASE),
    re.compile(r"Temporary failure in name resolution", re.IGNORECASE),
    re.compile(r"JavaScript heap out of memory|Killed\s+signal 9|\bOOMKilled\b", re.IGNORECASE),
]


def _is_env_failure(output: str) -> bool:
    """Return True if the output points at a broken machine or network."""
    return any(pat.search(output) for pat in _ENV_FAILURE_PATTERNS)


def looks_environmental(analysis: RootCauseAnalysis | None, error_output: str) -> bool:
    """Environmental per a confident analysis, or per the patterns when there is none."""
    if analysis is not None:
        return analysis.is_environmental and analysis.confidence > ENVIRONMENTAL_CONFIDENCE
    return _is_env_failure(error_output)


def _extract_json(text: str | None) -> dict | None:
    if not text:
        return None
    match = _JSON_OBJECT.search(text)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class RootCauseAnalyzer:
    """Ask the agent for a structured diagnosis, cached per fingerprint."""

    def __init__(
        self,
        agent,
        history: ErrorHistory | None = None,
        settings: Settings | None = None,
        cache_dir: Path | None = None,
    ) -> None:
        self._agent = agent
        self._settings = settings or get_settings()
        self._history = history or ErrorHistory(settings=self._settings)
        self._cache_dir = cache_dir or Path(self._settings.greenlight_home) / "cache"

    def _cache_path(self, fingerprint: str) -> Path:
        return self._cache_dir / f"analysis-{fingerprint}.json"

    def _load_cached(self, fingerprint: str) -> RootCauseAnalysis | None:
        path = self._cache_path(fingerprint)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            if time.time() - float(payload.get("timestamp", 0)) >= self._settings.analysis_cache_ttl_seconds:
                return None
            return RootCauseAnalysis.model_validate(payload["analysis"])
        except (OSError, ValueError, KeyError, TypeError, ValidationError) as exc:
            logger.warning("Ignoring unreadable analysis cache %s: %s", path.name, exc)
            return None

    def _store(self, fingerprint: str, analysis: RootCauseAnalysis) -> None:
        payload = {
            "analysis": analysis.model_dump(by_alias=True),
            "fingerprint": fingerprint,
            "timestamp": time.time(),
        }
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            self._cache_path(fingerprint).write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not write analysis cache: %s", exc)

    def analyze(
        self,
        error_output: str,
        fingerprint: str,
        check_name: str = "",
        repo_name: str = "",
        attempts: int = 0,
    ) -> RootCauseAnalysis | None:
        cached = self._load_cached(fingerprint)
        if cached is not None:
            logger.info("analysis   | using cached analysis for %s", fingerprint)
            return cached

        similar = [
            f"{a.root_cause or a.target}: success ({a.strategy_name or 'auto-fix'})"
            for a in self._history.similar_successes(fingerprint)
        ]
        prompt = build_root_cause_prompt(error_output, check_name, repo_name, attempts, similar)
        reply = self._agent.complete(prompt, timeout=self._settings.agent_timeout_seconds)
        if reply is None:
            logger.warning("Analysis failed, proceeding without root cause info")
            return None

        data = _extract_json(reply)
        if data is None:
            logger.warning("Could not parse analysis, proceeding without root cause info")
            return None
        try:
            analysis = RootCauseAnalysis.model_validate(data)
        except ValidationError as exc:
            logger.warning("Analysis did not match the expected shape: %s", exc.errors()[:1])
            return None

        self._store(fingerprint, analysis)
        top = analysis.top_strategy
        logger.info(
            "analysis   | %s | confidence=%d%% | category=%s | strategy=%s",
            analysis.root_cause[:120],
            analysis.confidence,
            analysis.category,
            top.name if top else "none",
        )
        return analysis


# ---------------------------------------------------------------------------
# Pre-commit scan
# ---------------------------------------------------------------------------


class ScanIssue(BaseModel):
    severity: str = "low"
    type: str = "other"
    description: str = ""
    file: str = ""
    confidence: int = 0


class ScanResult(BaseModel):
    issues: list[ScanIssue] = Field(default_factory=list)
    safe: bool = True


def run_pre_commit_scan(agent, git) -> ScanResult:
    """Ask the agent to review the staged diff for likely CI failures."""
    if not git.staged_files():
        logger.info("scan       | no staged files to scan")
        return ScanResult()

    reply = agent.complete(build_pre_commit_scan_prompt(git.diff_staged()), timeout=SCAN_TIMEOUT_SECONDS)
    data = _extract_json(reply)
    if data is None:
        return ScanResult()
    try:
        result = ScanResult.model_validate(data)
    except ValidationError as exc:
        logger.warning("Scan result did not match the expected shape: %s", exc.errors()[:1])
        return ScanResult()

    result.issues = [i for i in result.issues if i.confidence > SCAN_MIN_CONFIDENCE]
    if not result.issues:
        result.safe = True
    for issue in result.issues:
        logger.warning(
            "scan       | [%s] %s: %s %s(%d%% confidence)",
            issue.severity,
            issue.type,
            issue.description,
            f"in {issue.file} " if issue.file else "",
            issue.confidence,
        )
    return result
