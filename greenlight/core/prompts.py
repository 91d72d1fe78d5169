"""Prompt builders for the remediation agent."""

from __future__ import annotations

from greenlight.core.state import RootCauseAnalysis

# ── Local check fix ───────────────────────────────────────────────────────

LOCAL_FIX_PROMPT = """\
You are fixing a CI/build issue automatically. The command "{command}" failed \
in the {repo_name} project.

Error output:
{error_output}
{analysis_block}
Your task:
1. Analyze the error
2. Provide the exact fix needed
3. Use file edits, commands, or both to resolve the issue

IMPORTANT:
- Be direct and specific - don't ask questions
- Provide complete solutions that will fix the error
- If the error is about missing dependencies, install pinned versions
- If it's a type error, fix the code
- If it's a lint error, fix the formatting
- If tests are failing, update snapshots or fix the test
- If a script is missing, check if there's a similar script name (e.g., 'cover' vs 'coverage')

Fix this issue now by making the necessary changes."""

ANALYSIS_BLOCK = """
Root Cause Analysis:
- Problem: {root_cause}
- Confidence: {confidence}%
- Category: {category}

Recommended Fix Strategy:
{strategy}
"""

INTERACTIVE_PROMPT = """\
The command "{command}" is still failing after {attempts} automatic fix attempts.

Latest error output:
{error_output}

Previous automatic fixes were attempted but did not resolve the issue. This \
appears to be a more complex problem that requires interactive debugging.

Please help me fix this issue. You can:
1. Analyze the error more carefully
2. Try different approaches
3. Ask me questions if needed
4. Suggest manual steps I should take

Let's work through this together to get CI passing."""

# ── Remote CI fixes ───────────────────────────────────────────────────────

CI_RUN_FIX_PROMPT = """\
Fix CI failures for commit {short_sha} in {repo}.

Error logs:
{logs}

Fix all issues by making necessary file changes. Be direct, don't ask questions."""

CI_JOB_FIX_PROMPT = """\
Fix CI failure in "{job_name}" (run {run_id}, commit {short_sha}).

Status: {conclusion}

Error logs:
{logs}

Fix the issue by making necessary file changes. Be direct, don't ask questions."""

# ── Structured agent queries ──────────────────────────────────────────────

ROOT_CAUSE_PROMPT = """\
You are an expert software engineer analyzing a CI/test failure.

**Error Output:**
```
{error_output}
```

**Context:**
- Check name: {check_name}
- Repository: {repo_name}
- Previous attempts: {attempts}
{similar_block}
**Task:** Analyze this error and provide a structured diagnosis.

**Output Format (JSON):**
{{
  "rootCause": "Brief description of the actual problem (not symptoms)",
  "confidence": 85,
  "category": "type-error|lint|test-failure|build-error|env-issue|other",
  "isEnvironmental": false,
  "strategies": [
    {{
      "name": "Fix type assertion",
      "probability": 90,
      "description": "Add type assertion to resolve type mismatch",
      "reasoning": "Error shows TypeScript expecting string but got number"
    }}
  ],
  "environmentalFactors": ["Check if the runner has sufficient memory"],
  "explanation": "Detailed explanation of what's happening and why"
}}

**Rules:**
- Be specific about the root cause, not just symptoms
- Rank strategies by success probability (highest first)
- Include 1-3 strategies maximum
- Mark as environmental if it's likely a runner/network/external issue
- Use confidence scores honestly (50-70% = uncertain, 80-95% = confident, 95-100% = very confident)
- Output ONLY the JSON object"""

PRE_COMMIT_SCAN_PROMPT = """\
You are performing a quick pre-commit scan to catch likely CI failures.

**Staged Changes:**
```diff
{diff}
```

**Task:** Analyze these changes for potential CI failures.

**Check for:**
- Type errors
- Lint violations (unused variables, missing imports, etc.)
- Breaking API changes
- Missing tests for new functionality
- Leftover debug statements
- Focused or skipped tests

**Output Format (JSON):**
{{
  "issues": [
    {{
      "severity": "high|medium|low",
      "type": "type-error|lint|test|other",
      "description": "Brief description of the issue",
      "file": "path/to/file",
      "confidence": 85
    }}
  ],
  "safe": false
}}

**Rules:**
- Only report issues with >60% confidence
- Be specific about file and line if possible
- Mark safe=true if no issues found
- Don't report style issues that auto-fix will handle"""

COMMIT_MESSAGE_PROMPT = """\
Generate a concise commit message for these changes.

Git status:
{status}

Git diff (staged changes):
{diff}

Recent commits (for style reference):
{recent_log}

Requirements:
1. Write a clear, concise commit message (1-2 lines preferred)
2. Follow the style of recent commits
3. Focus on WHY the changes were made, not just WHAT changed
4. NO attribution footers or co-author lines
5. NO emojis
6. Output ONLY the commit message text, nothing else

Commit message:"""


def _analysis_block(analysis: RootCauseAnalysis | None) -> str:
    if analysis is None:
        return ""
    top = analysis.top_strategy
    if top is None:
        strategy = "No specific strategy recommended"
    else:
        strategy = (
            f"- {top.name} ({top.probability}% success probability)\n"
            f"  {top.description}\n"
            f"  Reasoning: {top.reasoning}"
        )
    return ANALYSIS_BLOCK.format(
        root_cause=analysis.root_cause,
        confidence=analysis.confidence,
        category=analysis.category,
        strategy=strategy,
    )


def build_local_fix_prompt(
    command: str, repo_name: str, error_output: str, analysis: RootCauseAnalysis | None = None
) -> str:
    return LOCAL_FIX_PROMPT.format(
        command=command,
        repo_name=repo_name,
        error_output=error_output,
        analysis_block=_analysis_block(analysis),
    )


def build_interactive_prompt(command: str, attempts: int, error_output: str) -> str:
    return INTERACTIVE_PROMPT.format(
        command=command, attempts=attempts, error_output=error_output or "No error output"
    )


def build_ci_run_fix_prompt(short_sha: str, repo: str, logs: str) -> str:
    return CI_RUN_FIX_PROMPT.format(short_sha=short_sha, repo=repo, logs=logs)


def build_ci_job_fix_prompt(job_name: str, run_id: int, short_sha: str, conclusion: str, logs: str) -> str:
    return CI_JOB_FIX_PROMPT.format(
        job_name=job_name, run_id=run_id, short_sha=short_sha, conclusion=conclusion, logs=logs
    )


def build_root_cause_prompt(
    error_output: str,
    check_name: str,
    repo_name: str,
    attempts: int,
    similar: list[str] | None = None,
) -> str:
    similar_block = ""
    if similar:
        similar_block = "\n**Similar Past Errors:**\n" + "\n".join(f"- {line}" for line in similar) + "\n"
    return ROOT_CAUSE_PROMPT.format(
        error_output=error_output,
        check_name=check_name or "Unknown",
        repo_name=repo_name or "Unknown",
        attempts=attempts,
        similar_block=similar_block,
    )


def build_pre_commit_scan_prompt(diff: str) -> str:
    return PRE_COMMIT_SCAN_PROMPT.format(diff=diff)


def build_commit_message_prompt(status: str, diff: str, recent_log: str) -> str:
    return COMMIT_MESSAGE_PROMPT.format(
        status=status or "No status output",
        diff=diff or "No diff output",
        recent_log=recent_log or "No recent commits",
    )
