"""Reduce raw CI job logs to the lines worth showing the agent."""

from __future__ import annotations

# Runner bookkeeping that never explains a failure.
_NOISE_MARKERS = (
    "Current runner version:",
    "Runner Image",
    "Operating System",
    "GITHUB_TOKEN",
    "Prepare workflow",
    "Prepare all required",
    "##[group]",
    "##[endgroup]",
    "Post job cleanup",
    "git config",
    "git submodule",
    "Cleaning up orphan",
    "secret source:",
    "[command]/usr/bin/git",
    "section_start:",
    "section_end:",
)

_ERROR_MARKERS = (
    "##[error]",
    "Error:",
    "error TS",
    "FAIL",
    "\u2717",
    "\u274c",
    "failed",
    "ELIFECYCLE",
    "Traceback (most recent call last)",
    "ERROR:",
)

MAX_RELEVANT_LINES = 100
TAIL_LINES = 50


def filter_ci_logs(raw: str) -> str:
    """Keep error lines and the non-blank lines following them.

    An error section stays open until more than 100 lines have been
    collected. When no error marker is found, the last 50 lines are returned.
    """
    lines = raw.split("\n")
    relevant: list[str] = []
    in_error = False

    for line in lines:
        if any(marker in line for marker in _NOISE_MARKERS):
            continue
        if any(marker in line for marker in _ERROR_MARKERS):
            in_error = True
            relevant.append(line)
        elif in_error and line.strip():
            relevant.append(line)
            if len(relevant) > MAX_RELEVANT_LINES:
                in_error = False

    if not relevant:
        return "\n".join(lines[-TAIL_LINES:])
    return "\n".join(relevant)


def truncate_logs(text: str, limit: int) -> str:
    """Cut *text* to *limit* characters for inclusion in a prompt."""
    if limit and len(text) > limit:
        return f"{text[:limit]}\n... (truncated)"
    return text
