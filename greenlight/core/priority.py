"""Priority ordering for failed CI jobs.

Blocking failures (build, type-check) are fixed before symptom failures
(lint, tests, coverage): a compile error usually explains the test failures
downstream of it.
"""

from __future__ import annotations

from typing import Iterable, TypeVar

DEFAULT_PRIORITY = 50

# Keyword table, checked in order; the first keyword contained in the
# lower-cased job name wins. Specific suites (integration, e2e, coverage) are
# listed before the generic "test" keyword so "integration-tests" ranks 60.
JOB_PRIORITIES: dict[str, int] = {
    "build": 100,
    "compile": 100,
    "type check": 90,
    "type-check": 90,
    "typecheck": 90,
    "typescript": 90,
    "tsc": 90,
    "mypy": 90,
    "pyright": 90,
    "lint": 80,
    "eslint": 80,
    "prettier": 80,
    "ruff": 80,
    "flake8": 80,
    "format": 80,
    "integration": 60,
    "e2e": 50,
    "end-to-end": 50,
    "coverage": 40,
    "report": 30,
    "unit test": 70,
    "unit": 70,
    "test": 70,
    "pytest": 70,
    "jest": 70,
    "vitest": 70,
}

T = TypeVar("T")


def job_priority(name: str) -> int:
    """Return the priority of a job name (higher = fix first)."""
    lower = name.lower()
    for keyword, priority in JOB_PRIORITIES.items():
        if keyword in lower:
            return priority
    return DEFAULT_PRIORITY


def rank(jobs: Iterable[T], key=None) -> list[T]:
    """Order *jobs* highest priority first.

    *jobs* may be plain names or objects with a ``name`` attribute; pass *key*
    to extract the name otherwise. ``sorted`` is stable, so ties keep their
    discovery order.
    """
    if key is None:
        key = lambda job: job if isinstance(job, str) else job.name  # noqa: E731
    return sorted(jobs, key=lambda job: -job_priority(key(job)))
