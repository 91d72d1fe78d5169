"""Adaptive delay between CI status polls."""

from __future__ import annotations

ACTIVE_FLOOR_SECONDS = 5.0
ACTIVE_STEP_SECONDS = 2.0
ACTIVE_CEILING_SECONDS = 15.0
QUEUED_DELAY_SECONDS = 30.0
DEFAULT_DELAY_SECONDS = 10.0

QUEUED_STATUSES = {"queued", "waiting", "pending", "requested"}


def next_delay(status: str, attempt: int, has_active_jobs: bool = False) -> float:
    """Return the number of seconds to wait before the next poll.

    Running jobs are polled quickly, starting at 5 s and backing off by 2 s per
    attempt up to 15 s. Queued runs wait 30 s. Anything else waits 10 s.
    """
    if has_active_jobs or status == "in_progress":
        return min(ACTIVE_FLOOR_SECONDS + max(attempt, 0) * ACTIVE_STEP_SECONDS, ACTIVE_CEILING_SECONDS)

    if status in QUEUED_STATUSES:
        return QUEUED_DELAY_SECONDS

    return DEFAULT_DELAY_SECONDS
