"""Process-wide graceful shutdown flag and in-flight agent call registry.

The CLI signal handler either cancels the agent calls that are running right
now or, when none is, raises the shutdown flag; every loop checks that flag at
its next state transition.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from greenlight.core.logging import get_logger

logger = get_logger("core.shutdown")

_shutdown_event = threading.Event()
_active_calls: set[threading.Event] = set()
_calls_lock = threading.Lock()


def request_shutdown() -> None:
    """Signal every controller to stop after the current node finishes."""
    _shutdown_event.set()
    logger.info("Shutdown requested - controllers will stop after the current step")


def reset_shutdown() -> None:
    """Clear the shutdown flag (used in tests and restart cycles)."""
    _shutdown_event.clear()


def is_shutdown_requested() -> bool:
    return _shutdown_event.is_set()


def shutdown_event() -> threading.Event:
    return _shutdown_event


@contextmanager
def agent_call() -> Iterator[threading.Event]:
    """Register one agent subprocess call; the yielded event cancels only it."""
    event = threading.Event()
    with _calls_lock:
        _active_calls.add(event)
    try:
        yield event
    finally:
        with _calls_lock:
            _active_calls.discard(event)


def interrupt_agent_calls() -> int:
    """Cancel every running agent call. Returns how many were cancelled."""
    with _calls_lock:
        pending = [event for event in _active_calls if not event.is_set()]
    for event in pending:
        event.set()
    return len(pending)
