"""Persistent error history used to enrich future remediation prompts.

Stored as JSON at ``<greenlight_home>/error-history.json``. The history is
advisory: read or write failures are logged and never change control flow.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path

from pydantic import ValidationError

from greenlight.core.config import Settings, get_settings
from greenlight.core.logging import get_logger
from greenlight.core.state import FixAttempt

logger = get_logger("core.history")

HISTORY_FILE = "error-history.json"
MAX_STORED = 200
MAX_LOADED = 100
MAX_SIMILAR = 3

# Cross-repository workers share one history file.
_write_lock = threading.Lock()


class ErrorHistory:
    def __init__(self, path: Path | None = None, settings: Settings | None = None) -> None:
        if path is None:
            path = Path((settings or get_settings()).greenlight_home) / HISTORY_FILE
        self.path = path

    def _read_raw(self) -> list[dict]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Could not read error history %s: %s", self.path, exc)
            return []
        errors = data.get("errors", []) if isinstance(data, dict) else []
        return errors if isinstance(errors, list) else []

    def load(self) -> list[FixAttempt]:
        """Return the most recent entries, oldest first."""
        attempts = []
        for item in self._read_raw()[-MAX_LOADED:]:
            try:
                attempts.append(FixAttempt(**item))
            except (TypeError, ValidationError):
                continue
        return attempts

    def record(self, attempt: FixAttempt) -> None:
        with _write_lock:
            errors = self._read_raw()
            errors.append(attempt.model_dump(mode="json"))
            errors = errors[-MAX_STORED:]
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.path.write_text(json.dumps({"errors": errors}, indent=2), encoding="utf-8")
            except OSError as exc:
                logger.warning("Could not write error history %s: %s", self.path, exc)
                return
        logger.debug(
            "history    | %s | %s | %s",
            attempt.fingerprint,
            "success" if attempt.succeeded else "failed",
            attempt.strategy_name or "auto-fix",
        )

    def similar_successes(self, fingerprint: str) -> list[FixAttempt]:
        """Up to three most recent successful attempts on the same fingerprint."""
        matches = [a for a in self.load() if a.fingerprint == fingerprint and a.succeeded]
        return matches[-MAX_SIMILAR:]
