"""Restore points taken before each fix attempt.

A snapshot records HEAD and the uncommitted diff so an operator can get back
to the pre-fix tree by hand (``git checkout <sha> && git apply``).
"""

from __future__ import annotations

import json
import re
import time
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from greenlight.core.logging import get_logger
from greenlight.core.storage import snapshot_dir

logger = get_logger("core.snapshots")


class Snapshot(BaseModel):
    label: str
    sha: str
    diff: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def short_sha(self) -> str:
        return self.sha[:7]


class SnapshotManager:
    """Writes snapshots under ``<repo>/.greenlight/snapshots``."""

    def __init__(self, git) -> None:
        self._git = git
        self.snapshots: list[Snapshot] = []

    def create(self, label: str) -> Snapshot | None:
        snap = Snapshot(label=label, sha=self._git.current_commit_id(), diff=self._git.working_diff())
        safe_label = re.sub(r"[^\w.-]+", "-", label)
        directory = snapshot_dir(self._git.root)
        path = directory / f"snapshot-{int(time.time() * 1000)}-{safe_label}.json"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(snap.model_dump(mode="json"), indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not write snapshot %s: %s", label, exc)
            return None
        self.snapshots.append(snap)
        logger.info("snapshot   | %s @ %s", label, snap.short_sha)
        return snap

    def recent(self, count: int = 5) -> list[Snapshot]:
        return self.snapshots[-count:]

    def describe(self, count: int = 5) -> list[str]:
        now = datetime.now(UTC)
        lines = []
        for snap in self.recent(count):
            age = int((now - snap.timestamp).total_seconds())
            lines.append(f"{snap.label} ({age}s ago, {snap.short_sha})")
        return lines
