"""Checkpoint management for resumable local loops."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from greenlight.core.logging import get_logger
from greenlight.core.state import LocalLoopState
from greenlight.core import storage

logger = get_logger("core.checkpoints")


class CheckpointManager:
    """Save/load local loop state to ``<repo>/.greenlight/checkpoints``."""

    def _checkpoint_dir(self, repo_root: str) -> Path:
        path = storage.checkpoint_dir(repo_root)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def save_checkpoint(self, state: LocalLoopState, checkpoint_type: str = "auto", repo_root: str = "") -> str:
        checkpoint_id = f"{checkpoint_type}_{uuid.uuid4().hex[:8]}"
        checkpoint_dir = self._checkpoint_dir(repo_root or state.repo_root)
        checkpoint_file = checkpoint_dir / f"{checkpoint_id}.json"

        state.checkpoint_id = checkpoint_id
        state.last_checkpoint_path = str(checkpoint_file)
        checkpoint = {
            "checkpoint_id": checkpoint_id,
            "checkpoint_type": checkpoint_type,
            "timestamp": datetime.now(UTC).isoformat(),
            "state": state.model_dump(mode="json"),
        }

        text = json.dumps(checkpoint, indent=2)
        checkpoint_file.write_text(text, encoding="utf-8")
        (checkpoint_dir / "latest.json").write_text(text, encoding="utf-8")

        logger.info("Checkpoint saved: %s", checkpoint_id)
        return checkpoint_id

    def load_checkpoint(self, checkpoint_id: str | None = None, repo_root: str = "") -> LocalLoopState | None:
        checkpoint_dir = self._checkpoint_dir(repo_root)
        checkpoint_file = checkpoint_dir / f"{checkpoint_id}.json" if checkpoint_id else checkpoint_dir / "latest.json"

        if not checkpoint_file.exists():
            return None

        try:
            payload = json.loads(checkpoint_file.read_text(encoding="utf-8"))
            state = LocalLoopState.from_dict(payload.get("state", {}))
        except (OSError, ValueError, TypeError, ValidationError) as exc:
            logger.error("Failed to load checkpoint %s: %s", checkpoint_file, exc)
            return None

        state.resumed_from_checkpoint = True
        state.checkpoint_id = payload.get("checkpoint_id")
        state.last_checkpoint_path = str(checkpoint_file)
        logger.info("Checkpoint loaded: %s", state.checkpoint_id)
        return state

    def clear_latest(self, repo_root: str = "") -> None:
        """Forget the resumable checkpoint once the loop has converged."""
        latest = self._checkpoint_dir(repo_root) / "latest.json"
        if latest.exists():
            latest.unlink()


checkpoint_manager = CheckpointManager()
