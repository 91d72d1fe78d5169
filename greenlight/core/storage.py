"""Storage directories and retention housekeeping."""

from __future__ import annotations

import time
from pathlib import Path

from greenlight.core.config import Settings, get_settings
from greenlight.core.logging import get_logger

logger = get_logger("core.storage")

STATE_DIR_NAME = ".greenlight"
_DAY_SECONDS = 24 * 60 * 60


def state_dir(repo_root: str | Path) -> Path:
    """Per-repository state directory, created on demand and kept out of git.

    The directory carries its own ``.gitignore`` matching everything, so
    ``git add -A`` never stages snapshots or checkpoints and the tree reads
    clean when the agent changed nothing.
    """
    path = Path(repo_root or ".").resolve() / STATE_DIR_NAME
    path.mkdir(parents=True, exist_ok=True)
    ignore = path / ".gitignore"
    if not ignore.exists():
        ignore.write_text("# Created by greenlight; local state only.\n*\n", encoding="utf-8")
    return path


def snapshot_dir(repo_root: str | Path) -> Path:
    return state_dir(repo_root) / "snapshots"


def checkpoint_dir(repo_root: str | Path) -> Path:
    return state_dir(repo_root) / "checkpoints"


def init_storage(repo_root: str | Path, settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    home = Path(settings.greenlight_home)
    for path in (home, home / "cache", snapshot_dir(repo_root), checkpoint_dir(repo_root)):
        path.mkdir(parents=True, exist_ok=True)


def _purge(directory: Path, max_age_seconds: float, now: float) -> int:
    removed = 0
    if not directory.is_dir():
        return 0
    for path in directory.iterdir():
        if not path.is_file():
            continue
        try:
            if now - path.stat().st_mtime > max_age_seconds:
                path.unlink()
                removed += 1
        except OSError as exc:
            logger.warning("Could not remove %s: %s", path, exc)
    return removed


def cleanup_old_data(repo_root: str | Path, settings: Settings | None = None, now: float | None = None) -> int:
    """Delete snapshots and cache entries older than their retention period."""
    settings = settings or get_settings()
    now = time.time() if now is None else now
    removed = _purge(snapshot_dir(repo_root), settings.snapshot_retention_days * _DAY_SECONDS, now)
    removed += _purge(Path(settings.greenlight_home) / "cache", settings.cache_retention_days * _DAY_SECONDS, now)
    if removed:
        logger.info("storage    | removed %d expired file(s)", removed)
    return removed
