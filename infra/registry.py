"""Target registry: YAML list of repositories for cross-repository mode.

Schema example (``targets.yaml``)::

    repos:
      - name: my-api
        path: ~/src/my-api
        description: "Main backend API"

      - name: web
        path: ../web

Relative paths resolve against the directory holding the YAML file.

Typical usage::

    from infra.registry import load_targets

    registry = load_targets(Path("targets.yaml"))
    for entry in registry:
        print(entry.name, entry.resolved_path)
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

import yaml
from pydantic import BaseModel, ValidationError, field_validator

from greenlight.core.errors import ConfigurationError
from greenlight.core.logging import get_logger

logger = get_logger("infra.registry")

# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class TargetEntry(BaseModel):
    """A single repository entry in the registry."""

    name: str
    """Short alias used in log lines (e.g. ``my-api``)."""

    path: str
    """Working tree location. Each target must own its tree."""

    description: str = ""

    base_dir: str = ""
    """Directory of the YAML file the entry was loaded from."""

    @field_validator("name", "path")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @property
    def resolved_path(self) -> Path:
        path = Path(self.path).expanduser()
        if not path.is_absolute() and self.base_dir:
            path = Path(self.base_dir) / path
        return path.resolve()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TargetRegistry:
    """In-memory registry loaded from ``targets.yaml``."""

    def __init__(self, entries: list[TargetEntry] | None = None) -> None:
        self._entries: list[TargetEntry] = list(entries or [])

    @classmethod
    def load(cls, path: Path) -> TargetRegistry:
        """Load the registry from a YAML file.

        Raises:
            ConfigurationError: If the file is missing, malformed, contains
                invalid entries, or lists the same working tree twice.
        """
        resolved = Path(path).expanduser().resolve()
        if not resolved.exists():
            raise ConfigurationError(f"targets file not found: {resolved}")

        try:
            raw = yaml.safe_load(resolved.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"{resolved.name}: invalid YAML: {exc}") from exc

        raw_repos = raw.get("repos", []) if isinstance(raw, dict) else None
        if not isinstance(raw_repos, list):
            raise ConfigurationError(f"{resolved.name}: 'repos' must be a list")

        entries: list[TargetEntry] = []
        for i, item in enumerate(raw_repos):
            if not isinstance(item, dict):
                raise ConfigurationError(f"{resolved.name}: entry {i} must be a mapping, got {type(item).__name__}")
            try:
                entries.append(TargetEntry(**{**item, "base_dir": str(resolved.parent)}))
            except (ValidationError, TypeError) as exc:
                raise ConfigurationError(f"{resolved.name}: invalid entry {i} ({item!r}): {exc}") from exc

        seen: dict[Path, str] = {}
        for entry in entries:
            if entry.resolved_path in seen:
                raise ConfigurationError(
                    f"{resolved.name}: targets {seen[entry.resolved_path]!r} and {entry.name!r} "
                    "share one working tree"
                )
            seen[entry.resolved_path] = entry.name

        logger.info("Registry loaded %d target(s) from %s", len(entries), resolved)
        return cls(entries)

    def resolve(self, name: str) -> TargetEntry:
        """Return the entry named *name* (case-insensitive).

        Raises:
            ConfigurationError: If no entry matches.
        """
        for entry in self._entries:
            if entry.name.lower() == name.strip().lower():
                return entry
        raise ConfigurationError(
            f"Target {name!r} is not in the registry. Known targets: {[e.name for e in self._entries]}"
        )

    def list_targets(self) -> list[TargetEntry]:
        return list(self._entries)

    def __iter__(self) -> Iterator[TargetEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def load_targets(path: Path | None = None) -> TargetRegistry:
    """Load the registry from *path*, or from ``TARGETS_YAML_PATH``."""
    if path is None:
        from greenlight.core.config import get_settings

        path = Path(get_settings().targets_yaml_path)
    return TargetRegistry.load(path)
