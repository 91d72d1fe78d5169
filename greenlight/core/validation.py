"""Pre-push validation: non-blocking warnings about outgoing changes."""

from __future__ import annotations

import json
import re
import tomllib
from pathlib import Path

from greenlight.core.logging import get_logger

logger = get_logger("core.validation")

_DEBUG_PRINT = re.compile(r"^\+.*(console\.log\(|breakpoint\(\)|pdb\.set_trace\(\))", re.MULTILINE)
_FOCUSED_TEST = re.compile(r"^\+.*\.(only|skip)\(", re.MULTILINE)
_DEBUGGER = re.compile(r"^\+.*\bdebugger[;\s]", re.MULTILINE)
_UNLINKED_TODO = re.compile(r"^\+.*(//|#)\s*(TODO|FIXME)(?!\s*\(#\d+\))", re.MULTILINE | re.IGNORECASE)


def validate_before_push(diff: str, repo_root: str | Path) -> list[str]:
    """Return warnings for *diff*; an empty list means nothing suspicious."""
    warnings: list[str] = []
    root = Path(repo_root)

    if _DEBUG_PRINT.search(diff):
        warnings.append("Added debug output or breakpoint statements detected")
    if _FOCUSED_TEST.search(diff):
        warnings.append("Test .only() or .skip() detected")
    if _DEBUGGER.search(diff):
        warnings.append("Debugger statement detected")

    todos = _UNLINKED_TODO.findall(diff)
    if todos:
        warnings.append(f"{len(todos)} TODO/FIXME comment(s) without issue links")

    if "package.json" in diff and (root / "package.json").exists():
        try:
            json.loads((root / "package.json").read_text(encoding="utf-8"))
        except ValueError as exc:
            warnings.append(f"Invalid package.json: {exc}")

    if "pyproject.toml" in diff and (root / "pyproject.toml").exists():
        try:
            tomllib.loads((root / "pyproject.toml").read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            warnings.append(f"Invalid pyproject.toml: {exc}")

    for warning in warnings:
        logger.warning("pre-push   | %s", warning)
    return warnings
