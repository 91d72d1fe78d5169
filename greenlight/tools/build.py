"""Local check lists for Python, Node/TS, and .NET projects.

A repository may declare its own ordered checks in ``greenlight.yaml``::

    checks:
      - name: Install dependencies
        command: pnpm
        args: [install]
      - name: Lint
        command: pnpm
        args: [run, lint]

Without one, the project type is detected and a default list is used.
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ValidationError

from greenlight.core.errors import ConfigurationError
from greenlight.core.logging import get_logger
from greenlight.core.state import CheckStep

logger = get_logger("tools.build")

CHECKS_FILE = "greenlight.yaml"

_PYTHON_CHECKS = [
    CheckStep(name="Install dependencies", command="python", args=["-m", "pip", "install", "-e", "."]),
    CheckStep(name="Lint", command="python", args=["-m", "ruff", "check", "."]),
    CheckStep(name="Run tests", command="python", args=["-m", "pytest", "--tb=short", "-q"]),
]

_NODE_CHECKS = [
    CheckStep(name="Install dependencies", command="npm", args=["install"]),
    CheckStep(name="Lint", command="npm", args=["run", "lint"]),
    CheckStep(name="Build", command="npm", args=["run", "build", "--if-present"]),
    CheckStep(name="Run tests", command="npm", args=["test"]),
]

_PNPM_CHECKS = [
    CheckStep(name="Install dependencies", command="pnpm", args=["install"]),
    CheckStep(name="Fix code style", command="pnpm", args=["run", "fix"]),
    CheckStep(name="Run checks", command="pnpm", args=["run", "check"]),
    CheckStep(name="Run coverage", command="pnpm", args=["run", "cover"]),
    CheckStep(name="Run tests", command="pnpm", args=["run", "test", "--", "--update"]),
]

_DOTNET_CHECKS = [
    CheckStep(name="Build", command="dotnet", args=["build", "--verbosity", "minimal"]),
    CheckStep(name="Run tests", command="dotnet", args=["test", "--verbosity", "minimal"]),
]


def detect_project_types(repo_root: str | Path) -> list[str]:
    """Detect which project types exist in the repo."""
    root = Path(repo_root)
    types = []
    if (root / "pyproject.toml").exists() or (root / "setup.py").exists() or (root / "requirements.txt").exists():
        types.append("python")
    if (root / "package.json").exists():
        types.append("node")
    if list(root.glob("*.csproj")) or list(root.glob("*.sln")):
        types.append("dotnet")
    return types


def default_checks(repo_root: str | Path) -> list[CheckStep]:
    root = Path(repo_root)
    checks: list[CheckStep] = []
    for ptype in detect_project_types(root):
        if ptype == "python":
            checks.extend(_PYTHON_CHECKS)
        elif ptype == "node":
            checks.extend(_PNPM_CHECKS if (root / "pnpm-lock.yaml").exists() else _NODE_CHECKS)
        elif ptype == "dotnet":
            checks.extend(_DOTNET_CHECKS)
    return checks


def load_checks(repo_root: str | Path) -> list[CheckStep]:
    """Return the ordered check list for *repo_root*.

    Raises:
        ConfigurationError: If ``greenlight.yaml`` is invalid, or no checks
            could be determined at all.
    """
    root = Path(repo_root)
    path = root / CHECKS_FILE
    if path.exists():
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"{CHECKS_FILE}: invalid YAML: {exc}") from exc
        items = raw.get("checks") if isinstance(raw, dict) else None
        if not isinstance(items, list) or not items:
            raise ConfigurationError(f"{CHECKS_FILE}: 'checks' must be a non-empty list")
        checks = []
        for i, item in enumerate(items):
            if not isinstance(item, dict):
                raise ConfigurationError(f"{CHECKS_FILE}: check {i} must be a mapping")
            try:
                checks.append(CheckStep(**item))
            except ValidationError as exc:
                raise ConfigurationError(f"{CHECKS_FILE}: invalid check {i} ({item!r}): {exc}") from exc
        logger.info("load_checks | %d check(s) from %s", len(checks), path)
        return checks

    checks = default_checks(root)
    if not checks:
        raise ConfigurationError(
            f"Could not detect project type in {root} and no {CHECKS_FILE} found"
        )
    logger.info("load_checks | types=%s | %d default check(s)", detect_project_types(root), len(checks))
    return checks
