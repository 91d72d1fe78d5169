"""Tests for check list loading and project type detection."""

import textwrap

import pytest

from greenlight.core.errors import ConfigurationError
from greenlight.tools.build import default_checks, detect_project_types, load_checks


class TestDetectProjectTypes:
    def test_python(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[project]\nname='x'\n")
        assert detect_project_types(tmp_path) == ["python"]

    def test_node_and_dotnet(self, tmp_path):
        (tmp_path / "package.json").write_text("{}")
        (tmp_path / "App.csproj").write_text("<Project/>")
        assert detect_project_types(tmp_path) == ["node", "dotnet"]

    def test_nothing(self, tmp_path):
        assert detect_project_types(tmp_path) == []


class TestDefaultChecks:
    def test_npm(self, tmp_path):
        (tmp_path / "package.json").write_text("{}")
        checks = default_checks(tmp_path)
        assert [c.command for c in checks] == ["npm"] * 4
        assert checks[0].args == ["install"]

    def test_pnpm_lockfile(self, tmp_path):
        (tmp_path / "package.json").write_text("{}")
        (tmp_path / "pnpm-lock.yaml").write_text("")
        checks = default_checks(tmp_path)
        assert [c.display for c in checks] == [
            "pnpm install",
            "pnpm run fix",
            "pnpm run check",
            "pnpm run cover",
            "pnpm run test -- --update",
        ]


class TestLoadChecks:
    def test_checks_file_wins(self, tmp_path):
        (tmp_path / "package.json").write_text("{}")
        (tmp_path / "greenlight.yaml").write_text(
            textwrap.dedent(
                """
                checks:
                  - name: Lint
                    command: make
                    args: [lint]
                  - name: Test
                    command: make
                    args: [test]
                """
            )
        )
        checks = load_checks(tmp_path)
        assert [c.name for c in checks] == ["Lint", "Test"]
        assert checks[1].display == "make test"

    def test_falls_back_to_detection(self, tmp_path):
        (tmp_path / "requirements.txt").write_text("")
        assert load_checks(tmp_path)[0].name == "Install dependencies"

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "greenlight.yaml").write_text("checks: [unclosed")
        with pytest.raises(ConfigurationError, match="invalid YAML"):
            load_checks(tmp_path)

    def test_empty_check_list(self, tmp_path):
        (tmp_path / "greenlight.yaml").write_text("checks: []\n")
        with pytest.raises(ConfigurationError, match="non-empty list"):
            load_checks(tmp_path)

    def test_check_without_command(self, tmp_path):
        (tmp_path / "greenlight.yaml").write_text("checks:\n  - name: Lint\n")
        with pytest.raises(ConfigurationError, match="invalid check 0"):
            load_checks(tmp_path)

    def test_undetectable_project(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Could not detect project type"):
            load_checks(tmp_path)
