"""Tests for fix commit message generation and pre-push validation."""

from greenlight.core.commits import (
    MAX_MESSAGE_CHARS,
    extract_commit_message,
    fallback_message,
    generate_commit_message,
)
from greenlight.core.validation import validate_before_push


class _ReplyAgent:
    def __init__(self, reply):
        self.reply = reply
        self.prompts = []

    def complete(self, prompt, timeout=60.0):
        self.prompts.append(prompt)
        return self.reply


class TestExtractCommitMessage:
    def test_first_substantial_line(self):
        reply = "Here is a commit message:\n\nFix missing import so the build can resolve utils\n"
        assert extract_commit_message(reply) == "Fix missing import so the build can resolve utils"

    def test_strips_quotes_and_emoji(self):
        reply = "`✨ Correct the lint config so CI stops rejecting tabs`"
        assert extract_commit_message(reply) == "Correct the lint config so CI stops rejecting tabs"

    def test_strips_shortcodes(self):
        assert extract_commit_message(":bug: Handle empty arrays in the parser") == "Handle empty arrays in the parser"

    def test_skips_attribution_lines(self):
        reply = "Co-Authored-By: someone <a@b.c>\nAlign test fixture with the renamed field"
        assert extract_commit_message(reply) == "Align test fixture with the renamed field"

    def test_too_short_is_rejected(self):
        assert extract_commit_message("fix") is None

    def test_empty_reply(self):
        assert extract_commit_message("") is None
        assert extract_commit_message(None) is None

    def test_long_line_is_capped(self):
        message = extract_commit_message("Update " + "word " * 60)
        assert len(message) <= MAX_MESSAGE_CHARS
        assert message.endswith("...")


class TestGenerateCommitMessage:
    def test_uses_agent_reply(self, git):
        agent = _ReplyAgent("Pin the node version so installs are reproducible")
        assert generate_commit_message(agent, git, "install") == "Pin the node version so installs are reproducible"
        assert len(agent.prompts) == 1

    def test_falls_back_when_agent_is_silent(self, git):
        message = generate_commit_message(_ReplyAgent(None), git, "lint")
        assert message == "Fix local lint failure so the pipeline can pass"

    def test_remote_fallback(self):
        assert fallback_message("build-job", remote=True) == "Fix CI build-job failure so the pipeline can pass"


class TestValidateBeforePush:
    def test_clean_diff(self, tmp_path):
        assert validate_before_push("+const a = 1;\n", tmp_path) == []

    def test_debug_output(self, tmp_path):
        warnings = validate_before_push("+  console.log('here')\n", tmp_path)
        assert warnings == ["Added debug output or breakpoint statements detected"]

    def test_focused_test(self, tmp_path):
        assert "Test .only() or .skip() detected" in validate_before_push("+describe.only('x', () => {})\n", tmp_path)

    def test_debugger_statement(self, tmp_path):
        assert "Debugger statement detected" in validate_before_push("+  debugger;\n", tmp_path)

    def test_unlinked_todo(self, tmp_path):
        diff = "+# TODO handle retries\n+// TODO(#12) linked\n"
        assert validate_before_push(diff, tmp_path) == ["1 TODO/FIXME comment(s) without issue links"]

    def test_removed_lines_ignored(self, tmp_path):
        assert validate_before_push("-  console.log('gone')\n", tmp_path) == []

    def test_invalid_package_json(self, tmp_path):
        (tmp_path / "package.json").write_text("{not json")
        warnings = validate_before_push("diff --git a/package.json b/package.json\n", tmp_path)
        assert len(warnings) == 1
        assert warnings[0].startswith("Invalid package.json")

    def test_invalid_pyproject(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[project\nname=")
        warnings = validate_before_push("diff --git a/pyproject.toml b/pyproject.toml\n", tmp_path)
        assert warnings[0].startswith("Invalid pyproject.toml")
