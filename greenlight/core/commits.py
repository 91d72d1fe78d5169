"""Commit message generation for fix commits.

Messages are one line, explain why the change was needed, and carry no
attribution footers or decorative symbols.
"""

from __future__ import annotations

import re

from greenlight.core.logging import get_logger
from greenlight.core.prompts import build_commit_message_prompt

logger = get_logger("core.commits")

COMMIT_MESSAGE_TIMEOUT_SECONDS = 60.0
MIN_MESSAGE_CHARS = 10
MAX_MESSAGE_CHARS = 100

_PREAMBLE_PREFIXES = ("here", "commit message:", "```", "sure", "i ")
_ATTRIBUTION = re.compile(r"co-authored-by|generated (with|by)|signed-off-by", re.IGNORECASE)
_EMOJI = re.compile(
    "["
    "\U0001f000-\U0001faff"
    "\u2600-\u27bf"
    "\u2b00-\u2bff"
    "\ufe0f"
    "\u200d"
    "]+"
)
_SHORTCODE = re.compile(r":[a-z0-9_+-]+:")


def sanitize(line: str) -> str:
    line = _EMOJI.sub("", line)
    line = _SHORTCODE.sub("", line)
    line = line.strip().strip("`\"'").strip()
    line = re.sub(r"\s{2,}", " ", line)
    if len(line) > MAX_MESSAGE_CHARS:
        line = line[: MAX_MESSAGE_CHARS - 3].rstrip() + "..."
    return line


def extract_commit_message(reply: str | None) -> str | None:
    """Return the first substantial line of an agent reply, or None."""
    if not reply:
        return None
    for raw in reply.splitlines():
        lowered = raw.strip().lower()
        if not lowered or lowered.startswith(_PREAMBLE_PREFIXES):
            continue
        if _ATTRIBUTION.search(lowered):
            continue
        line = sanitize(raw)
        if len(line) > MIN_MESSAGE_CHARS:
            return line
    return None


def fallback_message(target: str, remote: bool = False) -> str:
    where = "CI" if remote else "local"
    return f"Fix {where} {target} failure so the pipeline can pass"


def generate_commit_message(agent, git, target: str, remote: bool = False) -> str:
    """Ask the agent for a message describing the staged changes.

    Falls back to a deterministic message when the agent fails or replies
    with nothing usable.
    """
    prompt = build_commit_message_prompt(
        status=git.status_porcelain(),
        diff=git.diff_staged(),
        recent_log=git.recent_log(),
    )
    message = extract_commit_message(agent.complete(prompt, timeout=COMMIT_MESSAGE_TIMEOUT_SECONDS))
    if message is None:
        message = fallback_message(target, remote=remote)
        logger.info("commit msg | using fallback: %s", message)
    else:
        logger.info("commit msg | %s", message)
    return message
