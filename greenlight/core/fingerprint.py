"""Error fingerprints for loop detection.

Failure output is normalized before hashing so that the same problem reported
with different timestamps, line numbers, commit SHAs or absolute paths maps to
the same fingerprint.
"""

from __future__ import annotations

import hashlib
import re

# Prefix of the normalized text that takes part in the hash.
NORMALIZED_PREFIX_CHARS = 500
FINGERPRINT_LENGTH = 16

_NORMALIZERS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}[^Z\s]*"), "TIMESTAMP"),
    (re.compile(r"\d{2}:\d{2}:\d{2}"), "TIME"),
    # line:column suffixes, file paths themselves are kept
    (re.compile(r":\d+:\d+"), ":*:*"),
    (re.compile(r"line \d+", re.IGNORECASE), "line *"),
    (re.compile(r"column \d+", re.IGNORECASE), "column *"),
    (re.compile(r"\b[0-9a-f]{7,40}\b"), "SHA"),
    # absolute paths collapse to their last component
    (re.compile(r"(?<![\w.])(?:/[^\s/]+)+/([^\s/]+)"), r"\1"),
    (re.compile(r"\s+"), " "),
]


def normalize_error(text: str | None) -> str:
    """Strip volatile details from failure output."""
    normalized = (text or "").strip()
    for pattern, replacement in _NORMALIZERS:
        normalized = pattern.sub(replacement, normalized)
    return normalized[:NORMALIZED_PREFIX_CHARS]


def fingerprint(text: str | None) -> str:
    """Return a short, deterministic hash of *text* after normalization."""
    digest = hashlib.sha256(normalize_error(text).encode("utf-8", errors="replace"))
    return digest.hexdigest()[:FINGERPRINT_LENGTH]
