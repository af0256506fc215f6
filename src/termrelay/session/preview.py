"""Preview extraction — the last readable line of terminal output."""

from __future__ import annotations

import re

PREVIEW_MAX_CHARS = 200

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]")


def strip_ansi(text: str) -> str:
    """Strip ANSI CSI escape sequences from text."""
    return _ANSI_RE.sub("", text)


def sanitize_binary_output(text: str) -> str:
    """Remove control characters and other binary garbage.

    Keeps printable chars and tabs. Strips C0/C1 controls and the
    interlinear annotation format chars.
    """
    cleaned = []
    for ch in text:
        cp = ord(ch)
        if ch == "\t":
            cleaned.append(ch)
        elif cp >= 32 and not 0x7F <= cp < 0xA0 and not 0xFFF9 <= cp < 0xFFFC:
            cleaned.append(ch)
    return "".join(cleaned)


def extract_preview(data: bytes, max_chars: int = PREVIEW_MAX_CHARS) -> str | None:
    """Return the last non-blank line of ``data``, or None if there is none."""
    text = strip_ansi(data.decode("utf-8", errors="replace"))
    for line in reversed(text.split("\n")):
        line = sanitize_binary_output(line).strip()
        if line:
            return line[:max_chars]
    return None
