"""Client frame parsing.

Clients send resize requests inline with keystrokes on the same channel.
A frame is a resize only when it looks like one *and* parses to a
well-typed ``{"type": "resize", "cols": int, "rows": int}``; everything
else is forwarded to the process untouched.
"""

from __future__ import annotations

import json
from dataclasses import dataclass


@dataclass(frozen=True)
class ResizeFrame:
    cols: int
    rows: int


def _is_dimension(value: object) -> bool:
    # bool is an int subclass; "cols": true is not a size
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def parse_client_frame(frame: bytes | str) -> ResizeFrame | bytes:
    """Classify one inbound frame as a resize request or raw input bytes."""
    if isinstance(frame, str):
        text, raw = frame, frame.encode("utf-8")
    else:
        raw = frame
        try:
            text = frame.decode("utf-8")
        except UnicodeDecodeError:
            return raw

    if not (text.startswith("{") and '"type"' in text and '"resize"' in text):
        return raw
    try:
        msg = json.loads(text)
    except json.JSONDecodeError:
        return raw
    if (
        isinstance(msg, dict)
        and msg.get("type") == "resize"
        and _is_dimension(msg.get("cols"))
        and _is_dimension(msg.get("rows"))
    ):
        return ResizeFrame(cols=msg["cols"], rows=msg["rows"])
    return raw


def encode_resize(cols: int, rows: int) -> str:
    """Build the resize control frame a client sends."""
    return json.dumps({"type": "resize", "cols": cols, "rows": rows})
