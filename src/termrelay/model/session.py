"""Session record and status types."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field, replace


def _gen_id() -> str:
    return str(uuid.uuid4())


class SessionStatus(enum.StrEnum):
    """Coarse liveness of a session, derived from process I/O timing."""

    RUNNING = "running"
    IDLE = "idle"
    DONE = "done"  # Process exited with code 0
    ERROR = "error"  # Process exited nonzero, or the handle vanished

    @property
    def terminal(self) -> bool:
        """``done`` and ``error`` end a process generation."""
        return self in (SessionStatus.DONE, SessionStatus.ERROR)


@dataclass
class SessionRecord:
    """One logical session as seen by administrative callers.

    The registry owns every record. Other components refer to sessions by
    ``id`` and only the process event handlers and the status machine
    write ``status``, ``last_activity`` and ``preview``.
    """

    id: str = field(default_factory=_gen_id)
    name: str = ""
    group: str | None = None
    working_dir: str = ""
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    status: SessionStatus = SessionStatus.RUNNING
    preview: str | None = None  # last non-blank output line
    pinned: bool = False
    archived: bool = False

    def copy(self) -> SessionRecord:
        """Detached copy safe to hand to callers."""
        return replace(self)
