"""Status state machine — derives session liveness from I/O timing.

States and transitions::

    spawn/reattach ........................ -> running  (new generation)
    output ................................ -> running  (resets idle timer)
    sweep: running, silent > idle_timeout . -> idle
    sweep: no handle, not mid-spawn ....... -> error
    exit code 0 / nonzero ................. -> done / error

``done`` and ``error`` are terminal for a process generation: events from
that generation never move the session again, only a new handle does.
Content of the output is never inspected.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from termrelay.model.session import SessionRecord, SessionStatus

logger = logging.getLogger(__name__)

# Catalog-only sessions (never attached in this relay lifetime)
HEURISTIC_RUNNING_AGE = 60.0
HEURISTIC_DONE_AGE = 300.0


def heuristic_status(modified_at: float, now: float | None = None) -> SessionStatus:
    """Guess a status for a session known only from catalog timestamps."""
    age = (now if now is not None else time.time()) - modified_at
    if age < HEURISTIC_RUNNING_AGE:
        return SessionStatus.RUNNING
    if age < HEURISTIC_DONE_AGE:
        return SessionStatus.DONE
    return SessionStatus.IDLE


@dataclass
class Liveness:
    """Timing state the status machine keeps per live session."""

    generation: int = 0  # generation of the newest process handle seen
    last_output_at: float = 0.0
    last_input_at: float | None = None  # instrumentation only


class StatusTracker:
    """Applies status transitions to session records."""

    def __init__(
        self,
        idle_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.idle_timeout = idle_timeout
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def on_live(
        self,
        record: SessionRecord,
        liveness: Liveness,
        generation: int,
        now: float | None = None,
    ) -> None:
        """A new process handle is bound: start a fresh generation."""
        now = self.now() if now is None else now
        liveness.generation = generation
        liveness.last_output_at = now
        self._set(record, SessionStatus.RUNNING)
        record.last_activity = now

    def on_output(
        self,
        record: SessionRecord,
        liveness: Liveness,
        generation: int,
        now: float | None = None,
    ) -> None:
        if generation != liveness.generation or record.status.terminal:
            return
        now = self.now() if now is None else now
        liveness.last_output_at = now
        record.last_activity = now
        self._set(record, SessionStatus.RUNNING)

    def on_input(
        self, record: SessionRecord, liveness: Liveness, now: float | None = None
    ) -> None:
        if record.status.terminal:
            return
        now = self.now() if now is None else now
        liveness.last_input_at = now
        record.last_activity = now
        self._set(record, SessionStatus.RUNNING)

    def on_exit(
        self,
        record: SessionRecord,
        liveness: Liveness,
        generation: int,
        exit_code: int | None,
        now: float | None = None,
    ) -> None:
        if generation != liveness.generation or record.status.terminal:
            return
        record.last_activity = self.now() if now is None else now
        self._set(
            record, SessionStatus.DONE if exit_code == 0 else SessionStatus.ERROR
        )

    def sweep_one(
        self,
        record: SessionRecord,
        liveness: Liveness,
        has_handle: bool,
        spawning: bool,
        now: float | None = None,
    ) -> bool:
        """Apply the periodic checks to one session. Returns True on change."""
        if record.status.terminal or spawning:
            return False
        if not has_handle:
            # The handle vanished without an exit event
            return self._set(record, SessionStatus.ERROR)
        now = self.now() if now is None else now
        if (
            record.status == SessionStatus.RUNNING
            and now - liveness.last_output_at > self.idle_timeout
        ):
            return self._set(record, SessionStatus.IDLE)
        return False

    def _set(self, record: SessionRecord, status: SessionStatus) -> bool:
        if record.status == status:
            return False
        logger.debug("Session %s: %s -> %s", record.id, record.status, status)
        record.status = status
        return True
