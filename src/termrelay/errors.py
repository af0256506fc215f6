"""Exception hierarchy for the session relay.

Only ``NotFound`` and ``InvalidArgument`` ever reach external callers.
``BackendUnavailable`` stays inside the relay: it is logged and the session
is left without a process handle until the next observer attach.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class NotFound(RelayError):
    """Session id unknown to the registry."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class InvalidArgument(RelayError):
    """Malformed administrative request."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"{field} {reason}")


class BackendUnavailable(RelayError):
    """The process backend failed to create or attach a session."""

    def __init__(self, session_id: str, reason: str) -> None:
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Backend unavailable for session {session_id}: {reason}")
