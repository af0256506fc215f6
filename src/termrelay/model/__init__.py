"""Session data model."""

from termrelay.model.session import SessionRecord, SessionStatus

__all__ = [
    "SessionRecord",
    "SessionStatus",
]
