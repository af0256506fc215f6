"""Session layer — registry, status tracking and observer fan-out."""

from termrelay.session.frames import ResizeFrame, encode_resize, parse_client_frame
from termrelay.session.hub import BroadcastHub, Observer, ObserverChannel
from termrelay.session.registry import LiveSession, SessionRegistry
from termrelay.session.relay import SessionRelay
from termrelay.session.status import Liveness, StatusTracker, heuristic_status

__all__ = [
    "BroadcastHub",
    "LiveSession",
    "Liveness",
    "Observer",
    "ObserverChannel",
    "ResizeFrame",
    "SessionRegistry",
    "SessionRelay",
    "StatusTracker",
    "encode_resize",
    "heuristic_status",
    "parse_client_frame",
]
