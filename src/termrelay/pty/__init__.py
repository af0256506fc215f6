"""Process layer — persistent backend sessions bound to pty handles.

Each relay session is backed by a tmux session that outlives the relay.
The bridge attaches a pty-driven ``tmux attach-session`` client to it,
pumps raw output into the relay, and forwards input and resizes.
"""

from termrelay.pty.backend import ProcessBackend, TerminalIO, TmuxBackend
from termrelay.pty.bridge import ProcessBridge, ProcessHandle, SpawnPhase
from termrelay.pty.buffer import ScrollbackBuffer
from termrelay.pty.process import ProcessState, PtyProcess

__all__ = [
    "ProcessBackend",
    "ProcessBridge",
    "ProcessHandle",
    "ProcessState",
    "PtyProcess",
    "ScrollbackBuffer",
    "SpawnPhase",
    "TerminalIO",
    "TmuxBackend",
]
