"""Process backends — the persistent facility that actually runs programs.

The relay only needs a narrow surface from a backend: probe, detached
create, attach, window resize and kill. ``TmuxBackend`` implements it on top
of tmux, whose sessions outlive relay restarts.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable, Protocol, runtime_checkable

from termrelay.config import BackendConfig
from termrelay.errors import BackendUnavailable
from termrelay.pty.process import PtyProcess

logger = logging.getLogger(__name__)


@runtime_checkable
class TerminalIO(Protocol):
    """Readable/writable binding to a running backend session."""

    async def start(
        self,
        on_data: Callable[[bytes], None],
        on_exit: Callable[[int | None], None],
    ) -> None: ...

    def write(self, data: bytes) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    async def close(self) -> None: ...

    @property
    def alive(self) -> bool: ...


@runtime_checkable
class ProcessBackend(Protocol):
    """Protocol for persistent process backends."""

    async def probe_exists(self, session_id: str) -> bool: ...

    async def create_detached(
        self,
        session_id: str,
        cwd: str,
        cols: int,
        rows: int,
        program_args: list[str],
    ) -> None: ...

    async def attach(
        self, session_id: str, cwd: str, cols: int, rows: int
    ) -> TerminalIO: ...

    async def resize_window(self, session_id: str, cols: int, rows: int) -> None: ...

    async def kill(self, session_id: str) -> None: ...


class TmuxBackend:
    """tmux-backed sessions named ``<prefix><session_id>``."""

    def __init__(self, config: BackendConfig | None = None) -> None:
        self._config = config or BackendConfig()

    def session_name(self, session_id: str) -> str:
        return f"{self._config.session_prefix}{session_id}"

    async def _tmux(self, *args: str) -> tuple[int, str]:
        """Run a one-shot tmux command. Returns (returncode, stderr)."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._config.tmux,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            # tmux is not installed or not executable
            return 127, str(e)
        try:
            _, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._config.command_timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return -1, f"tmux {args[0]} timed out"
        return proc.returncode or 0, stderr.decode("utf-8", errors="replace").strip()

    async def probe_exists(self, session_id: str) -> bool:
        code, _ = await self._tmux("has-session", "-t", self.session_name(session_id))
        return code == 0

    async def create_detached(
        self,
        session_id: str,
        cwd: str,
        cols: int,
        rows: int,
        program_args: list[str],
    ) -> None:
        code, err = await self._tmux(
            "new-session",
            "-d",
            "-s",
            self.session_name(session_id),
            "-x",
            str(cols),
            "-y",
            str(rows),
            "-c",
            cwd,
            *program_args,
        )
        if code != 0:
            raise BackendUnavailable(session_id, err or f"tmux exited with {code}")

    async def attach(
        self, session_id: str, cwd: str, cols: int, rows: int
    ) -> TerminalIO:
        if not os.path.isdir(cwd):
            cwd = os.path.expanduser("~")
        return PtyProcess(
            command=[
                self._config.tmux,
                "attach-session",
                "-t",
                self.session_name(session_id),
            ],
            cwd=cwd,
            cols=cols,
            rows=rows,
        )

    async def resize_window(self, session_id: str, cols: int, rows: int) -> None:
        code, err = await self._tmux(
            "resize-window",
            "-t",
            self.session_name(session_id),
            "-x",
            str(cols),
            "-y",
            str(rows),
        )
        if code != 0:
            raise BackendUnavailable(session_id, err or "resize-window failed")

    async def kill(self, session_id: str) -> None:
        code, err = await self._tmux("kill-session", "-t", self.session_name(session_id))
        if code != 0:
            # Already dead, that's fine
            logger.debug("kill-session %s: %s", self.session_name(session_id), err)
