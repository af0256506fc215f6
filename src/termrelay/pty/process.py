"""PTY process — a terminal client process driven through a pseudo-terminal."""

from __future__ import annotations

import asyncio
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
REAP_TIMEOUT = 2.0


class ProcessState(enum.Enum):
    """Lifecycle states for a PTY process."""

    CREATED = "created"
    RUNNING = "running"
    CLOSING = "closing"  # close() requested, waiting for the process to die
    CLOSED = "closed"  # Closed by us
    EXITED = "exited"  # Process exited on its own


def set_winsize(fd: int, cols: int, rows: int) -> None:
    """Set the window size of a pty via TIOCSWINSZ."""
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


@dataclass
class PtyProcess:
    """A process whose stdio is the slave side of a fresh pty.

    Used to run ``tmux attach-session`` so the relay reads exactly the byte
    stream a real terminal would receive. Output is delivered raw to the
    ``on_data`` callback from the event loop thread; ``on_exit`` fires once
    when the process dies on its own (never after ``close()``).

    The master fd is non-blocking and watched with ``add_reader``, so an idle
    process holds no executor thread. Input that the pty cannot take yet is
    queued and flushed with ``add_writer``.

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when spawned
    from within an asyncio event loop.
    """

    command: list[str] = field(default_factory=list)
    cwd: str = field(default_factory=os.getcwd)
    cols: int = 200
    rows: int = 50
    env: dict[str, str] = field(default_factory=dict)

    _master_fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)
    _exit_task: asyncio.Task | None = field(default=None, init=False)
    _outbox: bytearray = field(default_factory=bytearray, init=False)
    _reading: bool = field(default=False, init=False)
    _writing: bool = field(default=False, init=False)
    _state: ProcessState = field(default=ProcessState.CREATED, init=False)
    _on_data: Callable[[bytes], None] | None = field(default=None, init=False)
    _on_exit: Callable[[int | None], None] | None = field(default=None, init=False)

    async def start(
        self,
        on_data: Callable[[bytes], None],
        on_exit: Callable[[int | None], None],
    ) -> None:
        """Spawn the process in a new pty and start watching its output."""
        master_fd, slave_fd = pty.openpty()
        self._master_fd = master_fd
        set_winsize(slave_fd, self.cols, self.rows)

        env = {**os.environ, **self.env}
        env["TERM"] = "xterm-256color"

        try:
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                env=env,
                cwd=self.cwd,
            )
        except OSError:
            os.close(master_fd)
            self._master_fd = -1
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        self._loop = asyncio.get_running_loop()
        self._on_data = on_data
        self._on_exit = on_exit
        self._state = ProcessState.RUNNING
        self._loop.add_reader(master_fd, self._on_readable)
        self._reading = True

        logger.info(
            "PTY process started: pid=%d cmd=%s", self._proc.pid, " ".join(self.command)
        )

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side is gone
            data = b""
        if not data:
            self._stop_watching()
            self._exit_task = self._loop.create_task(self._finish())
            return
        if self._on_data is not None and self._state == ProcessState.RUNNING:
            self._on_data(data)

    async def _finish(self) -> None:
        exit_code = await self._reap()
        if self._state != ProcessState.RUNNING:
            return
        self._state = ProcessState.EXITED
        self._close_fd()
        logger.info("PTY process exited (code=%s)", exit_code)
        if self._on_exit is not None:
            try:
                self._on_exit(exit_code)
            except Exception:
                logger.exception("Error in on_exit callback")

    async def _reap(self) -> int | None:
        """Wait up to REAP_TIMEOUT for the process; None if it is still alive."""
        if self._proc is None:
            return None
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._proc.wait, REAP_TIMEOUT)
        except subprocess.TimeoutExpired:
            return self._proc.poll()

    def write(self, data: bytes) -> None:
        """Write raw bytes to the process's terminal input."""
        if self._state != ProcessState.RUNNING:
            return
        self._outbox.extend(data)
        if not self._writing:
            self._flush()

    def _flush(self) -> None:
        try:
            while self._outbox:
                written = os.write(self._master_fd, self._outbox)
                del self._outbox[:written]
        except BlockingIOError:
            pass
        if self._outbox and not self._writing:
            self._loop.add_writer(self._master_fd, self._on_writable)
            self._writing = True
        elif not self._outbox and self._writing:
            self._loop.remove_writer(self._master_fd)
            self._writing = False

    def _on_writable(self) -> None:
        try:
            self._flush()
        except OSError as e:
            logger.warning("Dropping %d bytes of pending input: %s", len(self._outbox), e)
            self._outbox.clear()
            self._loop.remove_writer(self._master_fd)
            self._writing = False

    def resize(self, cols: int, rows: int) -> None:
        """Resize the pty and nudge the process to redraw."""
        if self._state != ProcessState.RUNNING:
            return
        set_winsize(self._master_fd, cols, rows)
        self.cols, self.rows = cols, rows
        # No controlling tty, so the kernel will not signal the child for us
        if self._proc is not None:
            try:
                os.kill(self._proc.pid, signal.SIGWINCH)
            except ProcessLookupError:
                pass

    async def close(self) -> None:
        """Terminate the process without firing the exit callback."""
        if self._state != ProcessState.RUNNING:
            return

        self._state = ProcessState.CLOSING
        self._stop_watching()
        if self._exit_task is not None and not self._exit_task.done():
            self._exit_task.cancel()

        if self._proc is not None and self._proc.poll() is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                logger.debug("Process already gone: %d", self._proc.pid)
            if await self._reap() is None:
                logger.warning("PTY process %d ignored SIGTERM, killing", self._proc.pid)
                self._proc.kill()
                await self._reap()

        self._close_fd()
        self._state = ProcessState.CLOSED

    def _stop_watching(self) -> None:
        if self._master_fd < 0 or self._loop is None:
            return
        if self._reading:
            self._loop.remove_reader(self._master_fd)
            self._reading = False
        if self._writing:
            self._loop.remove_writer(self._master_fd)
            self._writing = False
        self._outbox.clear()

    def _close_fd(self) -> None:
        if self._master_fd < 0:
            return
        self._stop_watching()
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = -1

    @property
    def alive(self) -> bool:
        return self._state == ProcessState.RUNNING

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None
