"""Process bridge — owns the live process handle of every session."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from termrelay.config import BackendConfig
from termrelay.errors import BackendUnavailable
from termrelay.pty.backend import ProcessBackend, TerminalIO

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str, int, bytes], None]
ExitCallback = Callable[[str, int, int | None], None]
LiveCallback = Callable[[str, int], None]


class SpawnPhase(enum.Enum):
    """Where a session's process binding currently stands."""

    CREATING = "creating"  # Detached create issued, settling
    ATTACHING = "attaching"  # Attaching an I/O handle
    LIVE = "live"


@dataclass
class ProcessHandle:
    """Live binding of one session to one attached terminal.

    ``generation`` increases every time a session gets a new handle, so
    events from a handle that has since been replaced can be told apart.
    """

    session_id: str
    generation: int
    io: TerminalIO
    started_at: float = field(default_factory=time.time)


class ProcessBridge:
    """Translates relay operations into backend process operations.

    The bridge guarantees:
    - At most one handle per session id at any instant
    - Input and resizes reach a process only through ``write``/``resize``
    - Output and exit events are tagged with the handle generation
    - Spawning is two-phase (detached create, settle, attach) because the
      backend's create returns before the session can be attached
    """

    def __init__(
        self,
        backend: ProcessBackend,
        config: BackendConfig | None = None,
        on_output: OutputCallback | None = None,
        on_exit: ExitCallback | None = None,
        on_live: LiveCallback | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or BackendConfig()
        self.on_output = on_output
        self.on_exit = on_exit
        self.on_live = on_live
        self._handles: dict[str, ProcessHandle] = {}
        self._phases: dict[str, SpawnPhase] = {}
        self._pending: dict[str, asyncio.Task] = {}
        self._generations: dict[str, int] = {}
        self._geometry: dict[str, tuple[int, int]] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def handle(self, session_id: str) -> ProcessHandle | None:
        return self._handles.get(session_id)

    def has_handle(self, session_id: str) -> bool:
        return session_id in self._handles

    def phase(self, session_id: str) -> SpawnPhase | None:
        return self._phases.get(session_id)

    def spawning(self, session_id: str) -> bool:
        """True while a create or attach is in flight."""
        return self._phases.get(session_id) in (
            SpawnPhase.CREATING,
            SpawnPhase.ATTACHING,
        )

    def generation(self, session_id: str) -> int:
        return self._generations.get(session_id, 0)

    def live_ids(self) -> list[str]:
        return list(self._handles)

    # ------------------------------------------------------------------
    # Spawn / reattach
    # ------------------------------------------------------------------

    async def spawn_new(
        self, session_id: str, working_dir: str, resume: bool = False
    ) -> None:
        """Create a detached backend session and schedule the attach.

        Returns once the detached create succeeded; the attach runs after
        ``spawn_settle_delay`` as a separate task (see ``settled``).

        Raises:
            BackendUnavailable: the detached create failed.
        """
        if self.has_handle(session_id) or self.spawning(session_id):
            logger.debug("Spawn skipped for %s: already bound", session_id)
            return

        cols, rows = self._size(session_id)
        program = list(self._config.program)
        if resume:
            program.extend(self._config.resume_args)

        self._phases[session_id] = SpawnPhase.CREATING
        try:
            await self._backend.create_detached(
                session_id, working_dir, cols, rows, program
            )
        except BackendUnavailable:
            self._phases.pop(session_id, None)
            raise
        except OSError as e:
            self._phases.pop(session_id, None)
            raise BackendUnavailable(session_id, str(e)) from e

        if self._phases.get(session_id) is not SpawnPhase.CREATING:
            # Detached or killed while the create was in flight
            return

        logger.info(
            "Created backend session %s (resume=%s), attaching in %.2fs",
            session_id,
            resume,
            self._config.spawn_settle_delay,
        )
        self._pending[session_id] = asyncio.create_task(
            self._settle_then_attach(session_id, working_dir)
        )

    async def _settle_then_attach(self, session_id: str, working_dir: str) -> None:
        try:
            await asyncio.sleep(self._config.spawn_settle_delay)
            self._phases[session_id] = SpawnPhase.ATTACHING
            cols, rows = self._size(session_id)
            io = await self._backend.attach(session_id, working_dir, cols, rows)
            await self._install(session_id, io)
        except asyncio.CancelledError:
            self._phases.pop(session_id, None)
            raise
        except (BackendUnavailable, OSError) as e:
            self._phases.pop(session_id, None)
            logger.error("Attach after spawn failed for %s: %s", session_id, e)
        finally:
            if self._pending.get(session_id) is asyncio.current_task():
                del self._pending[session_id]

    async def settled(self, session_id: str) -> None:
        """Wait for an in-flight settle/attach continuation to finish."""
        task = self._pending.get(session_id)
        if task is not None:
            await asyncio.wait({task})

    async def reattach(self, session_id: str, working_dir: str) -> bool:
        """Attach to an existing backend session, skipping creation.

        Returns False when the backend has no such session.

        Raises:
            BackendUnavailable: the session exists but could not be attached.
        """
        if self.has_handle(session_id) or self.spawning(session_id):
            return True

        try:
            exists = await self._backend.probe_exists(session_id)
        except OSError as e:
            logger.warning("Probe failed for %s: %s", session_id, e)
            return False
        if not exists:
            return False
        if self.has_handle(session_id) or self.spawning(session_id):
            # Another caller bound it while we were probing
            return True

        self._phases[session_id] = SpawnPhase.ATTACHING
        cols, rows = self._size(session_id)
        try:
            io = await self._backend.attach(session_id, working_dir, cols, rows)
            await self._install(session_id, io)
        except (BackendUnavailable, OSError) as e:
            self._phases.pop(session_id, None)
            raise BackendUnavailable(session_id, str(e)) from e
        logger.info("Reattached to backend session %s", session_id)
        return True

    async def _install(self, session_id: str, io: TerminalIO) -> None:
        generation = self._generations.get(session_id, 0) + 1

        def _on_data(data: bytes) -> None:
            self._dispatch_output(session_id, generation, data)

        def _on_exit(exit_code: int | None) -> None:
            self._handle_exit(session_id, generation, exit_code)

        await io.start(_on_data, _on_exit)
        # No suspension between start() and registration: the reader task
        # cannot deliver output before the handle is visible.
        self._generations[session_id] = generation
        self._handles[session_id] = ProcessHandle(
            session_id=session_id, generation=generation, io=io
        )
        self._phases[session_id] = SpawnPhase.LIVE
        if self.on_live is not None:
            self.on_live(session_id, generation)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _dispatch_output(self, session_id: str, generation: int, data: bytes) -> None:
        handle = self._handles.get(session_id)
        if handle is None or handle.generation != generation:
            return
        if self.on_output is not None:
            self.on_output(session_id, generation, data)

    def _handle_exit(
        self, session_id: str, generation: int, exit_code: int | None
    ) -> None:
        handle = self._handles.get(session_id)
        if handle is None or handle.generation != generation:
            return
        del self._handles[session_id]
        self._phases.pop(session_id, None)
        logger.info(
            "Process for session %s exited (code=%s, generation=%d)",
            session_id,
            exit_code,
            generation,
        )
        if self.on_exit is not None:
            self.on_exit(session_id, generation, exit_code)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def write(self, session_id: str, data: bytes) -> bool:
        """Forward raw input. Dropped (returns False) when no handle exists."""
        handle = self._handles.get(session_id)
        if handle is None:
            return False
        try:
            handle.io.write(data)
        except OSError as e:
            logger.warning("Write to session %s failed: %s", session_id, e)
            return False
        return True

    async def resize(self, session_id: str, cols: int, rows: int) -> None:
        """Resize the pty handle and the backend window, independently."""
        self._geometry[session_id] = (cols, rows)
        handle = self._handles.get(session_id)
        if handle is not None:
            try:
                handle.io.resize(cols, rows)
            except OSError as e:
                logger.debug("PTY resize failed for %s: %s", session_id, e)
        try:
            await self._backend.resize_window(session_id, cols, rows)
        except (BackendUnavailable, OSError) as e:
            # May fail if the backend session is gone, that's ok
            logger.debug("Window resize failed for %s: %s", session_id, e)

    def _size(self, session_id: str) -> tuple[int, int]:
        return self._geometry.get(session_id, (self._config.cols, self._config.rows))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def detach(self, session_id: str) -> None:
        """Drop the handle but leave the backend session running."""
        task = self._pending.pop(session_id, None)
        if task is not None:
            task.cancel()
        handle = self._handles.pop(session_id, None)
        self._phases.pop(session_id, None)
        # The handle is already unbound; closing it may take a while
        if handle is not None:
            await handle.io.close()

    async def kill(self, session_id: str) -> None:
        """Tear down the handle and the backend session."""
        await self.detach(session_id)
        self._geometry.pop(session_id, None)
        try:
            await self._backend.kill(session_id)
        except (BackendUnavailable, OSError) as e:
            logger.warning("Backend kill failed for %s: %s", session_id, e)

    async def close(self) -> None:
        """Detach every handle. Called on shutdown; backend sessions persist."""
        pending = list(self._pending.values())
        session_ids = set(self._handles) | set(self._pending)
        await asyncio.gather(*(self.detach(sid) for sid in session_ids))
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("All process handles detached")

    def __len__(self) -> int:
        return len(self._handles)
