"""Session registry — single source of truth for session existence and state."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Coroutine

from termrelay.catalog import CatalogEntry, CatalogPatch, CatalogStore
from termrelay.config import SessionConfig
from termrelay.errors import BackendUnavailable, InvalidArgument, NotFound
from termrelay.model.session import SessionRecord
from termrelay.pty.bridge import ProcessBridge
from termrelay.pty.buffer import ScrollbackBuffer
from termrelay.session.preview import extract_preview
from termrelay.session.status import Liveness, StatusTracker, heuristic_status

if TYPE_CHECKING:
    from termrelay.session.hub import Observer

logger = logging.getLogger(__name__)

EXIT_NOTICE = "\r\n\x1b[31m[Process exited with code {code}]\x1b[0m\r\n"

PublishHook = Callable[[str, bytes], None]
CloseHook = Callable[["LiveSession", int, str], Awaitable[None]]


@dataclass
class LiveSession:
    """Everything the relay holds in memory for one registered session."""

    record: SessionRecord
    scrollback: ScrollbackBuffer
    liveness: Liveness = field(default_factory=Liveness)
    observers: set[Observer] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: set[asyncio.Task] = field(default_factory=set)  # scheduled continuations
    deleted: bool = False
    base_name: str = ""  # name given at creation; record.name may be a custom name
    custom_name: str | None = None

    def __post_init__(self) -> None:
        if not self.base_name:
            self.base_name = self.record.name

    @property
    def id(self) -> str:
        return self.record.id

    def rename(self, custom_name: str | None) -> None:
        """Set or clear (``None``/empty) the custom display name."""
        self.custom_name = custom_name or None
        self.record.name = self.custom_name or self.base_name


def record_from_catalog(entry: CatalogEntry, now: float | None = None) -> SessionRecord:
    """Build a record for a session known only from the catalog."""
    return SessionRecord(
        id=entry.id,
        name=entry.display_name,
        group=entry.group,
        working_dir=entry.working_dir,
        created_at=entry.created_at,
        last_activity=entry.modified_at,
        status=heuristic_status(entry.modified_at, now),
        pinned=entry.pinned,
        archived=entry.archived,
    )


class SessionRegistry:
    """In-memory table of sessions, merged with the catalog for listing.

    Multi-step operations on one session (spawn, reattach, delete) hold that
    session's lock. Process events and status sweeps mutate records without
    suspending, so they never interleave with each other. Listing never
    waits on a session lock.

    Ids are never reused. Once a delete begins, the id is remembered as
    removed, so a lookup racing with the teardown cannot adopt the session
    back from the catalog.
    """

    def __init__(
        self,
        bridge: ProcessBridge,
        catalog: CatalogStore,
        config: SessionConfig | None = None,
        tracker: StatusTracker | None = None,
    ) -> None:
        self._bridge = bridge
        self._catalog = catalog
        self._config = config or SessionConfig()
        self._tracker = tracker or StatusTracker(idle_timeout=self._config.idle_timeout)
        self._sessions: dict[str, LiveSession] = {}
        self._removed: set[str] = set()
        self._list_cache: dict[bool, tuple[float, list[SessionRecord]]] = {}

        # Wired by the broadcast hub
        self.publish: PublishHook | None = None
        self.close_observers: CloseHook | None = None

        bridge.on_output = self._on_output
        bridge.on_exit = self._on_exit
        bridge.on_live = self._on_live

    @property
    def bridge(self) -> ProcessBridge:
        return self._bridge

    @property
    def tracker(self) -> StatusTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    async def create(
        self,
        name: Any,
        group: Any = None,
        working_dir: Any = None,
        initial_input: Any = None,
    ) -> SessionRecord:
        """Register a new session and spawn its process.

        Raises:
            InvalidArgument: a field is malformed. Nothing is registered.
        """
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgument("name", "is required")
        for field_name, value in (
            ("group", group),
            ("workingDir", working_dir),
            ("message", initial_input),
        ):
            if value is not None and not isinstance(value, str):
                raise InvalidArgument(field_name, "must be a string")

        cwd = os.path.expanduser(
            working_dir or self._config.default_working_dir or "~"
        )
        record = SessionRecord(name=name.strip(), group=group or None, working_dir=cwd)
        entry = LiveSession(
            record=record, scrollback=ScrollbackBuffer(self._config.scrollback_bytes)
        )
        self._sessions[record.id] = entry
        self._invalidate()
        logger.info("Created session %s (%s) in %s", record.id, record.name, cwd)

        await self._persist(entry)
        async with entry.lock:
            if not entry.deleted:
                await self._spawn(entry)
        if initial_input and not entry.deleted:
            self._schedule(entry, self._type_initial_input(entry, initial_input))
        return record.copy()

    async def get(self, session_id: str) -> SessionRecord:
        """Return a copy of the session's record.

        Raises:
            NotFound: neither live nor in the catalog.
        """
        entry = self._sessions.get(session_id)
        if entry is not None:
            return entry.record.copy()
        if session_id in self._removed:
            raise NotFound(session_id)
        catalog_entry = await self._catalog_get(session_id)
        if catalog_entry is None or session_id in self._removed:
            raise NotFound(session_id)
        return record_from_catalog(catalog_entry)

    async def list(self, include_archived: bool = False) -> list[SessionRecord]:
        """Merged catalog + live sessions, pinned first, then most recent."""
        cached = self._list_cache.get(include_archived)
        if cached is not None and time.monotonic() - cached[0] < self._config.list_cache_ttl:
            return [r.copy() for r in cached[1]]

        now = time.time()
        merged: dict[str, SessionRecord] = {}
        for catalog_entry in await self._catalog_list():
            if catalog_entry.id not in self._removed:
                merged[catalog_entry.id] = record_from_catalog(catalog_entry, now)
        # Live entries win on every field
        for session_id, entry in list(self._sessions.items()):
            merged[session_id] = entry.record.copy()

        records = [r for r in merged.values() if include_archived or not r.archived]
        records.sort(key=lambda r: (not r.pinned, -r.last_activity))
        self._list_cache[include_archived] = (time.monotonic(), records)
        return [r.copy() for r in records]

    async def delete(self, session_id: str) -> None:
        """Kill the process, close observers, drop the buffer and the record.

        Raises:
            NotFound: the session does not exist.
        """
        if session_id in self._removed:
            raise NotFound(session_id)
        entry = self._sessions.get(session_id)
        if entry is None:
            if await self._catalog_get(session_id) is None or session_id in self._removed:
                raise NotFound(session_id)
            # An attach may have adopted it while we looked it up
            entry = self._sessions.get(session_id)
        if entry is None:
            # Known only to the catalog; its backend session may still exist
            self._removed.add(session_id)
            self._invalidate()
            await self._bridge.kill(session_id)
            await self._catalog_remove(session_id)
            logger.info("Deleted catalog session %s", session_id)
            return

        async with entry.lock:
            if entry.deleted:
                raise NotFound(session_id)
            entry.deleted = True
            self._removed.add(session_id)
            del self._sessions[session_id]
            self._invalidate()
            for task in list(entry.tasks):
                task.cancel()
            await self._bridge.kill(session_id)
            if self.close_observers is not None:
                await self.close_observers(entry, 1000, "Session deleted")
            entry.scrollback.clear()
        await self._catalog_remove(session_id)
        logger.info("Deleted session %s", session_id)

    async def patch_meta(self, session_id: str, patch: CatalogPatch) -> SessionRecord:
        """Update display metadata in the catalog and the live record.

        Raises:
            NotFound: the session does not exist.
        """
        if session_id in self._removed:
            raise NotFound(session_id)
        entry = self._sessions.get(session_id)
        try:
            updated = await self._catalog.patch_session_meta(session_id, patch)
        except Exception:
            logger.exception("Catalog patch failed for %s", session_id)
            updated = None
        if session_id in self._removed or (entry is None and updated is None):
            raise NotFound(session_id)
        self._invalidate()

        if entry is None:
            return record_from_catalog(updated)
        record = entry.record
        if patch.custom_name is not None:
            # Empty clears it and restores the creation name
            entry.rename(patch.custom_name)
        if patch.project is not None:
            record.group = patch.project or None
        if patch.pinned is not None:
            record.pinned = patch.pinned
        if patch.archived is not None:
            record.archived = patch.archived
        return record.copy()

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def live(self, session_id: str) -> LiveSession | None:
        return self._sessions.get(session_id)

    def live_sessions(self) -> list[LiveSession]:
        return list(self._sessions.values())

    async def ensure_registered(self, session_id: str) -> LiveSession:
        """Return the live entry, adopting a catalog-only session if needed.

        Raises:
            NotFound: the session does not exist or is being deleted.
        """
        entry = self._sessions.get(session_id)
        if entry is not None:
            return entry
        if session_id in self._removed:
            raise NotFound(session_id)
        catalog_entry = await self._catalog_get(session_id)
        if catalog_entry is None or session_id in self._removed:
            raise NotFound(session_id)
        entry = self._sessions.get(session_id)
        if entry is None:
            entry = LiveSession(
                record=record_from_catalog(catalog_entry),
                scrollback=ScrollbackBuffer(self._config.scrollback_bytes),
                base_name=catalog_entry.name,
                custom_name=catalog_entry.custom_name,
            )
            self._sessions[session_id] = entry
            self._invalidate()
            logger.info("Adopted session %s from catalog", session_id)
        return entry

    async def ensure_live(self, session_id: str) -> bool:
        """Reattach or respawn the session's process if it has no handle.

        Concurrent callers are serialized on the session lock, so only the
        first one ever spawns. Returns False when the backend failed.

        Raises:
            NotFound: the session does not exist (or was deleted meanwhile).
        """
        entry = await self.ensure_registered(session_id)
        async with entry.lock:
            if entry.deleted:
                raise NotFound(session_id)
            if self._bridge.has_handle(session_id) or self._bridge.spawning(session_id):
                return True
            try:
                if await self._bridge.reattach(session_id, entry.record.working_dir):
                    return True
            except BackendUnavailable as e:
                logger.error("Reattach failed for %s: %s", session_id, e)
                return False
            return await self._spawn(entry, resume=True)

    async def _spawn(self, entry: LiveSession, resume: bool = False) -> bool:
        try:
            await self._bridge.spawn_new(entry.id, entry.record.working_dir, resume=resume)
        except BackendUnavailable as e:
            logger.error("Spawn failed for %s: %s", entry.id, e)
            return False
        return True

    async def _type_initial_input(self, entry: LiveSession, text: str) -> None:
        await self._bridge.settled(entry.id)
        await asyncio.sleep(self._config.initial_input_delay)
        if not text.endswith("\n"):
            text += "\n"
        if not self.write_input(entry.id, text.encode("utf-8")):
            logger.warning("Initial input for %s dropped: no process", entry.id)

    # ------------------------------------------------------------------
    # I/O routed through the bridge
    # ------------------------------------------------------------------

    def write_input(self, session_id: str, data: bytes) -> bool:
        """Forward input to the process; returns False if it was dropped."""
        entry = self._sessions.get(session_id)
        if entry is None or not self._bridge.write(session_id, data):
            return False
        self._tracker.on_input(entry.record, entry.liveness)
        return True

    async def resize(self, session_id: str, cols: int, rows: int) -> None:
        if session_id in self._sessions:
            await self._bridge.resize(session_id, cols, rows)

    def snapshot(self, session_id: str) -> bytes:
        entry = self._sessions.get(session_id)
        if entry is None:
            raise NotFound(session_id)
        return entry.scrollback.snapshot()

    # ------------------------------------------------------------------
    # Process events
    # ------------------------------------------------------------------

    def _on_live(self, session_id: str, generation: int) -> None:
        entry = self._sessions.get(session_id)
        if entry is None:
            return
        self._tracker.on_live(entry.record, entry.liveness, generation)

    def _on_output(self, session_id: str, generation: int, data: bytes) -> None:
        entry = self._sessions.get(session_id)
        if entry is None:
            return
        self._tracker.on_output(entry.record, entry.liveness, generation)
        preview = extract_preview(data)
        if preview:
            entry.record.preview = preview
        # Scrollback first: no observer may see bytes the window lacks
        entry.scrollback.append(data)
        if self.publish is not None:
            self.publish(session_id, data)

    def _on_exit(self, session_id: str, generation: int, exit_code: int | None) -> None:
        entry = self._sessions.get(session_id)
        if entry is None:
            return
        self._tracker.on_exit(entry.record, entry.liveness, generation, exit_code)
        logger.debug(
            "Session %s last output: %r", session_id, entry.scrollback.read_tail(200)
        )
        notice = EXIT_NOTICE.format(
            code=exit_code if exit_code is not None else "?"
        ).encode()
        entry.scrollback.append(notice)
        if self.publish is not None:
            self.publish(session_id, notice)
        self._invalidate()
        self._schedule(entry, self._persist(entry))

    # ------------------------------------------------------------------
    # Status sweep
    # ------------------------------------------------------------------

    def sweep(self, now: float | None = None) -> list[str]:
        """Run one status sweep over live sessions. Returns changed ids."""
        changed = []
        for session_id, entry in list(self._sessions.items()):
            if self._tracker.sweep_one(
                entry.record,
                entry.liveness,
                has_handle=self._bridge.has_handle(session_id),
                spawning=self._bridge.spawning(session_id),
                now=now,
            ):
                changed.append(session_id)
        if changed:
            self._invalidate()
        return changed

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def _persist(self, entry: LiveSession) -> None:
        record = entry.record
        try:
            await self._catalog.save_session(
                CatalogEntry(
                    id=record.id,
                    name=entry.base_name,
                    custom_name=entry.custom_name,
                    group=record.group,
                    working_dir=record.working_dir,
                    created_at=record.created_at,
                    modified_at=record.last_activity,
                    pinned=record.pinned,
                    archived=record.archived,
                )
            )
        except Exception:
            logger.exception("Failed to save session %s to catalog", record.id)

    async def _catalog_get(self, session_id: str) -> CatalogEntry | None:
        try:
            return await self._catalog.get_session(session_id)
        except Exception:
            logger.exception("Catalog lookup failed for %s", session_id)
            return None

    async def _catalog_list(self) -> list[CatalogEntry]:
        try:
            return await self._catalog.list_catalog_sessions(include_archived=True)
        except Exception:
            logger.exception("Catalog listing failed")
            return []

    async def _catalog_remove(self, session_id: str) -> None:
        try:
            await self._catalog.remove_session(session_id)
        except Exception:
            logger.exception("Failed to remove session %s from catalog", session_id)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def _schedule(self, entry: LiveSession, coro: Coroutine[Any, Any, None]) -> None:
        """Run a fire-and-forget continuation owned by the session."""
        task = asyncio.create_task(coro)
        entry.tasks.add(task)
        task.add_done_callback(entry.tasks.discard)

    def _invalidate(self) -> None:
        self._list_cache.clear()

    async def close(self) -> None:
        """Cancel continuations and detach every process handle."""
        tasks = [t for entry in self._sessions.values() for t in entry.tasks]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._bridge.close()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
