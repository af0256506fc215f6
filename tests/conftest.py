"""Shared fakes: an in-memory process backend, terminal, catalog and channel."""

from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from termrelay.catalog import CatalogEntry, CatalogPatch
from termrelay.config import BackendConfig, SessionConfig
from termrelay.errors import BackendUnavailable
from termrelay.pty.bridge import ProcessBridge
from termrelay.session.hub import BroadcastHub
from termrelay.session.registry import SessionRegistry


class FakeTerminal:
    """TerminalIO that records input and lets tests drive output/exit."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.written: list[bytes] = []
        self.sizes: list[tuple[int, int]] = []
        self.started = False
        self.closed = False
        self._on_data: Callable[[bytes], None] | None = None
        self._on_exit: Callable[[int | None], None] | None = None

    async def start(self, on_data, on_exit) -> None:
        self._on_data = on_data
        self._on_exit = on_exit
        self.started = True

    def write(self, data: bytes) -> None:
        if self.closed:
            raise OSError("terminal closed")
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    async def close(self) -> None:
        self.closed = True

    @property
    def alive(self) -> bool:
        return self.started and not self.closed

    # Test drivers

    def emit(self, data: bytes) -> None:
        assert self._on_data is not None
        self._on_data(data)

    def exit(self, code: int | None) -> None:
        assert self._on_exit is not None
        self.closed = True
        self._on_exit(code)


class FakeBackend:
    """ProcessBackend keeping 'sessions' in a set."""

    def __init__(self) -> None:
        self.sessions: set[str] = set()
        self.terminals: dict[str, list[FakeTerminal]] = {}
        self.created: list[tuple[str, str, int, int, list[str]]] = []
        self.windows: list[tuple[str, int, int]] = []
        self.killed: list[str] = []
        self.fail_create = False
        self.fail_attach = False

    async def probe_exists(self, session_id: str) -> bool:
        await asyncio.sleep(0)
        return session_id in self.sessions

    async def create_detached(self, session_id, cwd, cols, rows, program_args) -> None:
        await asyncio.sleep(0)
        if self.fail_create:
            raise BackendUnavailable(session_id, "create failed")
        self.sessions.add(session_id)
        self.created.append((session_id, cwd, cols, rows, list(program_args)))

    async def attach(self, session_id, cwd, cols, rows) -> FakeTerminal:
        await asyncio.sleep(0)
        if self.fail_attach or session_id not in self.sessions:
            raise BackendUnavailable(session_id, "attach failed")
        terminal = FakeTerminal(session_id)
        self.terminals.setdefault(session_id, []).append(terminal)
        return terminal

    async def resize_window(self, session_id, cols, rows) -> None:
        if session_id not in self.sessions:
            raise BackendUnavailable(session_id, "no such session")
        self.windows.append((session_id, cols, rows))

    async def kill(self, session_id: str) -> None:
        self.sessions.discard(session_id)
        self.killed.append(session_id)

    def terminal(self, session_id: str) -> FakeTerminal:
        """Most recently attached terminal of a session."""
        return self.terminals[session_id][-1]


class MemoryCatalogStore:
    """CatalogStore backed by a dict."""

    def __init__(self, entries: list[CatalogEntry] | None = None) -> None:
        self.entries: dict[str, CatalogEntry] = {e.id: e for e in entries or []}

    async def list_catalog_sessions(self, include_archived: bool = False) -> list[CatalogEntry]:
        return [e for e in self.entries.values() if include_archived or not e.archived]

    async def get_session(self, session_id: str) -> CatalogEntry | None:
        return self.entries.get(session_id)

    async def patch_session_meta(
        self, session_id: str, patch: CatalogPatch
    ) -> CatalogEntry | None:
        entry = self.entries.get(session_id)
        if entry is None:
            return None
        self.entries[session_id] = patch.apply(entry)
        return self.entries[session_id]

    async def save_session(self, entry: CatalogEntry) -> None:
        self.entries[entry.id] = entry

    async def remove_session(self, session_id: str) -> None:
        self.entries.pop(session_id, None)


class FakeChannel:
    """ObserverChannel collecting everything sent to it."""

    def __init__(self) -> None:
        self.sent: list[bytes] = []
        self.closed: tuple[int, str] | None = None
        self.fail = False
        self.gate: asyncio.Event | None = None  # when set, sends block on it

    async def send(self, data: bytes) -> None:
        if self.fail:
            raise ConnectionError("peer gone")
        if self.gate is not None:
            await self.gate.wait()
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    @property
    def received(self) -> bytes:
        return b"".join(self.sent)


async def drain(rounds: int = 20) -> None:
    """Let queued tasks (observer senders, attach continuations) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def catalog() -> MemoryCatalogStore:
    return MemoryCatalogStore()


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(
        scrollback_bytes=1024,
        list_cache_ttl=0,
        initial_input_delay=0,
        observer_queue_size=16,
    )


@pytest.fixture
def backend_config() -> BackendConfig:
    return BackendConfig(spawn_settle_delay=0, program=["prog"], resume_args=["--resume"])


@pytest.fixture
def bridge(backend: FakeBackend, backend_config: BackendConfig) -> ProcessBridge:
    return ProcessBridge(backend, backend_config)


@pytest.fixture
def registry(
    bridge: ProcessBridge, catalog: MemoryCatalogStore, session_config: SessionConfig
) -> SessionRegistry:
    return SessionRegistry(bridge, catalog, session_config)


@pytest.fixture
def hub(registry: SessionRegistry, session_config: SessionConfig) -> BroadcastHub:
    return BroadcastHub(registry, queue_size=session_config.observer_queue_size)
