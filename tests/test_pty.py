"""Tests for termrelay.pty.process and termrelay.pty.backend."""

from __future__ import annotations

import asyncio

import pytest

from termrelay.catalog import CatalogEntry, JsonCatalogStore
from termrelay.config import BackendConfig
from termrelay.errors import BackendUnavailable
from termrelay.pty.backend import TerminalIO, TmuxBackend
from termrelay.pty.process import ProcessState, PtyProcess


# ---------------------------------------------------------------------------
# PtyProcess
# ---------------------------------------------------------------------------


class TestPtyProcess:
    async def test_output_and_exit_code(self) -> None:
        proc = PtyProcess(command=["/bin/sh", "-c", "printf hello; sleep 0.2; exit 3"], cwd="/tmp")
        output: list[bytes] = []
        codes: list[int | None] = []
        done = asyncio.Event()

        def on_exit(code: int | None) -> None:
            codes.append(code)
            done.set()

        await proc.start(output.append, on_exit)
        assert proc.alive
        assert proc.pid is not None
        await asyncio.wait_for(done.wait(), timeout=5)

        assert b"hello" in b"".join(output)
        assert codes == [3]
        assert proc.state == ProcessState.EXITED
        assert not proc.alive

    async def test_input_echoed(self) -> None:
        proc = PtyProcess(command=["/bin/sh", "-c", "read line; echo got:$line"], cwd="/tmp")
        output: list[bytes] = []
        done = asyncio.Event()
        await proc.start(output.append, lambda code: done.set())
        proc.write(b"abc\n")
        await asyncio.wait_for(done.wait(), timeout=5)
        assert b"got:abc" in b"".join(output)

    async def test_close_does_not_fire_exit(self) -> None:
        proc = PtyProcess(command=["sleep", "30"], cwd="/tmp")
        codes: list[int | None] = []
        await proc.start(lambda data: None, codes.append)
        await proc.close()
        await proc.close()
        await asyncio.sleep(0.1)
        assert codes == []
        assert proc.state == ProcessState.CLOSED
        # Writes and resizes after close are ignored
        proc.write(b"x")
        proc.resize(10, 10)

    async def test_resize(self) -> None:
        proc = PtyProcess(command=["sleep", "30"], cwd="/tmp", cols=80, rows=24)
        await proc.start(lambda data: None, lambda code: None)
        proc.resize(120, 40)
        assert (proc.cols, proc.rows) == (120, 40)
        await proc.close()

    async def test_idle_processes_hold_no_executor_threads(self, tmp_path) -> None:
        path = tmp_path / "catalog.json"
        store = JsonCatalogStore(path)
        await store.save_session(CatalogEntry(id="a", name="one"))

        procs = [PtyProcess(command=["cat"], cwd="/tmp") for _ in range(40)]
        for proc in procs:
            await proc.start(lambda data: None, lambda code: None)
        try:
            listed = await asyncio.wait_for(store.list_catalog_sessions(), timeout=5)
            assert [e.id for e in listed] == ["a"]
            # The newest process still gets its output through
            output: list[bytes] = []
            last = PtyProcess(command=["/bin/sh", "-c", "printf ready; sleep 30"], cwd="/tmp")
            await last.start(output.append, lambda code: None)
            procs.append(last)
            for _ in range(500):
                if b"ready" in b"".join(output):
                    break
                await asyncio.sleep(0.01)
            assert b"ready" in b"".join(output)
        finally:
            await asyncio.gather(*(proc.close() for proc in procs))

    async def test_close_does_not_block_the_loop(self) -> None:
        proc = PtyProcess(command=["/bin/sh", "-c", "trap '' TERM; sleep 5"], cwd="/tmp")
        await proc.start(lambda data: None, lambda code: None)
        await asyncio.sleep(0.1)

        ticks = 0

        async def ticker() -> None:
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.05)

        ticking = asyncio.create_task(ticker())
        await proc.close()
        ticking.cancel()
        # SIGTERM is ignored, so close waits out the reap timeout before killing
        assert ticks > 10
        assert proc.state == ProcessState.CLOSED

    async def test_large_write_is_flushed(self) -> None:
        proc = PtyProcess(command=["/bin/sh", "-c", "stty -echo; wc -c"], cwd="/tmp")
        output: list[bytes] = []
        done = asyncio.Event()
        await proc.start(output.append, lambda code: done.set())
        await asyncio.sleep(0.2)
        line = b"x" * 99 + b"\n"
        proc.write(line * 2000)
        proc.write(b"\x04")
        await asyncio.wait_for(done.wait(), timeout=10)
        assert b"200000" in b"".join(output)

    async def test_missing_executable(self) -> None:
        proc = PtyProcess(command=["/nonexistent/program"], cwd="/tmp")
        with pytest.raises(OSError):
            await proc.start(lambda data: None, lambda code: None)
        assert proc.state == ProcessState.CREATED

    def test_satisfies_terminal_io(self) -> None:
        assert isinstance(PtyProcess(command=["true"]), TerminalIO)


# ---------------------------------------------------------------------------
# TmuxBackend
# ---------------------------------------------------------------------------


class RecordingTmux(TmuxBackend):
    def __init__(self, results: dict[str, tuple[int, str]] | None = None) -> None:
        super().__init__(BackendConfig())
        self.calls: list[tuple[str, ...]] = []
        self.results = results or {}

    async def _tmux(self, *args: str) -> tuple[int, str]:
        self.calls.append(args)
        return self.results.get(args[0], (0, ""))


class TestTmuxBackend:
    def test_session_name(self) -> None:
        assert TmuxBackend().session_name("abc") == "ws-abc"

    async def test_create_detached(self) -> None:
        tmux = RecordingTmux()
        await tmux.create_detached("abc", "/work", 200, 50, ["claude", "--continue"])
        assert tmux.calls == [
            (
                "new-session", "-d", "-s", "ws-abc", "-x", "200", "-y", "50",
                "-c", "/work", "claude", "--continue",
            )
        ]

    async def test_create_failure(self) -> None:
        tmux = RecordingTmux({"new-session": (1, "duplicate session: ws-abc")})
        with pytest.raises(BackendUnavailable, match="duplicate session"):
            await tmux.create_detached("abc", "/work", 200, 50, ["claude"])

    async def test_probe(self) -> None:
        assert await RecordingTmux().probe_exists("abc")
        assert not await RecordingTmux({"has-session": (1, "can't find")}).probe_exists("abc")

    async def test_attach_builds_pty_client(self) -> None:
        io = await RecordingTmux().attach("abc", "/definitely/not/here", 90, 30)
        assert isinstance(io, PtyProcess)
        assert io.command == ["tmux", "attach-session", "-t", "ws-abc"]
        assert (io.cols, io.rows) == (90, 30)
        assert io.cwd != "/definitely/not/here"

    async def test_resize_window(self) -> None:
        tmux = RecordingTmux()
        await tmux.resize_window("abc", 100, 40)
        assert tmux.calls == [("resize-window", "-t", "ws-abc", "-x", "100", "-y", "40")]

    async def test_kill_tolerates_missing(self) -> None:
        tmux = RecordingTmux({"kill-session": (1, "can't find session")})
        await tmux.kill("abc")

    async def test_missing_tmux_binary(self) -> None:
        tmux = TmuxBackend(BackendConfig(tmux="/nonexistent/tmux"))
        assert not await tmux.probe_exists("abc")
        with pytest.raises(BackendUnavailable):
            await tmux.create_detached("abc", "/tmp", 80, 24, ["sh"])
