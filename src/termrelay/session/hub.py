"""Broadcast hub — fans session output out to attached observers."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, Protocol, runtime_checkable

from termrelay.errors import NotFound
from termrelay.session.frames import ResizeFrame, parse_client_frame
from termrelay.session.registry import LiveSession, SessionRegistry

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_TRY_AGAIN_LATER = 1013


@runtime_checkable
class ObserverChannel(Protocol):
    """Transport to one connected client."""

    async def send(self, data: bytes) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


class Observer:
    """One attached client: a bounded outbound queue and its sender task.

    The sender task is the only thing that awaits the channel, so a slow
    client stalls its own queue and nothing else.
    """

    def __init__(
        self, session_id: str, channel: ObserverChannel, queue_size: int = 1024
    ) -> None:
        self.id = uuid.uuid4().hex[:8]
        self.session_id = session_id
        self.channel = channel
        self.queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self._task: asyncio.Task | None = None

    def offer(self, data: bytes) -> bool:
        """Queue ``data`` without waiting. False if closed or full."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(data)
        except asyncio.QueueFull:
            return False
        return True

    def start(self, on_failure: Callable[["Observer"], None]) -> None:
        self._task = asyncio.create_task(self._pump(on_failure))

    async def _pump(self, on_failure: Callable[["Observer"], None]) -> None:
        while True:
            data = await self.queue.get()
            try:
                await self.channel.send(data)
            except Exception as e:
                logger.debug("Send to observer %s failed: %s", self.id, e)
                on_failure(self)
                return

    def stop(self) -> None:
        self.closed = True
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

    def __repr__(self) -> str:
        return f"Observer({self.id}, session={self.session_id})"


class BroadcastHub:
    """Attaches observers to sessions and routes their traffic.

    Registration and the scrollback snapshot happen in one synchronous step,
    so every byte a new observer receives is either in its snapshot or
    published after it, never both and never neither.
    """

    def __init__(self, registry: SessionRegistry, queue_size: int = 1024) -> None:
        self._registry = registry
        self._queue_size = queue_size
        self._closing: set[asyncio.Task] = set()
        registry.publish = self.publish
        registry.close_observers = self.close_session

    async def attach(self, session_id: str, channel: ObserverChannel) -> Observer:
        """Register ``channel`` as an observer of ``session_id``.

        Brings the session's process up if it has none. A backend failure
        leaves the observer attached with whatever scrollback exists.

        Raises:
            NotFound: the session does not exist.
        """
        if not await self._registry.ensure_live(session_id):
            logger.warning("Session %s has no process; observer gets replay only", session_id)
        entry = self._registry.live(session_id)
        if entry is None or entry.deleted:
            raise NotFound(session_id)

        observer = Observer(session_id, channel, self._queue_size)
        snapshot = entry.scrollback.snapshot()
        if snapshot:
            observer.offer(snapshot)
        entry.observers.add(observer)
        observer.start(self._on_send_failure)
        logger.info(
            "Observer %s attached to %s (%d observers, %d bytes replayed)",
            observer.id,
            session_id,
            len(entry.observers),
            len(snapshot),
        )
        return observer

    def detach(self, observer: Observer) -> None:
        """Unregister an observer. Idempotent; the session is unaffected."""
        entry = self._registry.live(observer.session_id)
        if entry is not None:
            entry.observers.discard(observer)
        if not observer.closed:
            observer.stop()
            logger.info("Observer %s detached from %s", observer.id, observer.session_id)

    def publish(self, session_id: str, data: bytes) -> None:
        """Deliver ``data`` to every observer of the session, in order."""
        entry = self._registry.live(session_id)
        if entry is None:
            return
        for observer in list(entry.observers):
            if not observer.offer(data):
                logger.warning(
                    "Observer %s of %s is too slow, disconnecting", observer.id, session_id
                )
                self._drop(entry, observer, CLOSE_TRY_AGAIN_LATER, "Observer too slow")

    async def receive(self, observer: Observer, frame: bytes | str) -> None:
        """Handle one inbound frame from an observer."""
        parsed = parse_client_frame(frame)
        if isinstance(parsed, ResizeFrame):
            await self.resize(observer.session_id, parsed.cols, parsed.rows)
        else:
            self.submit_input(observer.session_id, parsed)

    def submit_input(self, session_id: str, data: bytes) -> bool:
        """Forward input exactly once. Dropped while no process is bound."""
        if not self._registry.write_input(session_id, data):
            logger.debug("Input for %s dropped: no process", session_id)
            return False
        return True

    async def resize(self, session_id: str, cols: int, rows: int) -> None:
        await self._registry.resize(session_id, cols, rows)

    def observers(self, session_id: str) -> list[Observer]:
        entry = self._registry.live(session_id)
        return list(entry.observers) if entry is not None else []

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    def _on_send_failure(self, observer: Observer) -> None:
        entry = self._registry.live(observer.session_id)
        if entry is not None:
            entry.observers.discard(observer)
        observer.stop()
        logger.info("Observer %s of %s lost", observer.id, observer.session_id)

    def _drop(
        self, entry: LiveSession, observer: Observer, code: int, reason: str
    ) -> None:
        entry.observers.discard(observer)
        observer.stop()
        task = asyncio.create_task(self._close_channel(observer, code, reason))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_channel(self, observer: Observer, code: int, reason: str) -> None:
        observer.stop()
        try:
            await observer.channel.close(code, reason)
        except Exception as e:
            logger.debug("Closing observer %s failed: %s", observer.id, e)

    async def close_session(self, entry: LiveSession, code: int, reason: str) -> None:
        """Close every observer of one session with ``code``/``reason``."""
        observers = list(entry.observers)
        entry.observers.clear()
        if observers:
            await asyncio.gather(
                *(self._close_channel(o, code, reason) for o in observers)
            )
            logger.info(
                "Closed %d observer(s) of %s: %s", len(observers), entry.id, reason
            )

    async def close_all(
        self, code: int = CLOSE_GOING_AWAY, reason: str = "Server shutting down"
    ) -> None:
        for entry in self._registry.live_sessions():
            await self.close_session(entry, code, reason)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
