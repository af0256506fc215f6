"""Streaming client — keeps one observer connection alive across drops."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from termrelay.client.backoff import ReconnectBackoff
from termrelay.session.frames import encode_resize

logger = logging.getLogger(__name__)

# Close codes after which reconnecting is pointless
FINAL_CLOSE_CODES = frozenset({1000, 4404})
# HTTP statuses for a handshake rejected before accept
FINAL_HTTP_STATUSES = frozenset({403, 404})


class RelayStreamClient:
    """Connects to ``/sessions/{id}/stream`` and reconnects with backoff.

    Every (re)connection replays the session's scrollback first, so a
    consumer that clears its screen on ``on_connect`` sees a consistent view.
    """

    def __init__(
        self,
        url: str,
        on_output: Callable[[bytes], None],
        backoff: ReconnectBackoff | None = None,
        size: Callable[[], tuple[int, int]] | None = None,
        on_connect: Callable[[], None] | None = None,
    ) -> None:
        self.url = url
        self.on_output = on_output
        self.backoff = backoff or ReconnectBackoff()
        self._size = size
        self._on_connect = on_connect
        self._ws: websockets.ClientConnection | None = None
        self._stopped = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def run(self) -> int | None:
        """Stream until stopped or the relay closes for good.

        Returns the final close code (None when stopped locally).
        """
        self._stopped = False
        while not self._stopped:
            code = await self._connect_once()
            if self._stopped:
                # Our own close echoes back as 1000
                break
            if code in FINAL_CLOSE_CODES:
                logger.info("Stream %s closed by relay (code=%s)", self.url, code)
                return code
            delay = self.backoff.next_delay()
            logger.info(
                "Reconnecting to %s in %.1fs (attempt %d)",
                self.url,
                delay,
                self.backoff.attempts,
            )
            await asyncio.sleep(delay)
        return None

    async def _connect_once(self) -> int | None:
        try:
            async with websockets.connect(self.url, max_size=None) as ws:
                self._ws = ws
                self.backoff.reset()
                logger.info("Connected to %s", self.url)
                if self._on_connect is not None:
                    self._on_connect()
                if self._size is not None:
                    await ws.send(encode_resize(*self._size()))
                async for message in ws:
                    if isinstance(message, str):
                        message = message.encode("utf-8")
                    self.on_output(message)
                return ws.close_code
        except InvalidStatus as e:
            status = e.response.status_code
            logger.warning("Stream %s rejected with HTTP %d", self.url, status)
            return 4404 if status in FINAL_HTTP_STATUSES else None
        except ConnectionClosed as e:
            return e.rcvd.code if e.rcvd is not None else None
        except (OSError, WebSocketException) as e:
            logger.warning("Stream %s failed: %s", self.url, e)
            return None
        finally:
            self._ws = None

    async def send_input(self, data: bytes) -> bool:
        """Send keystrokes. Dropped (False) while disconnected."""
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(data)
        except ConnectionClosed:
            return False
        return True

    async def send_resize(self, cols: int, rows: int) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(encode_resize(cols, rows))
        except ConnectionClosed:
            return False
        return True

    async def stop(self) -> None:
        self._stopped = True
        if self._ws is not None:
            await self._ws.close()
