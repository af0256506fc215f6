"""SessionRelay — wires backend, catalog, bridge, registry and hub together."""

from __future__ import annotations

import asyncio
import logging

from termrelay.catalog import CatalogStore, JsonCatalogStore
from termrelay.config import RelayConfig
from termrelay.pty.backend import ProcessBackend, TmuxBackend
from termrelay.pty.bridge import ProcessBridge
from termrelay.session.hub import BroadcastHub
from termrelay.session.registry import SessionRegistry

logger = logging.getLogger(__name__)


class SessionRelay:
    """Owns the relay's components and its periodic status sweep."""

    def __init__(
        self,
        config: RelayConfig | None = None,
        backend: ProcessBackend | None = None,
        catalog: CatalogStore | None = None,
    ) -> None:
        self.config = config or RelayConfig()
        self.backend = backend or TmuxBackend(self.config.backend)
        self.catalog = catalog or JsonCatalogStore(self.config.catalog_path)
        self.bridge = ProcessBridge(self.backend, self.config.backend)
        self.registry = SessionRegistry(self.bridge, self.catalog, self.config.session)
        self.hub = BroadcastHub(
            self.registry, queue_size=self.config.session.observer_queue_size
        )
        self._sweep_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Session relay started (sweep every %.1fs, idle after %.1fs)",
            self.config.session.status_interval,
            self.config.session.idle_timeout,
        )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.session.status_interval)
            try:
                changed = self.registry.sweep()
            except Exception:
                logger.exception("Status sweep failed")
                continue
            if changed:
                logger.debug("Sweep changed %d session(s)", len(changed))

    async def close(self) -> None:
        """Stop sweeping, disconnect observers, detach every process handle.

        Backend sessions keep running and are reattached on next use.
        """
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.hub.close_all(reason="Server shutting down")
        await self.registry.close()
        logger.info("Session relay stopped")

    async def __aenter__(self) -> "SessionRelay":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
