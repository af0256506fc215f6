"""FastAPI application factory: administrative API plus the stream endpoint."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from termrelay.catalog import CatalogStore
from termrelay.config import RelayConfig
from termrelay.errors import InvalidArgument, NotFound
from termrelay.pty.backend import ProcessBackend
from termrelay.server.models import (
    CreateSessionRequest,
    HealthOut,
    OkOut,
    PatchMetaRequest,
    SessionOut,
)
from termrelay.session.relay import SessionRelay

logger = logging.getLogger(__name__)

CLOSE_UNKNOWN_SESSION = 4404


class WebSocketChannel:
    """Observer channel over a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send(self, data: bytes) -> None:
        await self._websocket.send_bytes(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._websocket.close(code=code, reason=reason)


def create_app(
    config: RelayConfig | None = None,
    backend: ProcessBackend | None = None,
    catalog: CatalogStore | None = None,
) -> FastAPI:
    """Create the relay app. ``backend``/``catalog`` override the defaults."""
    relay = SessionRelay(config or RelayConfig(), backend=backend, catalog=catalog)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await relay.start()
        yield
        await relay.close()

    app = FastAPI(title="termrelay", lifespan=lifespan)
    app.state.relay = relay

    @app.exception_handler(NotFound)
    async def not_found(request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(InvalidArgument)
    async def invalid_argument(request: Request, exc: InvalidArgument) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if errors:
            loc = ".".join(str(p) for p in errors[0].get("loc", ()) if p != "body")
            message = f"{loc} {errors[0].get('msg', 'is invalid')}".strip()
        else:
            message = "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    @app.get("/health")
    async def health() -> HealthOut:
        """Simple health check endpoint."""
        return HealthOut(sessions=len(relay.registry))

    @app.post("/sessions", status_code=201, response_model=SessionOut)
    async def create_session(body: CreateSessionRequest) -> SessionOut:
        record = await relay.registry.create(
            body.name,
            group=body.group,
            working_dir=body.working_dir,
            initial_input=body.message,
        )
        return SessionOut.from_record(record)

    @app.get("/sessions", response_model=list[SessionOut])
    async def list_sessions(includeArchived: bool = False) -> list[SessionOut]:  # noqa: N803
        records = await relay.registry.list(include_archived=includeArchived)
        return [SessionOut.from_record(r) for r in records]

    @app.get("/sessions/{session_id}", response_model=SessionOut)
    async def get_session(session_id: str) -> SessionOut:
        return SessionOut.from_record(await relay.registry.get(session_id))

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str) -> OkOut:
        await relay.registry.delete(session_id)
        return OkOut()

    @app.patch("/sessions/{session_id}/meta", response_model=SessionOut)
    async def patch_meta(session_id: str, body: PatchMetaRequest) -> SessionOut:
        record = await relay.registry.patch_meta(session_id, body.to_patch())
        return SessionOut.from_record(record)

    @app.websocket("/sessions/{session_id}/stream")
    async def stream(websocket: WebSocket, session_id: str) -> None:
        """Bidirectional terminal stream for one session."""
        try:
            await relay.registry.ensure_registered(session_id)
        except NotFound:
            await websocket.close(code=CLOSE_UNKNOWN_SESSION)
            return
        await websocket.accept()

        try:
            observer = await relay.hub.attach(session_id, WebSocketChannel(websocket))
        except NotFound:
            # Deleted while we were attaching
            await websocket.close(code=CLOSE_UNKNOWN_SESSION)
            return

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                frame = message.get("bytes")
                if frame is None:
                    frame = message.get("text")
                if frame:
                    await relay.hub.receive(observer, frame)
        except WebSocketDisconnect:
            pass
        except RuntimeError as e:
            # Closed from our side (delete/shutdown) while receiving
            logger.debug("Stream for %s ended: %s", session_id, e)
        finally:
            relay.hub.detach(observer)

    return app
