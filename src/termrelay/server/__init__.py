"""HTTP and WebSocket surface of the relay."""

from termrelay.server.app import WebSocketChannel, create_app

__all__ = ["WebSocketChannel", "create_app"]
