"""Client side of the relay: admin API access and resilient streaming."""

from termrelay.client.admin import AdminClient
from termrelay.client.backoff import ReconnectBackoff
from termrelay.client.stream import RelayStreamClient
from termrelay.session.frames import encode_resize

__all__ = [
    "AdminClient",
    "ReconnectBackoff",
    "RelayStreamClient",
    "encode_resize",
]
