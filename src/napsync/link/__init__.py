"""Reliable peer-to-peer messaging over an unreliable byte transport.

Modules:
    transport -- Transport interface and the in-memory loopback pair
    channel   -- LinkChannel: sequencing, Ack/retry, ordering, heartbeat
"""

from napsync.link.transport import Transport, LoopbackTransport
from napsync.link.channel import (
    LinkChannel,
    LinkState,
    LinkStats,
    LinkStatus,
    PendingMessage,
)

__all__ = [
    # transport
    "Transport",
    "LoopbackTransport",
    # channel
    "LinkChannel",
    "LinkState",
    "LinkStats",
    "LinkStatus",
    "PendingMessage",
]
