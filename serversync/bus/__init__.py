"""
ServerSync Event Bus

Fleet change events over publish/subscribe.
"""

from serversync.bus.client import BusClient, BusStats
from serversync.bus.codec import decode_event, encode_event, validate_payload
from serversync.bus.transport import (
    BusTransport,
    MemoryBroker,
    MemoryBusTransport,
    RedisBusTransport,
)

__all__ = [
    "BusClient",
    "BusStats",
    "BusTransport",
    "MemoryBroker",
    "MemoryBusTransport",
    "RedisBusTransport",
    "decode_event",
    "encode_event",
    "validate_payload",
]
