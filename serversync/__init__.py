"""
ServerSync - Fleet State Synchronization

Keeps a fleet of backend game servers and their routing proxy on one
consistent view of server availability and player presence, using a
shared cache as source of truth and a pub/sub bus for change events.
"""

__version__ = "1.0.0"

from serversync.config import SyncConfig, get_default_config
from serversync.errors import (
    BusUnavailable,
    CacheUnavailable,
    DesyncDetected,
    DuplicateServerId,
    InvalidTransition,
    MalformedEvent,
    ServerSyncError,
    UnknownServer,
)
from serversync.node import ServerSyncNode
from serversync.protocol import SyncProtocol, SyncState
from serversync.registry import ApplyOutcome, RegistryListener, ServerRegistry
from serversync.types import (
    ChangeEvent,
    EventType,
    FleetSnapshot,
    ServerRecord,
    ServerStatus,
    SyncPlayer,
)

__all__ = [
    "__version__",
    "ApplyOutcome",
    "BusUnavailable",
    "CacheUnavailable",
    "ChangeEvent",
    "DesyncDetected",
    "DuplicateServerId",
    "EventType",
    "FleetSnapshot",
    "InvalidTransition",
    "MalformedEvent",
    "RegistryListener",
    "ServerRecord",
    "ServerRegistry",
    "ServerStatus",
    "ServerSyncError",
    "ServerSyncNode",
    "SyncConfig",
    "SyncPlayer",
    "SyncProtocol",
    "SyncState",
    "UnknownServer",
    "get_default_config",
]
