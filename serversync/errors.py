"""
ServerSync Errors

Failure taxonomy for the synchronization core. Transport errors are
raised only after the owning client exhausted its retry budget.
"""

from __future__ import annotations

from typing import Optional


class ServerSyncError(Exception):
    """Base class for all synchronization errors."""


class CacheUnavailable(ServerSyncError):
    """The shared cache could not be reached within the retry budget."""

    def __init__(self, operation: str, key: Optional[str] = None) -> None:
        self.operation = operation
        self.key = key
        target = f" {key!r}" if key else ""
        super().__init__(f"cache unavailable during {operation}{target}")


class BusUnavailable(ServerSyncError):
    """The event bus could not be reached within the retry budget."""

    def __init__(self, operation: str, topic: Optional[str] = None) -> None:
        self.operation = operation
        self.topic = topic
        target = f" on {topic!r}" if topic else ""
        super().__init__(f"bus unavailable during {operation}{target}")


class DesyncDetected(ServerSyncError):
    """A sequence gap was observed for a server; recovered by resync."""

    def __init__(self, server_id: str, expected: int, received: int) -> None:
        self.server_id = server_id
        self.expected = expected
        self.received = received
        super().__init__(
            f"sequence gap for {server_id!r}: expected {expected}, got {received}"
        )


class MalformedEvent(ServerSyncError):
    """A bus payload could not be decoded into a ChangeEvent."""


class DuplicateServerId(ServerSyncError):
    """Another live instance already owns the announced server id."""

    def __init__(self, server_id: str, owner: str) -> None:
        self.server_id = server_id
        self.owner = owner
        super().__init__(f"server id {server_id!r} is already owned by {owner!r}")


class InvalidTransition(ServerSyncError):
    """A status change that the server lifecycle does not allow."""

    def __init__(self, server_id: str, current: str, target: str) -> None:
        self.server_id = server_id
        self.current = current
        self.target = target
        super().__init__(f"{server_id!r} cannot move from {current} to {target}")


class UnknownServer(ServerSyncError, KeyError):
    """A mutation referenced a server this instance does not own."""
