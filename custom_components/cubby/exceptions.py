"""Exception taxonomy for the Cubby integration.

Defines a small hierarchy of exceptions used by the repository, the move
engine, the backup codec, services and the WebSocket API. These extend Home
Assistant's HomeAssistantError to ensure consistent behavior when surfaced
through the platform.

All exceptions accept a human-readable message. ``str(exception)`` returns the
message unchanged.
"""

from __future__ import annotations

from homeassistant.exceptions import HomeAssistantError


class CubbyError(HomeAssistantError):
    """Base exception for Cubby-related errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(CubbyError):
    """Raised when input payloads fail validation or violate invariants."""


class InvalidNameError(ValidationError):
    """Raised when a name is empty or whitespace-only."""


class DepthExceededError(ValidationError):
    """Raised when a location (or a leaf of a moved subtree) would exceed the depth cap."""


class CycleRejectedError(ValidationError):
    """Raised when a location would be moved into itself or one of its descendants."""


class NotFoundError(CubbyError):
    """Raised when a requested resource does not exist."""


class ConflictError(CubbyError):
    """Raised when an operation conflicts with current state (e.g., duplicate tag name)."""


class StorageError(CubbyError):
    """Raised when storage operations fail or data is corrupted."""


class SnapshotUnavailableError(StorageError):
    """Raised when a backup target or source cannot be reached."""


class SnapshotCorruptError(StorageError):
    """Raised when a backup snapshot fails to decode or validate."""
