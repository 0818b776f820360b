"""Error types raised by stores and the sync shim."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .sync.shim import PendingWrite


class StoreError(Exception):
    """Base class for store errors."""

    pass


class ValidationError(StoreError):
    """Input is missing or malformed. Raised before any mutation."""

    pass


class NotFound(StoreError):
    """Referenced comment or guest does not exist."""

    pass


class Conflict(StoreError):
    """A guest with the same slug already exists."""

    pass


class StorageError(StoreError):
    """Underlying read or write failed (I/O, permissions, corruption, network)."""

    pass


class OfflineDeferred(StoreError):
    """The write was queued instead of applied.

    Not a failure: the sync shim hands this back inside a WriteOutcome so the
    caller knows the value it got is a placeholder.
    """

    def __init__(self, pending: "PendingWrite", reason: str = ""):
        super().__init__(f"Queued {pending.operation} as {pending.id}: {reason}")
        self.pending = pending
        self.reason = reason

    @property
    def placeholder_id(self) -> str:
        return self.pending.id
