"""Offline-first access to a Store.

Queues writes while the store is unreachable and replays them in order
once it comes back.
"""

from .shim import (
    ConnectionState,
    FlushResult,
    FlushStatus,
    PendingWrite,
    SyncShim,
    WriteOutcome,
)

__all__ = [
    "ConnectionState",
    "FlushResult",
    "FlushStatus",
    "PendingWrite",
    "SyncShim",
    "WriteOutcome",
]
