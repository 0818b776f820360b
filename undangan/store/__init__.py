"""Stores for comments, guests and settings.

One Store interface, three transports chosen once at startup:
- file: JSON documents in a data directory
- cache: a local cache file (or memory) mirroring the same documents
- remote: the REST API of another undangan server
"""

from ..config import Config
from .backends import CacheBackend, DocumentBackend, FileBackend
from .base import Store
from .document import DocumentStore
from .remote import RemoteStore


def create_store(config: Config) -> Store:
    """Build the store selected by config.storage.backend."""
    backend = config.storage.backend
    limits = {
        "min_name_length": config.comments.min_name_length,
        "min_body_length": config.comments.min_body_length,
    }

    if backend == "file":
        return DocumentStore(
            FileBackend(config.storage.data_dir),
            invitation_base=config.guests.invitation_base,
            **limits,
        )
    if backend == "cache":
        return DocumentStore(
            CacheBackend(config.storage.cache_path),
            invitation_base=config.guests.invitation_base,
            **limits,
        )
    if backend == "remote":
        return RemoteStore(
            config.remote.url,
            max_retries=config.remote.max_retries,
            timeout=config.remote.timeout,
            **limits,
        )
    raise ValueError(f"Unknown storage backend: {backend}")


__all__ = [
    "CacheBackend",
    "DocumentBackend",
    "DocumentStore",
    "FileBackend",
    "RemoteStore",
    "Store",
    "create_store",
]
