"""Undangan - comments, guests and settings for a wedding invitation site."""

__version__ = "0.1.0"

from .config import Config, load_config
from .errors import (
    Conflict,
    NotFound,
    OfflineDeferred,
    StorageError,
    StoreError,
    ValidationError,
)
from .models import Comment, Guest, Page, Presence
from .store import DocumentStore, RemoteStore, Store, create_store
from .sync import SyncShim

__all__ = [
    "Comment",
    "Config",
    "Conflict",
    "DocumentStore",
    "Guest",
    "NotFound",
    "OfflineDeferred",
    "Page",
    "Presence",
    "RemoteStore",
    "StorageError",
    "Store",
    "StoreError",
    "SyncShim",
    "ValidationError",
    "create_store",
    "load_config",
]
