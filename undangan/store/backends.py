"""Document backends: where DocumentStore keeps its three JSON documents."""

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from ..errors import StorageError

logger = logging.getLogger(__name__)

DOCUMENT_KEYS = ("comments", "guests", "settings")


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file beside path, then rename over it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def read_json(path: Path) -> Any | None:
    """Read a JSON file; None if it does not exist."""
    if not path.exists():
        return None
    with open(path, encoding="utf-8") as f:
        return json.load(f)


class DocumentBackend(ABC):
    """Loads and saves whole documents by key."""

    name = "backend"

    @abstractmethod
    def load(self, key: str) -> dict[str, Any] | None:
        """Return the document, or None if it was never written.

        Raises:
            StorageError: The document exists but cannot be read or parsed.
        """

    @abstractmethod
    def save(self, key: str, document: dict[str, Any]) -> None:
        """Replace the document.

        Raises:
            StorageError: The write failed; the previous document is intact.
        """

    def is_available(self) -> bool:
        return True


class FileBackend(DocumentBackend):
    """One JSON file per document: comments.json, guests.json, settings.json."""

    name = "file"

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir).expanduser()

    def path_for(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def load(self, key: str) -> dict[str, Any] | None:
        path = self.path_for(key)
        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            raise StorageError(f"Error reading {path}: {e}") from e
        if data is not None and not isinstance(data, dict):
            raise StorageError(f"Error reading {path}: expected an object")
        return data

    def save(self, key: str, document: dict[str, Any]) -> None:
        path = self.path_for(key)
        try:
            write_json_atomic(path, document)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Error writing {path}: {e}") from e

    def is_available(self) -> bool:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(self.data_dir, os.W_OK)


class CacheBackend(DocumentBackend):
    """Local cache holding all documents under ``json_<key>`` entries.

    With a path the cache is a single JSON file; without one it lives in
    memory only.
    """

    name = "cache"
    KEY_PREFIX = "json_"

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path).expanduser() if path else None
        self._memory: dict[str, Any] = {}
        # Collections lock independently but share this one file
        self._lock = threading.Lock()

    def _read_all(self) -> dict[str, Any]:
        if self.path is None:
            return self._memory
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as e:
            raise StorageError(f"Error reading cache {self.path}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StorageError(f"Error reading cache {self.path}: expected an object")
        return data

    def load(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._read_all().get(self.KEY_PREFIX + key)
        if entry is None:
            return None
        if not isinstance(entry, dict):
            raise StorageError(f"Cache entry {key} is not an object")
        return copy.deepcopy(entry)

    def save(self, key: str, document: dict[str, Any]) -> None:
        with self._lock:
            if self.path is None:
                self._memory[self.KEY_PREFIX + key] = copy.deepcopy(document)
                return

            data = self._read_all()
            data[self.KEY_PREFIX + key] = document
            try:
                write_json_atomic(self.path, data)
            except (OSError, TypeError, ValueError) as e:
                raise StorageError(f"Error writing cache {self.path}: {e}") from e
