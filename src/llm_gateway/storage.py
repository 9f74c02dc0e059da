"""Durable key-value storage for gateway state.

The gateway persists three things across restarts: the last good catalog
snapshot, the sticky selection map and the OpenAI endpoint-preference cache.
Each key is stored as one JSON document.

Example:
    >>> store = JsonFileStore("~/.llm-gateway/state")
    >>> store.set("sticky_map", {"code_writing": {...}})
    >>> store.get("sticky_map")
"""

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union, runtime_checkable

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal key-value store holding JSON-serializable values."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryStore:
    """In-process store, used in tests and when persistence is disabled."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        # Round-trip through JSON so callers get the same guarantees as on disk.
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """One JSON file per key under a directory.

    Writes go to a temporary file in the same directory followed by
    ``os.replace``, so readers never observe a half-written document.
    Unreadable files are logged and treated as missing.
    """

    def __init__(self, directory: Union[str, Path]):
        self._directory = Path(os.path.expanduser(str(directory)))
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"invalid store key: {key!r}")
        return self._directory / f"{key}.json"

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", path, e)
            return None

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        payload = json.dumps(value, indent=2, sort_keys=True)
        with self._lock:
            self._directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self._directory), prefix=f".{key}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(payload)
                os.replace(tmp_path, path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        logger.debug("Persisted %s to %s", key, path)

    def delete(self, key: str) -> None:
        path = self._path(key)
        with self._lock:
            if path.exists():
                path.unlink()
