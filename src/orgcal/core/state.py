"""Key-value state store used for all local persistence.

The engine treats persistence as a flat, synchronous, always-available map
from string keys to JSON-serialisable values.  Hosts plug in their own
backend by implementing :class:`StateStore`; two reference backends ship here:

- :class:`MemoryStateStore` for tests and ephemeral sessions.
- :class:`JsonFileStateStore`, a single JSON document on disk written
  atomically on every ``set``.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class StateStore(Protocol):
    """Minimal persistence interface consumed by the engine."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...


def decode_json_value(val: Any) -> Any:
    """Decode a stored value, handling potential double-encoding.

    Browser-era stores kept everything as JSON text, so a value may arrive as a
    string holding JSON, occasionally twice encoded.
    """
    if not isinstance(val, str):
        return val
    try:
        val = json.loads(val)
    except (json.JSONDecodeError, ValueError):
        return val
    if isinstance(val, str):
        logger.warning("Double-encoded state value detected; applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


def state_get(store: StateStore, key: str) -> Any | None:
    """Return the decoded value for *key*, or ``None`` if the key does not exist."""
    value = store.get(key)
    if value is None:
        return None
    return decode_json_value(value)


def state_set(store: StateStore, key: str, value: Any) -> None:
    """Store *value* (any JSON-serialisable type) under *key*.

    Values are round-tripped through ``json`` first so a non-serialisable value
    fails here rather than inside a backend.
    """
    store.set(key, json.loads(json.dumps(value)))


def state_get_list(store: StateStore, key: str) -> list[Any]:
    """Return the list stored under *key*; a missing or wrongly-shaped value is empty."""
    value = state_get(store, key)
    if value is None:
        return []
    if not isinstance(value, list):
        logger.warning("Ignoring state value for %r: expected a list, got %s", key, type(value))
        return []
    return value


class MemoryStateStore:
    """In-process dict-backed store."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Any | None:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def snapshot(self) -> dict[str, Any]:
        return dict(self._data)


class JsonFileStateStore:
    """Store every key in one JSON document on disk.

    The whole document is rewritten on each ``set`` through a temporary file
    and ``os.replace`` so a crash never leaves a half-written file behind.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._data: dict[str, Any] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("State file %s is unreadable, starting empty: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            logger.warning("State file %s does not hold a JSON object, starting empty", self._path)
            return {}
        return payload

    def get(self, key: str) -> Any | None:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(self._data, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
