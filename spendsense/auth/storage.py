from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol

from spendsense.auth.util import is_return_path

logger = logging.getLogger(__name__)

RETURN_PATH_KEY = "spendsense.auth.returnTo"


class KeyValueStorage(Protocol):
    """Browser-style key/value storage. Implementations should not raise."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    """Volatile, per-process (tab-scoped) storage."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = str(value)

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


class SafeStorage:
    """
    Wraps any storage so quota errors, disabled storage, etc. become no-ops.
    """

    def __init__(self, inner: Optional[KeyValueStorage]) -> None:
        self._inner = inner

    def get(self, key: str) -> Optional[str]:
        if self._inner is None:
            return None
        try:
            value = self._inner.get(key)
        except Exception as e:
            logger.warning("Storage read failed for %s: %s", key, e)
            return None
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        if self._inner is None:
            return
        try:
            self._inner.set(key, value)
        except Exception as e:
            logger.warning("Storage write failed for %s: %s", key, e)

    def remove(self, key: str) -> None:
        if self._inner is None:
            return
        try:
            self._inner.remove(key)
        except Exception as e:
            logger.warning("Storage remove failed for %s: %s", key, e)


class ReturnPathBackup:
    """
    Fallback transport for the return path, in case the OAuth `state` parameter gets stripped.

    Never authoritative: the callback page consults it only when the state token is unusable.
    """

    def __init__(self, storage: Optional[KeyValueStorage], *, key: str = RETURN_PATH_KEY) -> None:
        self._storage = storage if isinstance(storage, SafeStorage) else SafeStorage(storage)
        self._key = key

    def save(self, path: str) -> None:
        if not is_return_path(path):
            return
        self._storage.set(self._key, path)

    def load(self) -> Optional[str]:
        value = self._storage.get(self._key)
        return value if is_return_path(value) else None

    def clear(self) -> None:
        self._storage.remove(self._key)
