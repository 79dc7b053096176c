from __future__ import annotations

import os
from functools import lru_cache

from bookinggate.storage.base import StorageBackend
from bookinggate.storage.sqlite_impl import SQLiteStorageBackend


@lru_cache(maxsize=1)
def get_storage_backend() -> StorageBackend:
    backend = (os.getenv("BOOKINGGATE_STORAGE_BACKEND") or "sqlite").strip().lower()
    if backend != "sqlite":
        raise ValueError(f"unsupported storage backend: {backend}")
    return SQLiteStorageBackend()
