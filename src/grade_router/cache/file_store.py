"""
JSON file persistent cache store.

Layout:
    {base_dir}/
    ├── ab/
    │   └── ab3f...e1.json    # One CacheEntry per fingerprint
    └── .store.lock

Entries are written to a temp file and renamed into place, so a reader
never sees a partial document. File I/O runs in a worker thread to keep
the event loop free.
"""

import asyncio
import fcntl
import json
import os
from pathlib import Path
from typing import Optional

from loguru import logger

from grade_router.core.exceptions import CacheError
from grade_router.core.interfaces import PersistentCacheStore
from grade_router.core.models import CacheEntry


class JsonFileCacheStore(PersistentCacheStore):
    """Durable cache store backed by one JSON file per fingerprint."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, fingerprint: str) -> Path:
        if not fingerprint or not all(c in "0123456789abcdef" for c in fingerprint):
            raise CacheError("Invalid fingerprint", {"fingerprint": fingerprint})
        return self.base_dir / fingerprint[:2] / f"{fingerprint}.json"

    async def get(self, fingerprint: str) -> Optional[CacheEntry]:
        return await asyncio.to_thread(self._read, fingerprint)

    async def put(self, fingerprint: str, entry: CacheEntry) -> None:
        await asyncio.to_thread(self._write, fingerprint, entry)

    async def delete(self, fingerprint: str) -> bool:
        return await asyncio.to_thread(self._delete, fingerprint)

    def count(self) -> int:
        return sum(1 for _ in self.base_dir.glob("*/*.json"))

    # ==================== JSON HELPERS ====================

    def _read(self, fingerprint: str) -> Optional[CacheEntry]:
        """Load an entry, or None if absent."""
        path = self._path(fingerprint)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise CacheError(f"Failed to load cache entry from {path}: {e}")

        try:
            return CacheEntry(**data)
        except Exception as e:
            raise CacheError(f"Cache entry validation failed: {e}", {"file": str(path)})

    def _write(self, fingerprint: str, entry: CacheEntry) -> None:
        """Save an entry atomically (write to temp, then rename)."""
        path = self._path(fingerprint)
        path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self.base_dir / ".store.lock"

        lock_fd = None
        try:
            lock_fd = os.open(str(lock_path), os.O_CREAT | os.O_WRONLY, 0o644)
            fcntl.flock(lock_fd, fcntl.LOCK_EX)
            try:
                temp_file = path.with_suffix('.tmp')
                with open(temp_file, 'w', encoding='utf-8') as f:
                    json.dump(entry.model_dump(mode='json'), f, ensure_ascii=False)
                    f.flush()
                    os.fsync(f.fileno())
                temp_file.replace(path)  # Atomic on POSIX
            finally:
                fcntl.flock(lock_fd, fcntl.LOCK_UN)
        except OSError as e:
            raise CacheError(f"Failed to write cache entry to {path}: {e}")
        finally:
            if lock_fd is not None:
                os.close(lock_fd)

        logger.debug(f"Persisted cache entry {fingerprint[:16]}")

    def _delete(self, fingerprint: str) -> bool:
        path = self._path(fingerprint)
        if not path.exists():
            return False
        path.unlink()
        return True
