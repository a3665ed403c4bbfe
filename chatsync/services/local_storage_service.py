"""
Local persistent key/value storage for client caches
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from sqlalchemy.orm import Session, sessionmaker

from chatsync.models.local_store import KeyValueEntry
from chatsync.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

# Fixed keys
PROFILE_CACHE_KEY = "chat:profileCache:v1"
HEADS_CACHE_KEY = "chat:headsCache:v1"
FAVORITES_KEY = "chat:favorites:v1"
LAST_READ_KEY = "chat:lastRead:v1"


class LocalStorage:
    """
    JSON values under fixed keys, surviving process restarts.

    Reads and writes run in worker threads. ``set_background`` is
    fire-and-forget: the caches built on top are a read acceleration layer
    and a failed write is logged, never raised.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._pending: Set[asyncio.Task] = set()
        self._latest: Dict[str, Any] = {}
        self._writers: Dict[str, asyncio.Task] = {}

    def _read(self, key: str) -> Optional[str]:
        db: Session = self._session_factory()
        try:
            entry = db.get(KeyValueEntry, key)
            return entry.value if entry else None
        finally:
            db.close()

    def _write(self, key: str, raw: str) -> None:
        db: Session = self._session_factory()
        try:
            entry = db.get(KeyValueEntry, key)
            if entry is None:
                db.add(KeyValueEntry(key=key, value=raw))
            else:
                entry.value = raw
                entry.updated_at = utc_now()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _delete(self, key: str) -> None:
        db: Session = self._session_factory()
        try:
            entry = db.get(KeyValueEntry, key)
            if entry is not None:
                db.delete(entry)
                db.commit()
        finally:
            db.close()

    async def get(self, key: str, default: Any = None) -> Any:
        """Load and decode the value under ``key``; corrupt payloads read as ``default``."""
        raw = await asyncio.to_thread(self._read, key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding corrupt local entry '{key}'")
            return default

    async def set(self, key: str, value: Any) -> None:
        raw = json.dumps(value, separators=(",", ":"))
        await asyncio.to_thread(self._write, key, raw)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    def set_background(self, key: str, value: Any) -> None:
        """
        Schedule a write without waiting for it. Writes to one key are
        serialized and coalesced, so the last scheduled value wins.
        """
        self._latest[key] = value
        if key in self._writers:
            return
        task = asyncio.get_running_loop().create_task(self._drain(key))
        self._writers[key] = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _drain(self, key: str) -> None:
        try:
            while key in self._latest:
                value = self._latest.pop(key)
                try:
                    await self.set(key, value)
                except Exception as e:
                    logger.warning(f"Local cache write for '{key}' failed: {e}")
        finally:
            self._writers.pop(key, None)

    async def flush(self) -> None:
        """Wait for scheduled background writes (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
