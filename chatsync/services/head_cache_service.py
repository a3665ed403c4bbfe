"""
Last-message ("head") cache shared by the conversation list and chat rooms
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from chatsync.services.event_bus import CHAT_HEAD_TOPIC, EventBus
from chatsync.services.local_storage_service import HEADS_CACHE_KEY, LocalStorage
from chatsync.utils.time_utils import now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HeadEntry:
    conversation_id: str
    text: str
    at_ms: int


class HeadCache:
    """
    conversation id -> newest known message, last-write-wins on ``at_ms``.

    Fed by optimistic sends, live latest-message observation and the
    persisted snapshot. Accepted updates are written back in the background
    and published on ``chat.head``.
    """

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        local: Optional[LocalStorage] = None,
        *,
        clock: Callable[[], int] = now_ms,
    ):
        self.bus = bus
        self.local = local
        self._clock = clock
        self._heads: Dict[str, HeadEntry] = {}

    def get(self, conversation_id: str) -> Optional[HeadEntry]:
        return self._heads.get(conversation_id)

    def at(self, conversation_id: str) -> int:
        entry = self._heads.get(conversation_id)
        return entry.at_ms if entry else 0

    def update(self, conversation_id: str, text: str, at_ms: Optional[int]) -> bool:
        """Apply an observation. Older or equal timestamps are ignored."""
        if not conversation_id or at_ms is None:
            return False
        current = self._heads.get(conversation_id)
        if current is not None and at_ms <= current.at_ms:
            return False
        entry = HeadEntry(conversation_id=conversation_id, text=text or "", at_ms=int(at_ms))
        self._heads[conversation_id] = entry
        self._persist()
        if self.bus is not None:
            self.bus.publish(CHAT_HEAD_TOPIC, entry)
        return True

    async def load(self) -> int:
        """Merge the persisted snapshot into memory (LWW). Returns the number of entries applied."""
        if self.local is None:
            return 0
        raw = await self.local.get(HEADS_CACHE_KEY, {}) or {}
        applied = 0
        for cid, value in (raw.get("data") or {}).items():
            if not isinstance(value, dict) or not isinstance(value.get("at"), int):
                continue
            current = self._heads.get(cid)
            if current is not None and value["at"] <= current.at_ms:
                continue
            self._heads[cid] = HeadEntry(conversation_id=cid, text=str(value.get("text") or ""), at_ms=value["at"])
            applied += 1
        return applied

    def clear(self) -> None:
        self._heads.clear()

    def _persist(self) -> None:
        if self.local is None:
            return
        payload = {
            "data": {cid: {"text": e.text, "at": e.at_ms} for cid, e in self._heads.items()},
            "updatedAt": self._clock(),
        }
        self.local.set_background(HEADS_CACHE_KEY, payload)
