"""
Unread counters and per-conversation read watermarks
"""
import logging
from typing import Callable, Dict, List, Optional

from chatsync.core.config import settings
from chatsync.schemas.chat import Message
from chatsync.services.event_bus import Observable, Subscription
from chatsync.services.local_storage_service import LAST_READ_KEY, LocalStorage
from chatsync.services.remote_store import DocumentSnapshot, DocumentStore, Query, RemoteStoreError
from chatsync.utils.keys import is_virtual
from chatsync.utils.time_utils import from_millis, now_ms

logger = logging.getLogger(__name__)


class ReadWatermarks:
    """
    conversation id -> last read time (epoch ms). Only moves forward, and only
    when a conversation is explicitly opened.
    """

    def __init__(self, local: Optional[LocalStorage] = None, *, clock: Callable[[], int] = now_ms):
        self.local = local
        self._clock = clock
        self._marks: Dict[str, int] = {}

    def get(self, conversation_id: str) -> int:
        return self._marks.get(conversation_id, 0)

    def mark_read(self, conversation_id: str, at_ms: Optional[int] = None) -> int:
        if not conversation_id or is_virtual(conversation_id):
            raise ValueError("Cannot mark a virtual conversation as read")
        at_ms = self._clock() if at_ms is None else at_ms
        if at_ms > self._marks.get(conversation_id, 0):
            self._marks[conversation_id] = at_ms
            if self.local is not None:
                self.local.set_background(LAST_READ_KEY, dict(self._marks))
        return self._marks.get(conversation_id, 0)

    async def load(self) -> int:
        if self.local is None:
            return 0
        raw = await self.local.get(LAST_READ_KEY, {}) or {}
        for cid, at_ms in raw.items():
            if isinstance(at_ms, int) and at_ms > self._marks.get(cid, 0):
                self._marks[cid] = at_ms
        return len(self._marks)

    def clear(self) -> None:
        self._marks.clear()


class UnreadCounter(Observable):
    """Live count of messages newer than the watermark, excluding the viewer's own."""

    def __init__(
        self,
        store: DocumentStore,
        conversation_id: str,
        viewer_id: str,
        watermark_ms: int = 0,
    ):
        if not conversation_id or is_virtual(conversation_id):
            raise ValueError(f"Unread counters need a real conversation, got '{conversation_id}'")
        super().__init__()
        self.store = store
        self.conversation_id = conversation_id
        self.viewer_id = viewer_id
        self.watermark_ms = watermark_ms
        self.count = 0
        self._subscription: Optional[Subscription] = None

    @property
    def running(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def start(self) -> None:
        self.stop()
        query = (
            Query(f"{settings.CONVERSATIONS_COLLECTION}/{self.conversation_id}/{settings.MESSAGES_SUBCOLLECTION}")
            .where("createdAt", ">", from_millis(self.watermark_ms))
        )
        self._subscription = self.store.listen(query, self._on_next, self._on_error)

    def restart(self, watermark_ms: int) -> None:
        """Re-attach from a newer watermark."""
        self.watermark_ms = watermark_ms
        self.start()

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def _on_next(self, snapshots: List[DocumentSnapshot]) -> None:
        messages = [Message.from_document(s, self.conversation_id) for s in snapshots]
        count = sum(1 for m in messages if m.sender_id != self.viewer_id)
        if count != self.count:
            self.count = count
            self._emit()

    def _on_error(self, error: RemoteStoreError) -> None:
        logger.warning(f"Unread counter for {self.conversation_id} failed: {error}")
        self.count = 0
        self._emit()
