"""
Chat room: live message stream with optimistic sends
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Union

from chatsync.core.config import settings
from chatsync.schemas.chat import Message
from chatsync.services.chat_service import ChatService, preview
from chatsync.services.event_bus import Observable, Subscription
from chatsync.services.head_cache_service import HeadCache
from chatsync.services.notification_service import NotificationCenter
from chatsync.services.remote_store import DocumentSnapshot, RemoteStoreError
from chatsync.utils.keys import is_virtual
from chatsync.utils.time_utils import now_ms

logger = logging.getLogger(__name__)


@dataclass
class PendingMessage:
    """Locally sent message not yet seen in the confirmed stream"""
    temp_id: str
    text: str
    sender_id: str
    created_at: int
    write_confirmed: bool = False
    confirmed_at: Optional[int] = None


class ChatRoom(Observable):
    """
    One open conversation.

    The newest page of messages is live; older pages are fetched on demand.
    Sends show up immediately as pending entries, which are dropped once a
    confirmed message by the same sender with the same text arrives within
    ``RECONCILE_WINDOW_MS`` of the local send time. A confirmed message
    reconciles at most one pending entry.
    """

    def __init__(
        self,
        chat: ChatService,
        heads: HeadCache,
        conversation_id: str,
        user_id: str,
        *,
        notices: Optional[NotificationCenter] = None,
        clock: Callable[[], int] = now_ms,
        page_size: Optional[int] = None,
        window_ms: Optional[int] = None,
        max_pending_age_ms: Optional[int] = None,
    ):
        if not conversation_id or is_virtual(conversation_id):
            raise ValueError(f"Cannot open room for '{conversation_id}'")
        super().__init__()
        self.chat = chat
        self.heads = heads
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.notices = notices
        self._clock = clock
        self.page_size = page_size or settings.MESSAGE_PAGE_SIZE
        self.window_ms = window_ms if window_ms is not None else settings.RECONCILE_WINDOW_MS
        self.max_pending_age_ms = (
            max_pending_age_ms if max_pending_age_ms is not None else settings.PENDING_MAX_AGE_MS
        )

        self.draft = ""
        self.loading = True
        self.has_more = False
        self.error: Optional[str] = None
        self.pending: List[PendingMessage] = []
        self._live: List[DocumentSnapshot] = []
        self._older: List[DocumentSnapshot] = []
        self._claimed: Set[str] = set()
        self._sending = False
        self._loading_more = False
        self._subscription: Optional[Subscription] = None
        self._expiry: Optional[asyncio.TimerHandle] = None

    # ==================== LIFECYCLE ====================

    def open(self) -> "ChatRoom":
        self.close()
        self.loading = True
        self._subscription = self.chat.store.listen(
            self.chat.latest_messages_query(self.conversation_id, self.page_size),
            self._on_next,
            self._on_error,
        )
        return self

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None

    @property
    def is_open(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def sending(self) -> bool:
        return self._sending

    # ==================== READ MODEL ====================

    @property
    def messages(self) -> List[Message]:
        """Confirmed messages, newest first."""
        seen: Dict[str, Message] = {}
        for snapshot in self._live + self._older:
            if snapshot.id not in seen:
                seen[snapshot.id] = Message.from_document(snapshot, self.conversation_id)
        return list(seen.values())

    def timeline(self) -> List[Union[PendingMessage, Message]]:
        """Pending entries (newest first) followed by confirmed messages."""
        return list(self.pending) + self.messages

    # ==================== STREAM ====================

    def _on_next(self, snapshots: List[DocumentSnapshot]) -> None:
        first = self.loading
        # Messages pushed out of the live window stay visible as older history
        current = {s.id for s in snapshots}
        kept = {s.id for s in self._older}
        evicted = [s for s in self._live if s.id not in current and s.id not in kept]
        if evicted:
            self._older = evicted + self._older
        self._live = list(snapshots)
        self.loading = False
        self.error = None
        if first and not self._older:
            self.has_more = len(snapshots) >= self.page_size

        if snapshots:
            newest = Message.from_document(snapshots[0], self.conversation_id)
            self.heads.update(self.conversation_id, preview(newest.text), newest.created_at)

        self.reconcile()
        self._emit()

    def _on_error(self, error: RemoteStoreError) -> None:
        logger.warning(f"Message stream for {self.conversation_id} failed: {error}")
        self.loading = False
        self.error = str(error)
        self._emit()

    async def load_more(self) -> int:
        """Fetch the page before the oldest loaded message. Returns how many arrived."""
        if not self.has_more or self._loading_more:
            return 0
        oldest = (self._older or self._live)[-1:]
        if not oldest:
            return 0

        self._loading_more = True
        try:
            query = self.chat.latest_messages_query(self.conversation_id, self.page_size).start_after(oldest[0])
            docs = await self.chat.store.query(query)
        except RemoteStoreError as e:
            logger.warning(f"Loading older messages for {self.conversation_id} failed: {e}")
            return 0
        finally:
            self._loading_more = False

        self._older.extend(docs)
        self.has_more = len(docs) >= self.page_size
        self.reconcile()
        self._emit()
        return len(docs)

    # ==================== SENDING ====================

    async def send(self, text: Optional[str] = None) -> Optional[str]:
        """
        Send ``text`` (or the current draft). Returns the durable message id,
        or None when nothing was sent.
        """
        body = (self.draft if text is None else text or "").strip()
        if not body or self._sending:
            return None

        self._sending = True
        pending = PendingMessage(
            temp_id=f"temp-{uuid.uuid4().hex}",
            text=body,
            sender_id=self.user_id,
            created_at=self._clock(),
        )
        self.pending.insert(0, pending)
        self.heads.update(self.conversation_id, preview(body), pending.created_at)
        self.draft = ""
        self._emit()

        try:
            message_id = await self.chat.send_message(self.conversation_id, self.user_id, body)
        except Exception as e:
            logger.error(f"Send to {self.conversation_id} failed: {e}")
            self._drop_pending(pending)
            if not self.draft:
                self.draft = body
            if self.notices is not None:
                self.notices.error("Message not sent", str(e))
            self._emit()
            return None
        finally:
            self._sending = False

        pending.write_confirmed = True
        pending.confirmed_at = self._clock()
        self._schedule_expiry()
        self.reconcile()
        self._emit()
        return message_id

    def _drop_pending(self, pending: PendingMessage) -> None:
        self.pending = [p for p in self.pending if p.temp_id != pending.temp_id]

    # ==================== RECONCILIATION ====================

    def reconcile(self) -> int:
        """Drop pending entries that are confirmed or expired. Returns how many were dropped."""
        if not self.pending:
            return 0

        now = self._clock()
        candidates = [
            m for m in self.messages
            if m.id not in self._claimed and m.created_at is not None and m.sender_id == self.user_id
        ]
        kept: List[PendingMessage] = []
        dropped = 0
        # Oldest pending claims first
        for pending in reversed(self.pending):
            match = self._match(pending, candidates)
            if match is not None:
                self._claimed.add(match.id)
                candidates.remove(match)
                dropped += 1
                continue
            if pending.write_confirmed and now - (pending.confirmed_at or now) >= self.max_pending_age_ms:
                logger.debug(f"Dropping unmatched pending {pending.temp_id} in {self.conversation_id}")
                dropped += 1
                continue
            kept.append(pending)

        self.pending = kept[::-1]
        return dropped

    def _match(self, pending: PendingMessage, candidates: List[Message]) -> Optional[Message]:
        best: Optional[Message] = None
        for message in candidates:
            if message.text != pending.text:
                continue
            distance = abs(message.created_at - pending.created_at)
            if distance >= self.window_ms:
                continue
            if best is None or distance < abs(best.created_at - pending.created_at):
                best = message
        return best

    def _schedule_expiry(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
        loop = asyncio.get_running_loop()
        self._expiry = loop.call_later(self.max_pending_age_ms / 1000, self._expire)

    def _expire(self) -> None:
        self._expiry = None
        if self.reconcile():
            self._emit()
        if any(p.write_confirmed for p in self.pending):
            self._schedule_expiry()
