"""
Live conversation list for one identity
"""
import asyncio
import logging
import unicodedata
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from chatsync.core.config import settings
from chatsync.schemas.chat import Conversation, Message
from chatsync.schemas.profile import UserProfile
from chatsync.schemas.social import FriendRelationship
from chatsync.services.chat_service import ChatService, NotFriendsError, canonical_conversation, preview
from chatsync.services.event_bus import CHAT_HEAD_TOPIC, EventBus, Observable, Subscription
from chatsync.services.favorites_service import Favorites
from chatsync.services.head_cache_service import HeadCache, HeadEntry
from chatsync.services.notification_service import NotificationCenter
from chatsync.services.profile_service import ProfileCache
from chatsync.services.remote_store import (
    DESCENDING,
    DocumentSnapshot,
    IndexRequiredError,
    Query,
    RemoteStoreError,
)
from chatsync.services.unread_service import ReadWatermarks, UnreadCounter
from chatsync.utils.keys import virtual_id

logger = logging.getLogger(__name__)

TAB_ALL = "all"
TAB_UNREAD = "unread"
TAB_FAVORITES = "favorites"
TABS = (TAB_ALL, TAB_UNREAD, TAB_FAVORITES)


@dataclass(frozen=True)
class ConversationRow:
    """Row of the chat list. Virtual rows stand for friends without a conversation."""
    id: str
    counterpart_id: str
    last_message: Optional[str] = None
    last_message_at: Optional[int] = None
    updated_at: Optional[int] = None
    is_virtual: bool = False

    @property
    def activity_at(self) -> int:
        return self.last_message_at or self.updated_at or 0

    @classmethod
    def from_conversation(cls, conversation: Conversation, counterpart_id: str) -> "ConversationRow":
        return cls(
            id=conversation.id,
            counterpart_id=counterpart_id,
            last_message=conversation.last_message,
            last_message_at=conversation.last_message_at,
            updated_at=conversation.updated_at,
        )

    @classmethod
    def virtual(cls, counterpart_id: str) -> "ConversationRow":
        return cls(id=virtual_id(counterpart_id), counterpart_id=counterpart_id, is_virtual=True)


def fold(text: Optional[str]) -> str:
    """Lower-case and strip accents for search."""
    decomposed = unicodedata.normalize("NFD", text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


class ConversationListSync(Observable):
    """
    Conversations of the current identity merged with virtual rows for
    accepted friends, ordered by recent activity.

    The list query orders by ``updatedAt`` on the server. If the composite
    index is missing, the list switches once to an unordered query sorted
    locally and stays on it for the lifetime of this object.
    """

    def __init__(
        self,
        chat: ChatService,
        profiles: ProfileCache,
        heads: HeadCache,
        watermarks: ReadWatermarks,
        *,
        bus: Optional[EventBus] = None,
        favorites: Optional[Favorites] = None,
        notices: Optional[NotificationCenter] = None,
        limit: Optional[int] = None,
    ):
        super().__init__()
        self.chat = chat
        self.store = chat.store
        self.social = chat.social
        self.profiles = profiles
        self.heads = heads
        self.watermarks = watermarks
        self.bus = bus if bus is not None else heads.bus
        self.favorites = favorites
        self.notices = notices
        self.limit = limit or settings.CONVERSATION_LIST_LIMIT

        self.uid: Optional[str] = None
        self.rows: List[ConversationRow] = []
        self.loading = False
        self.use_unindexed = False

        self._generation = 0
        self._list_loaded = False
        self._friends_loaded = False
        self._conversations: List[Conversation] = []
        self._friend_ids: List[str] = []
        self._last_by_counterpart: Dict[str, Conversation] = {}
        self._list_sub: Optional[Subscription] = None
        self._friends_sub: Optional[Subscription] = None
        self._bus_sub: Optional[Subscription] = None
        self._unread: Dict[str, UnreadCounter] = {}
        self._unread_subs: Dict[str, Subscription] = {}
        self._head_watchers: Dict[str, Subscription] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ==================== LIFECYCLE ====================

    def set_identity(self, uid: Optional[str]) -> None:
        """Tear down everything bound to the previous identity, then start ``uid``."""
        self._teardown()
        self.uid = uid
        if not uid:
            self.loading = False
            self._emit()
            return

        generation = self._generation
        self.loading = True
        if self.bus is not None:
            self._bus_sub = self.bus.subscribe(CHAT_HEAD_TOPIC, self._on_head)
        self._subscribe_list(generation)
        self._friends_sub = self.social.listen_accepted(
            uid,
            lambda rels: self._on_friends(generation, rels),
            lambda error: self._on_friends_error(generation, error),
        )
        self._emit()

    def stop(self) -> None:
        self._teardown()
        self.uid = None
        self.loading = False

    def _teardown(self) -> None:
        self._generation += 1
        for subscription in (self._list_sub, self._friends_sub, self._bus_sub):
            if subscription is not None:
                subscription.close()
        self._list_sub = self._friends_sub = self._bus_sub = None
        for cid in list(self._unread):
            self._close_row(cid)
        for cid in list(self._head_watchers):
            self._head_watchers.pop(cid).close()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._conversations = []
        self._friend_ids = []
        self._last_by_counterpart = {}
        self._list_loaded = self._friends_loaded = False
        self.rows = []

    # ==================== SUBSCRIPTIONS ====================

    def _list_query(self) -> Query:
        query = Query(self.chat.collection).where("members", "array_contains", self.uid)
        if not self.use_unindexed:
            query = query.order_by("updatedAt", DESCENDING)
        return query.limit_to(self.limit)

    def _subscribe_list(self, generation: int) -> None:
        self._list_sub = self.store.listen(
            self._list_query(),
            lambda snapshots: self._on_list(generation, snapshots),
            lambda error: self._on_list_error(generation, error),
        )

    def _on_list(self, generation: int, snapshots: List[DocumentSnapshot]) -> None:
        if generation != self._generation:
            return
        conversations = [Conversation.from_document(s) for s in snapshots]
        if self.use_unindexed:
            conversations.sort(key=lambda c: (-(c.updated_at or 0), c.id))
        self._conversations = conversations
        self._list_loaded = True
        self._recompute(generation)

    def _on_list_error(self, generation: int, error: RemoteStoreError) -> None:
        if generation != self._generation:
            return
        if isinstance(error, IndexRequiredError) and not self.use_unindexed:
            logger.warning(f"Conversation list index missing, sorting locally: {error}")
            self.use_unindexed = True
            if self._list_sub is not None:
                self._list_sub.close()
            self._subscribe_list(generation)
            return
        logger.warning(f"Conversation list for {self.uid} failed: {error}")
        self._conversations = []
        self._last_by_counterpart = {}
        self._list_loaded = True
        self._recompute(generation)

    def _on_friends(self, generation: int, relationships: List[FriendRelationship]) -> None:
        if generation != self._generation:
            return
        ids = (r.counterpart(self.uid) for r in relationships)
        self._friend_ids = list(dict.fromkeys(i for i in ids if i))
        self._friends_loaded = True
        self._recompute(generation)

    def _on_friends_error(self, generation: int, error: RemoteStoreError) -> None:
        if generation != self._generation:
            return
        logger.warning(f"Accepted friends for {self.uid} failed: {error}")
        self._friend_ids = []
        self._friends_loaded = True
        self._recompute(generation)

    def _on_head(self, entry: HeadEntry) -> None:
        if any(row.id == entry.conversation_id for row in self.rows):
            self.rows = self._sorted(self.rows)
            self._emit()

    # ==================== ROWS ====================

    def _recompute(self, generation: int) -> None:
        grouped: Dict[str, List[Conversation]] = {}
        for conversation in self._conversations:
            other = conversation.counterpart(self.uid)
            if other:
                grouped.setdefault(other, []).append(conversation)

        rows: List[ConversationRow] = []
        for other, conversations in grouped.items():
            canonical = canonical_conversation(conversations)
            self._last_by_counterpart[other] = canonical
            rows.append(ConversationRow.from_conversation(canonical, other))

        for friend in self._friend_ids:
            if friend in grouped:
                continue
            # Once seen with a conversation, a friend keeps a real row
            remembered = self._last_by_counterpart.get(friend)
            if remembered is not None:
                rows.append(ConversationRow.from_conversation(remembered, friend))
            else:
                rows.append(ConversationRow.virtual(friend))

        self.rows = self._sorted(rows)
        self.loading = not (self._list_loaded and self._friends_loaded)
        self._sync_row_watchers(generation)
        self._hydrate(generation)
        self._emit()

    def _sorted(self, rows: List[ConversationRow]) -> List[ConversationRow]:
        def _key(row: ConversationRow):
            recency = max(row.activity_at, self.heads.at(row.id))
            return (row.is_virtual, -recency, row.counterpart_id)

        return sorted(rows, key=_key)

    def _sync_row_watchers(self, generation: int) -> None:
        real = {row.id for row in self.rows if not row.is_virtual}
        for cid in [c for c in self._unread if c not in real]:
            self._close_row(cid)
        for cid in [c for c in self._head_watchers if c not in real]:
            self._head_watchers.pop(cid).close()

        for cid in real:
            if cid not in self._unread:
                counter = UnreadCounter(self.store, cid, self.uid, self.watermarks.get(cid))
                self._unread[cid] = counter
                self._unread_subs[cid] = counter.observe(lambda _c: self._emit())
                counter.start()
            if cid not in self._head_watchers:
                self._head_watchers[cid] = self.store.listen(
                    self.chat.latest_messages_query(cid, 1),
                    lambda snapshots, c=cid: self._on_latest(generation, c, snapshots),
                    lambda error, c=cid: logger.warning(f"Head watcher for {c} failed: {error}"),
                )

    def _close_row(self, cid: str) -> None:
        counter = self._unread.pop(cid, None)
        if counter is not None:
            counter.stop()
        observer = self._unread_subs.pop(cid, None)
        if observer is not None:
            observer.close()

    def _on_latest(self, generation: int, cid: str, snapshots: List[DocumentSnapshot]) -> None:
        if generation != self._generation or not snapshots:
            return
        message = Message.from_document(snapshots[0], cid)
        self.heads.update(cid, preview(message.text), message.created_at)

    def _hydrate(self, generation: int) -> None:
        for conversation in self._conversations:
            if conversation.members_meta:
                self.profiles.prime(conversation.members_meta)

        missing = [row.counterpart_id for row in self.rows if not self.profiles.peek(row.counterpart_id)[0]]
        if not missing:
            return

        async def _run():
            await self.profiles.get_many(missing)
            if generation == self._generation:
                self._emit()

        task = asyncio.get_running_loop().create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ==================== READ MODEL ====================

    def profile(self, row: ConversationRow) -> Optional[UserProfile]:
        return self.profiles.peek(row.counterpart_id)[1]

    def title(self, row: ConversationRow) -> str:
        profile = self.profile(row)
        if profile is None:
            return ""
        return profile.username or profile.display_name

    def subtitle(self, row: ConversationRow) -> str:
        head = self.heads.get(row.id)
        if head is not None:
            return head.text
        return row.last_message or ""

    def unread_count(self, conversation_id: str) -> int:
        counter = self._unread.get(conversation_id)
        return counter.count if counter is not None else 0

    def filtered_rows(self, query: str = "", tab: str = TAB_ALL) -> List[ConversationRow]:
        """Rows matching ``query`` (accent and case-insensitive) within ``tab``."""
        if tab not in TABS:
            raise ValueError(f"Unknown tab: {tab}")
        needle = fold(query).strip()
        out = []
        for row in self.rows:
            if tab == TAB_FAVORITES and not (self.favorites and self.favorites.is_favorite(row.id)):
                continue
            if tab == TAB_UNREAD and self.unread_count(row.id) <= 0:
                continue
            if needle:
                haystack = fold(f"{self.title(row)} {self.subtitle(row)} {row.counterpart_id}")
                if needle not in haystack:
                    continue
            out.append(row)
        return out

    # ==================== ACTIONS ====================

    def mark_read(self, conversation_id: str) -> int:
        """Advance the watermark and restart the row's counter from it."""
        at_ms = self.watermarks.mark_read(conversation_id)
        counter = self._unread.get(conversation_id)
        if counter is not None:
            counter.restart(at_ms)
        return at_ms

    async def open_row(self, row: ConversationRow) -> str:
        """Resolve the row to a conversation id, creating it for virtual rows."""
        try:
            if row.is_virtual:
                conversation_id = await self.chat.open_chat(self.uid, row.counterpart_id)
            else:
                if not await self.social.are_friends(self.uid, row.counterpart_id):
                    raise NotFriendsError("You can only chat with your friends")
                conversation_id = row.id
        except Exception as e:
            if self.notices is not None:
                self.notices.error("Could not open chat", str(e))
            raise
        self.mark_read(conversation_id)
        return conversation_id
