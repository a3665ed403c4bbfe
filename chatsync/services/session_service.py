"""
Sync session: wires the caches and live views for one signed-in identity
"""
import asyncio
import logging
from typing import Callable, Dict, Optional

from chatsync.services.chat_service import ChatService
from chatsync.services.conversation_list_service import ConversationListSync
from chatsync.services.event_bus import EventBus
from chatsync.services.favorites_service import Favorites
from chatsync.services.head_cache_service import HeadCache
from chatsync.services.local_storage_service import LocalStorage
from chatsync.services.notification_service import NotificationCenter
from chatsync.services.profile_service import ProfileCache
from chatsync.services.remote_store import DocumentStore
from chatsync.services.room_service import ChatRoom
from chatsync.services.social_service import FriendViews, SocialService
from chatsync.services.unread_service import ReadWatermarks
from chatsync.services.username_service import UsernameService
from chatsync.utils.time_utils import now_ms

logger = logging.getLogger(__name__)


class SyncSession:
    """
    Composition root. One instance per app process; identities come and go
    through ``set_identity``.
    """

    def __init__(
        self,
        store: DocumentStore,
        local: Optional[LocalStorage] = None,
        *,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.local = local
        self._clock = clock

        self.bus = EventBus()
        self.notices = NotificationCenter(self.bus, clock=clock)
        self.heads = HeadCache(self.bus, local, clock=clock)
        self.usernames = UsernameService(store)
        self.profiles = ProfileCache(store, local, self.usernames, clock=clock)
        self.watermarks = ReadWatermarks(local, clock=clock)
        self.favorites = Favorites(local)
        self.social = SocialService(store, self.usernames)
        self.chat = ChatService(store, self.social)
        self.conversations = ConversationListSync(
            self.chat,
            self.profiles,
            self.heads,
            self.watermarks,
            bus=self.bus,
            favorites=self.favorites,
            notices=self.notices,
        )
        self.friends = FriendViews(self.social, self.profiles)

        self.uid: Optional[str] = None
        self._rooms: Dict[str, ChatRoom] = {}

    async def start(self) -> None:
        """Cold start: restore persisted caches."""
        await asyncio.gather(
            self.profiles.load(),
            self.heads.load(),
            self.watermarks.load(),
            self.favorites.load(),
        )
        logger.info("Sync session caches loaded")

    def set_identity(self, uid: Optional[str]) -> None:
        if uid == self.uid:
            return
        logger.info(f"Switching identity from {self.uid} to {uid}")
        for cid in list(self._rooms):
            self.close_room(cid)
        self.conversations.set_identity(uid)
        self.friends.set_identity(uid)
        self.uid = uid

    def _require_identity(self) -> str:
        if not self.uid:
            raise PermissionError("No signed-in user")
        return self.uid

    async def open_chat(self, other_uid: str) -> ChatRoom:
        """Friend gate, fetch or create the conversation, mark it read and open its room."""
        uid = self._require_identity()
        try:
            conversation_id = await self.chat.open_chat(uid, other_uid)
        except Exception as e:
            self.notices.error("Could not open chat", str(e))
            raise
        if uid != self.uid:
            raise PermissionError("Identity changed while opening the chat")
        self.conversations.mark_read(conversation_id)
        return self.open_room(conversation_id)

    def open_room(self, conversation_id: str) -> ChatRoom:
        uid = self._require_identity()
        room = self._rooms.get(conversation_id)
        if room is not None and room.is_open:
            return room
        room = ChatRoom(
            self.chat,
            self.heads,
            conversation_id,
            uid,
            notices=self.notices,
            clock=self._clock,
        ).open()
        self._rooms[conversation_id] = room
        return room

    def close_room(self, conversation_id: str) -> None:
        room = self._rooms.pop(conversation_id, None)
        if room is not None:
            room.close()

    async def add_friend(self, handle: str) -> str:
        uid = self._require_identity()
        try:
            relationship_id = await self.social.add_friend_by_handle(uid, handle)
        except ValueError as e:
            self.notices.error("Friend request failed", str(e))
            raise
        self.notices.success("Friend request sent")
        return relationship_id

    async def close(self) -> None:
        self.set_identity(None)
        self.conversations.stop()
        self.friends.stop()
        if self.local is not None:
            await self.local.flush()
