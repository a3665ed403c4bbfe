"""
Chat service for conversations and durable message writes
"""
import logging
from typing import List, Optional, Sequence

from chatsync.core.config import settings
from chatsync.schemas.chat import Conversation
from chatsync.services.remote_store import (
    DESCENDING,
    SERVER_TIMESTAMP,
    DocumentStore,
    Query,
    set_doc,
)
from chatsync.services.social_service import SocialService
from chatsync.utils.keys import pair_key

logger = logging.getLogger(__name__)

ELLIPSIS = "…"


class NotFriendsError(PermissionError):
    """Raised when a chat is opened with someone who is not an accepted friend"""


def preview(text: Optional[str], limit: Optional[int] = None) -> str:
    """Trimmed text, cut to ``limit`` characters with an ellipsis."""
    limit = limit or settings.MESSAGE_PREVIEW_CHARS
    trimmed = (text or "").strip()
    if len(trimmed) <= limit:
        return trimmed
    return trimmed[:limit] + ELLIPSIS


def canonical_conversation(conversations: Sequence[Conversation]) -> Optional[Conversation]:
    """Most recently active conversation; ties go to the smallest id."""
    if not conversations:
        return None
    return min(conversations, key=lambda c: (-c.activity_at, c.id))


class ChatService:
    """Service for conversation and message operations"""

    def __init__(self, store: DocumentStore, social: SocialService):
        self.store = store
        self.social = social
        self.collection = settings.CONVERSATIONS_COLLECTION

    def conversation_path(self, conversation_id: str) -> str:
        return f"{self.collection}/{conversation_id}"

    def messages_collection(self, conversation_id: str) -> str:
        return f"{self.collection}/{conversation_id}/{settings.MESSAGES_SUBCOLLECTION}"

    async def create_conversation(self, member_ids: List[str]) -> str:
        """Create a one-to-one conversation. Returns the new conversation id."""
        members = sorted(set(m for m in member_ids if m))
        if len(members) != 2:
            raise ValueError("A conversation needs exactly 2 members")

        conversation_id = self.store.new_id(self.collection)
        await self.store.commit([
            set_doc(
                self.conversation_path(conversation_id),
                {
                    "id": conversation_id,
                    "members": members,
                    "pairKey": pair_key(members[0], members[1]),
                    "updatedAt": SERVER_TIMESTAMP,
                    "lastMessage": None,
                    "lastMessageAt": None,
                    "lastSenderId": None,
                },
            )
        ])
        logger.info(f"Created conversation {conversation_id} for {members[0]} and {members[1]}")
        return conversation_id

    async def fetch_or_create_one_to_one(self, a: str, b: str) -> str:
        """Canonical conversation for the pair, created when none exists."""
        if not a or not b or a == b:
            raise ValueError("Two different users are required")

        docs = await self.store.query(
            Query(self.collection).where("pairKey", "==", pair_key(a, b))
        )
        existing = canonical_conversation([Conversation.from_document(d) for d in docs])
        if existing is not None:
            if len(docs) > 1:
                logger.warning(f"{len(docs)} conversations share pair {pair_key(a, b)}, using {existing.id}")
            return existing.id
        return await self.create_conversation([a, b])

    async def open_chat(self, me: str, other: str) -> str:
        """Friend gate first; no conversation is read or written for non-friends."""
        if not await self.social.are_friends(me, other):
            raise NotFriendsError("You can only chat with your friends")
        return await self.fetch_or_create_one_to_one(me, other)

    async def send_message(self, conversation_id: str, sender_id: str, text: str) -> Optional[str]:
        """
        Write the message and the conversation summary in one batch.
        Returns the message id, or None for empty text.
        """
        trimmed = (text or "").strip()
        if not trimmed:
            return None

        messages = self.messages_collection(conversation_id)
        message_id = self.store.new_id(messages)
        await self.store.commit([
            set_doc(
                f"{messages}/{message_id}",
                {
                    "id": message_id,
                    "text": trimmed,
                    # Legacy readers use authorId/sentAt
                    "authorId": sender_id,
                    "senderId": sender_id,
                    "createdAt": SERVER_TIMESTAMP,
                    "sentAt": SERVER_TIMESTAMP,
                    "type": "text",
                },
            ),
            set_doc(
                self.conversation_path(conversation_id),
                {
                    "lastMessage": preview(trimmed),
                    "lastMessageAt": SERVER_TIMESTAMP,
                    "lastSenderId": sender_id,
                    "updatedAt": SERVER_TIMESTAMP,
                },
                merge=True,
            ),
        ])
        return message_id

    # ==================== LIVE QUERIES ====================

    def latest_messages_query(self, conversation_id: str, limit: int) -> Query:
        return (
            Query(self.messages_collection(conversation_id))
            .order_by("createdAt", DESCENDING)
            .limit_to(limit)
        )
