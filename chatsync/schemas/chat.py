"""Conversation and message schemas mapped from remote snapshots"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict

from chatsync.services.remote_store import DocumentSnapshot
from chatsync.utils.time_utils import to_millis


class MemberMeta(BaseModel):
    """Denormalised display data stored on a conversation"""
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    username: Optional[str] = None


class Conversation(BaseModel):
    """One-to-one conversation summary"""
    id: str
    members: List[str]
    pair_key: Optional[str] = None
    last_message: Optional[str] = None
    last_sender_id: Optional[str] = None
    last_message_at: Optional[int] = None
    updated_at: Optional[int] = None
    members_meta: Dict[str, MemberMeta] = {}

    def counterpart(self, me: str) -> Optional[str]:
        for member in self.members:
            if member and member != me:
                return member
        return None

    @property
    def activity_at(self) -> int:
        """Server-side recency: last message time, else last update time."""
        return self.last_message_at or self.updated_at or 0

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> "Conversation":
        data = snapshot.data
        members = [m for m in (data.get("members") or []) if isinstance(m, str) and m]
        meta: Dict[str, MemberMeta] = {}
        for uid, raw in (data.get("membersMeta") or {}).items():
            if isinstance(raw, dict):
                meta[uid] = MemberMeta(
                    display_name=raw.get("displayName"),
                    photo_url=raw.get("photoURL"),
                    username=raw.get("username"),
                )
        return cls(
            id=snapshot.id,
            members=members,
            pair_key=data.get("pairKey"),
            last_message=data.get("lastMessage"),
            last_sender_id=data.get("lastSenderId"),
            last_message_at=to_millis(data.get("lastMessageAt")),
            updated_at=to_millis(data.get("updatedAt")),
            members_meta=meta,
        )


class Message(BaseModel):
    """Durable chat message; immutable once written"""
    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    text: str
    sender_id: Optional[str] = None
    created_at: Optional[int] = None

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot, conversation_id: str) -> "Message":
        data: Dict[str, Any] = snapshot.data
        # Older documents carry authorId/sentAt instead of senderId/createdAt
        sender = data.get("senderId") or data.get("authorId")
        created = data.get("createdAt")
        if created is None:
            created = data.get("sentAt")
        return cls(
            id=snapshot.id,
            conversation_id=conversation_id,
            text=str(data.get("text") or ""),
            sender_id=sender,
            created_at=to_millis(created),
        )
