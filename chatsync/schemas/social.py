"""
Social and friends schemas
"""
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel

from chatsync.schemas.profile import UserProfile
from chatsync.services.remote_store import DocumentSnapshot
from chatsync.utils.time_utils import to_millis


class FriendStatus(str, Enum):
    """Relationship states. pending -> accepted | rejected; terminal states are final."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class FriendRelationship(BaseModel):
    """friends/{pairKey} document"""
    id: str
    from_uid: str
    to_uid: str
    members: List[str]
    status: FriendStatus
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    def counterpart(self, me: str) -> Optional[str]:
        for member in self.members:
            if member != me:
                return member
        return None

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> "FriendRelationship":
        data = snapshot.data
        from_uid = data.get("from") or ""
        to_uid = data.get("to") or ""
        members = [m for m in (data.get("members") or [from_uid, to_uid]) if m]
        try:
            status = FriendStatus(data.get("status"))
        except ValueError:
            status = FriendStatus.PENDING
        return cls(
            id=snapshot.id,
            from_uid=from_uid,
            to_uid=to_uid,
            members=sorted(members),
            status=status,
            created_at=to_millis(data.get("createdAt")),
            updated_at=to_millis(data.get("updatedAt")),
        )


class FriendEntry(BaseModel):
    """Relationship row with the counterpart's display profile"""
    relationship: FriendRelationship
    counterpart_id: str
    profile: Optional[UserProfile] = None


class FriendViewsState(BaseModel):
    """Snapshot of the three live friend views"""
    incoming: List[FriendEntry]
    outgoing: List[FriendEntry]
    friends: List[FriendEntry]
    incoming_count: int
    outgoing_count: int
    loading: bool = False
