"""Profile schemas mapped from remote profile documents"""
from typing import Any, Dict, Optional
from pydantic import BaseModel

from chatsync.services.remote_store import DocumentSnapshot


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class UserProfile(BaseModel):
    """Display profile used by list rows, friend rows and room headers"""
    uid: str
    display_name: str
    photo_url: Optional[str] = None
    username: Optional[str] = None  # "@handle"

    def to_cache(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "displayName": self.display_name,
            "photoURL": self.photo_url,
            "username": self.username,
        }

    @classmethod
    def from_cache(cls, data: Optional[Dict[str, Any]]) -> Optional["UserProfile"]:
        if not data or not data.get("uid"):
            return None
        return cls(
            uid=data["uid"],
            display_name=_clean(data.get("displayName")) or "User",
            photo_url=_clean(data.get("photoURL")),
            username=_clean(data.get("username")),
        )


class PublicProfile(BaseModel):
    """publicProfiles/{uid} projection"""
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    gamertag: Optional[str] = None

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> Optional["PublicProfile"]:
        if not snapshot.exists:
            return None
        return cls(
            display_name=_clean(snapshot.get("displayName")),
            photo_url=_clean(snapshot.get("photoURL")),
            gamertag=_clean(snapshot.get("gamertag")),
        )


class PrivateProfile(PublicProfile):
    """users/{uid} document"""
    email: Optional[str] = None

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> Optional["PrivateProfile"]:
        if not snapshot.exists:
            return None
        return cls(
            display_name=_clean(snapshot.get("displayName")),
            photo_url=_clean(snapshot.get("photoURL")),
            gamertag=_clean(snapshot.get("gamertag")),
            email=_clean(snapshot.get("email")),
        )
