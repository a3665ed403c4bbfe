"""
Handle (@gamertag) lookups over the usernames collection
"""
import logging
import re
from typing import List, Optional

from chatsync.core.config import settings
from chatsync.services.remote_store import DOCUMENT_ID, DocumentStore, Query

logger = logging.getLogger(__name__)

MAX_HANDLE_LENGTH = 20
# Upper bound for prefix range queries
PREFIX_END = "\uf8ff"


def normalize_handle(raw: Optional[str]) -> str:
    """Lower-case, spaces to '_', keep [a-z0-9._-], at most 20 chars. Leading '@' is dropped."""
    handle = (raw or "").strip().lower()
    handle = handle.lstrip("@")
    handle = re.sub(r"\s+", "_", handle)
    handle = re.sub(r"[^a-z0-9._-]", "", handle)
    return handle[:MAX_HANDLE_LENGTH]


class UsernameService:
    """usernames/{handle} -> {uid}"""

    def __init__(self, store: DocumentStore, collection: str = None):
        self.store = store
        self.collection = collection or settings.USERNAMES_COLLECTION

    async def username_to_uid(self, handle: str) -> Optional[str]:
        tag = normalize_handle(handle)
        if not tag:
            return None
        snapshot = await self.store.get(f"{self.collection}/{tag}")
        if not snapshot.exists:
            return None
        return snapshot.get("uid") or None

    async def uid_to_username(self, uid: str) -> Optional[str]:
        if not uid:
            return None
        docs = await self.store.query(
            Query(self.collection).where("uid", "==", uid).limit_to(1)
        )
        return docs[0].id if docs else None

    async def search_usernames(self, prefix: str, limit: int = 10) -> List[dict]:
        """Handles starting with ``prefix``: ``[{"tag", "uid"}]``"""
        tag = normalize_handle(prefix)
        if not tag:
            return []
        docs = await self.store.query(
            Query(self.collection)
            .where(DOCUMENT_ID, ">=", tag)
            .where(DOCUMENT_ID, "<=", tag + PREFIX_END)
            .order_by(DOCUMENT_ID)
            .limit_to(limit)
        )
        return [{"tag": doc.id, "uid": doc.get("uid")} for doc in docs if doc.get("uid")]
