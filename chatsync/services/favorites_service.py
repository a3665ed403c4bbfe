"""
Favorite conversations, persisted locally
"""
import logging
from typing import Optional, Set

from chatsync.services.local_storage_service import FAVORITES_KEY, LocalStorage

logger = logging.getLogger(__name__)


class Favorites:
    """Set of favorite conversation ids stored as ``{id: true}``"""

    def __init__(self, local: Optional[LocalStorage] = None):
        self.local = local
        self._ids: Set[str] = set()

    async def load(self) -> int:
        if self.local is None:
            return 0
        raw = await self.local.get(FAVORITES_KEY, {}) or {}
        self._ids = {cid for cid, flag in raw.items() if flag}
        return len(self._ids)

    def is_favorite(self, conversation_id: str) -> bool:
        return conversation_id in self._ids

    def toggle(self, conversation_id: str) -> bool:
        """Flip the flag and return the new state."""
        if conversation_id in self._ids:
            self._ids.discard(conversation_id)
            state = False
        else:
            self._ids.add(conversation_id)
            state = True
        if self.local is not None:
            self.local.set_background(FAVORITES_KEY, {cid: True for cid in sorted(self._ids)})
        return state

    @property
    def ids(self) -> Set[str]:
        return set(self._ids)
