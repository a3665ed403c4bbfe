"""
Profile cache: memory + local persistence over tiered remote lookups
"""
import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from chatsync.core.config import settings
from chatsync.schemas.chat import MemberMeta
from chatsync.schemas.profile import PrivateProfile, PublicProfile, UserProfile
from chatsync.services.local_storage_service import PROFILE_CACHE_KEY, LocalStorage
from chatsync.services.remote_store import DocumentStore
from chatsync.services.username_service import UsernameService, normalize_handle
from chatsync.utils.time_utils import now_ms

logger = logging.getLogger(__name__)

PLACEHOLDER_NAME = "User"

# (profile or None for a cached negative, fetched at ms)
CacheEntry = Tuple[Optional[UserProfile], int]


class ProfileCache:
    """
    Display profiles keyed by uid.

    Entries stay fresh for ``PROFILE_CACHE_TTL_MS``; a failed fetch is cached
    as ``None`` for the same period. Concurrent lookups of an unresolved uid
    share one in-flight fetch.
    """

    def __init__(
        self,
        store: DocumentStore,
        local: Optional[LocalStorage] = None,
        usernames: Optional[UsernameService] = None,
        *,
        clock: Callable[[], int] = now_ms,
        ttl_ms: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        self.store = store
        self.local = local
        self.usernames = usernames or UsernameService(store)
        self._clock = clock
        self.ttl_ms = ttl_ms if ttl_ms is not None else settings.PROFILE_CACHE_TTL_MS
        self._semaphore = asyncio.Semaphore(concurrency or settings.PROFILE_FETCH_CONCURRENCY)
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self.fetch_count = 0

    # ==================== CACHE ACCESS ====================

    def _is_fresh(self, fetched_at: int) -> bool:
        return self._clock() - fetched_at <= self.ttl_ms

    def peek(self, uid: str) -> Tuple[bool, Optional[UserProfile]]:
        """``(known, profile)`` without any network access. Stale entries are unknown."""
        entry = self._entries.get(uid)
        if entry is None or not self._is_fresh(entry[1]):
            return False, None
        return True, entry[0]

    def prime(self, profiles: Dict[str, MemberMeta]) -> None:
        """Seed entries from denormalised conversation metadata. Never overrides a fresh entry."""
        now = self._clock()
        for uid, meta in profiles.items():
            if not uid or not meta.display_name:
                continue
            known, _ = self.peek(uid)
            if known:
                continue
            self._entries[uid] = (
                UserProfile(
                    uid=uid,
                    display_name=meta.display_name,
                    photo_url=meta.photo_url,
                    username=meta.username,
                ),
                now,
            )

    def invalidate(self, uid: str) -> None:
        self._entries.pop(uid, None)
        self._persist()

    def clear(self) -> None:
        self._entries.clear()
        self._persist()

    # ==================== LOOKUPS ====================

    async def get(self, uid: str) -> Optional[UserProfile]:
        if not uid:
            return None
        known, profile = self.peek(uid)
        if known:
            return profile
        return await asyncio.shield(self._fetch_task(uid))

    async def get_many(self, uids: Iterable[str]) -> Dict[str, Optional[UserProfile]]:
        """Resolve many uids; cache hits are served without waiting on the fetches."""
        result: Dict[str, Optional[UserProfile]] = {}
        missing: List[str] = []
        for uid in dict.fromkeys(u for u in uids if u):
            known, profile = self.peek(uid)
            if known:
                result[uid] = profile
            else:
                missing.append(uid)

        if missing:
            fetched = await asyncio.gather(
                *(asyncio.shield(self._fetch_task(uid)) for uid in missing)
            )
            result.update(zip(missing, fetched))
        return result

    def _fetch_task(self, uid: str) -> asyncio.Task:
        task = self._inflight.get(uid)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._fetch_and_store(uid))
            self._inflight[uid] = task
            task.add_done_callback(lambda _t, key=uid: self._inflight.pop(key, None))
        return task

    async def _fetch_and_store(self, uid: str) -> Optional[UserProfile]:
        async with self._semaphore:
            self.fetch_count += 1
            try:
                profile = await self._fetch(uid)
            except Exception as e:
                logger.warning(f"Profile fetch for {uid} failed: {e}")
                profile = None
        self._entries[uid] = (profile, self._clock())
        self._persist()
        return profile

    async def _fetch(self, uid: str) -> UserProfile:
        """public projection -> private document -> handle mapping -> placeholder"""
        public = PublicProfile.from_document(
            await self.store.get(f"{settings.PUBLIC_PROFILES_COLLECTION}/{uid}")
        )
        if public is not None:
            tag = normalize_handle(public.gamertag)
            handle = f"@{tag}" if tag else None
            return UserProfile(
                uid=uid,
                display_name=public.display_name or handle or PLACEHOLDER_NAME,
                photo_url=public.photo_url,
                username=handle,
            )

        private = PrivateProfile.from_document(
            await self.store.get(f"{settings.USERS_COLLECTION}/{uid}")
        )
        tag = normalize_handle(private.gamertag) if private is not None else None
        if not tag:
            tag = await self.usernames.uid_to_username(uid)
        handle = f"@{normalize_handle(tag)}" if tag else None

        if private is not None:
            return UserProfile(
                uid=uid,
                display_name=private.display_name or handle or private.email or PLACEHOLDER_NAME,
                photo_url=private.photo_url,
                username=handle,
            )
        return UserProfile(uid=uid, display_name=handle or PLACEHOLDER_NAME, username=handle)

    # ==================== PERSISTENCE ====================

    async def load(self) -> int:
        """Restore fresh entries from local storage. Returns the number restored."""
        if self.local is None:
            return 0
        raw = await self.local.get(PROFILE_CACHE_KEY, {}) or {}
        data = raw.get("data") or {}
        stamps = raw.get("updatedAt") or {}
        restored = 0
        for uid, fetched_at in stamps.items():
            if not isinstance(fetched_at, int) or not self._is_fresh(fetched_at):
                continue
            if uid in self._entries and self._entries[uid][1] >= fetched_at:
                continue
            self._entries[uid] = (UserProfile.from_cache(data.get(uid)), fetched_at)
            restored += 1
        logger.debug(f"Restored {restored} cached profiles")
        return restored

    def _persist(self) -> None:
        if self.local is None:
            return
        payload = {
            "data": {
                uid: profile.to_cache() if profile else None
                for uid, (profile, _) in self._entries.items()
            },
            "updatedAt": {uid: fetched_at for uid, (_, fetched_at) in self._entries.items()},
        }
        self.local.set_background(PROFILE_CACHE_KEY, payload)
