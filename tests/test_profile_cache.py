import asyncio
import unittest

from chatsync.schemas.chat import MemberMeta
from chatsync.services.local_storage_service import PROFILE_CACHE_KEY
from chatsync.services.profile_service import ProfileCache
from chatsync.services.remote_store import InMemoryDocumentStore, RemoteStoreError

from support import DAY_MS, FakeClock, memory_local_storage, settle


class FlakyStore(InMemoryDocumentStore):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail_reads = False
        self.reads = 0

    async def get(self, path):
        self.reads += 1
        if self.fail_reads:
            raise RemoteStoreError("offline", code="unavailable")
        return await super().get(path)


class ProfileTierTests(unittest.IsolatedAsyncioTestCase):
    async def test_public_profile_wins(self):
        store = InMemoryDocumentStore()
        store.seed("publicProfiles/u1", {"displayName": "Ana", "photoURL": "http://p/ana", "gamertag": "Ana_B"})
        store.seed("users/u1", {"displayName": "Private Ana"})
        profile = await ProfileCache(store).get("u1")
        self.assertEqual(profile.display_name, "Ana")
        self.assertEqual(profile.username, "@ana_b")
        self.assertEqual(profile.photo_url, "http://p/ana")

    async def test_public_profile_without_name_uses_handle(self):
        store = InMemoryDocumentStore()
        store.seed("publicProfiles/u1", {"gamertag": "neo"})
        profile = await ProfileCache(store).get("u1")
        self.assertEqual(profile.display_name, "@neo")

    async def test_private_profile_fallbacks(self):
        store = InMemoryDocumentStore()
        store.seed("users/u1", {"displayName": "", "email": "ana@example.com"})
        store.seed("users/u2", {"displayName": ""})
        store.seed("usernames/trinity", {"uid": "u2"})
        cache = ProfileCache(store)

        first = await cache.get("u1")
        self.assertEqual(first.display_name, "ana@example.com")
        self.assertIsNone(first.username)

        second = await cache.get("u2")
        self.assertEqual(second.display_name, "@trinity")
        self.assertEqual(second.username, "@trinity")

    async def test_handle_mapping_then_placeholder(self):
        store = InMemoryDocumentStore()
        store.seed("usernames/morpheus", {"uid": "u3"})
        cache = ProfileCache(store)
        self.assertEqual((await cache.get("u3")).display_name, "@morpheus")
        placeholder = await cache.get("ghost")
        self.assertEqual(placeholder.display_name, "User")
        self.assertIsNone(placeholder.username)

    async def test_empty_uid(self):
        self.assertIsNone(await ProfileCache(InMemoryDocumentStore()).get(""))


class ProfileCachingTests(unittest.IsolatedAsyncioTestCase):
    async def test_concurrent_lookups_share_one_fetch(self):
        store = InMemoryDocumentStore()
        store.seed("publicProfiles/u1", {"displayName": "Ana"})
        cache = ProfileCache(store)
        results = await asyncio.gather(cache.get("u1"), cache.get("u1"), cache.get_many(["u1", "u1"]))
        self.assertEqual(cache.fetch_count, 1)
        self.assertEqual(results[0].display_name, "Ana")
        self.assertEqual(results[2]["u1"].display_name, "Ana")

    async def test_ttl_expiry_is_the_only_refetch_path(self):
        clock = FakeClock()
        store = InMemoryDocumentStore()
        store.seed("publicProfiles/u1", {"displayName": "Ana"})
        cache = ProfileCache(store, clock=clock.now)

        await cache.get("u1")
        clock.advance_ms(DAY_MS)
        await cache.get("u1")
        self.assertEqual(cache.fetch_count, 1)

        clock.advance_ms(6 * DAY_MS + 1)
        await cache.get("u1")
        self.assertEqual(cache.fetch_count, 2)

    async def test_failure_is_cached_as_negative(self):
        store = FlakyStore()
        store.fail_reads = True
        cache = ProfileCache(store)
        self.assertIsNone(await cache.get("u1"))
        self.assertEqual(cache.peek("u1"), (True, None))

        store.fail_reads = False
        self.assertIsNone(await cache.get("u1"))
        self.assertEqual(store.reads, 1)

    async def test_get_many_serves_hits_and_fetches_misses(self):
        store = InMemoryDocumentStore()
        store.seed("publicProfiles/a", {"displayName": "A"})
        store.seed("publicProfiles/b", {"displayName": "B"})
        cache = ProfileCache(store, concurrency=1)
        await cache.get("a")

        result = await cache.get_many(["a", "b", "", "b"])
        self.assertEqual(set(result), {"a", "b"})
        self.assertEqual(result["b"].display_name, "B")
        self.assertEqual(cache.fetch_count, 2)

    async def test_prime_invalidate_clear(self):
        store = InMemoryDocumentStore()
        store.seed("publicProfiles/u1", {"displayName": "Remote"})
        cache = ProfileCache(store)
        cache.prime({"u1": MemberMeta(display_name="Meta", username="@meta"), "u2": MemberMeta()})
        self.assertEqual((await cache.get("u1")).display_name, "Meta")
        self.assertEqual(cache.peek("u2"), (False, None))
        self.assertEqual(cache.fetch_count, 0)

        cache.invalidate("u1")
        self.assertEqual((await cache.get("u1")).display_name, "Remote")

        cache.clear()
        self.assertEqual(cache.peek("u1"), (False, None))


class ProfilePersistenceTests(unittest.IsolatedAsyncioTestCase):
    async def test_round_trip_keeps_only_fresh_entries(self):
        clock = FakeClock()
        local = memory_local_storage()
        store = InMemoryDocumentStore()
        store.seed("publicProfiles/u1", {"displayName": "Ana"})
        cache = ProfileCache(store, local, clock=clock.now)
        await cache.get("u1")
        await settle()
        await local.flush()

        saved = await local.get(PROFILE_CACHE_KEY)
        self.assertEqual(saved["data"]["u1"]["displayName"], "Ana")

        fresh = ProfileCache(InMemoryDocumentStore(), local, clock=clock.now)
        self.assertEqual(await fresh.load(), 1)
        self.assertEqual((await fresh.get("u1")).display_name, "Ana")
        self.assertEqual(fresh.fetch_count, 0)

        clock.advance_ms(8 * DAY_MS)
        stale = ProfileCache(InMemoryDocumentStore(), local, clock=clock.now)
        self.assertEqual(await stale.load(), 0)

    async def test_negative_entries_survive_restart(self):
        clock = FakeClock()
        local = memory_local_storage()
        store = FlakyStore()
        store.fail_reads = True
        cache = ProfileCache(store, local, clock=clock.now)
        await cache.get("u1")
        await local.flush()

        restored = ProfileCache(InMemoryDocumentStore(), local, clock=clock.now)
        await restored.load()
        self.assertEqual(restored.peek("u1"), (True, None))
