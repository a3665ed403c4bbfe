import unittest

from chatsync.services.chat_service import NotFriendsError
from chatsync.services.local_storage_service import FAVORITES_KEY, HEADS_CACHE_KEY, LAST_READ_KEY
from chatsync.services.remote_store import InMemoryDocumentStore
from chatsync.services.session_service import SyncSession

from support import FakeClock, T0, memory_local_storage, seed_conversation, seed_friendship, settle


class SyncSessionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.store = InMemoryDocumentStore(clock=self.clock.now)
        self.local = memory_local_storage()
        self.session = SyncSession(self.store, self.local, clock=self.clock.now)

    async def asyncTearDown(self):
        await self.session.close()

    async def test_cold_start_restores_caches(self):
        await self.local.set(HEADS_CACHE_KEY, {"data": {"c1": {"text": "cached", "at": T0}}, "updatedAt": T0})
        await self.local.set(FAVORITES_KEY, {"c1": True})
        await self.local.set(LAST_READ_KEY, {"c1": T0 - 5})
        await self.session.start()
        self.assertEqual(self.session.heads.get("c1").text, "cached")
        self.assertTrue(self.session.favorites.is_favorite("c1"))
        self.assertEqual(self.session.watermarks.get("c1"), T0 - 5)

    async def test_open_chat_gates_and_opens_room(self):
        seed_friendship(self.store, "alice", "bob")
        self.session.set_identity("alice")
        await settle()

        with self.assertRaises(NotFriendsError):
            await self.session.open_chat("mallory")

        room = await self.session.open_chat("bob")
        self.assertTrue(room.is_open)
        self.assertIs(self.session.open_room(room.conversation_id), room)
        self.assertEqual(self.session.watermarks.get(room.conversation_id), T0)

        self.clock.advance(1)
        await room.send("hi bob")
        await settle()
        self.assertEqual([m.text for m in room.messages], ["hi bob"])
        self.assertEqual(self.session.conversations.rows[0].id, room.conversation_id)
        self.assertFalse(self.session.conversations.rows[0].is_virtual)

    async def test_identity_change_closes_rooms_and_views(self):
        seed_friendship(self.store, "alice", "bob")
        seed_conversation(self.store, "c1", "alice", "bob", updated_ms=T0)
        self.session.set_identity("alice")
        await settle()
        room = self.session.open_room("c1")
        await settle()
        self.assertGreater(self.store.listener_count(), 0)

        self.session.set_identity(None)
        self.assertFalse(room.is_open)
        self.assertEqual(self.store.listener_count(), 0)

        with self.assertRaises(PermissionError):
            await self.session.open_chat("bob")

    async def test_add_friend_raises_notices(self):
        self.store.seed("usernames/bobby", {"uid": "bob"})
        self.session.set_identity("alice")
        await self.session.add_friend("@bobby")
        self.assertEqual(self.session.notices.active()[0].title, "Friend request sent")

        with self.assertRaises(ValueError):
            await self.session.add_friend("@bobby")
        self.assertEqual(self.session.notices.active()[0].title, "Friend request failed")
