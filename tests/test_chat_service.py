import unittest

from chatsync.services.chat_service import ChatService, NotFriendsError, preview
from chatsync.services.remote_store import InMemoryDocumentStore
from chatsync.services.social_service import SocialService
from chatsync.utils.keys import is_virtual, pair_key, virtual_id
from chatsync.utils.time_utils import to_millis

from support import FakeClock, T0, seed_conversation, seed_friendship


class HelperTests(unittest.TestCase):
    def test_pair_key_is_order_independent(self):
        self.assertEqual(pair_key("b", "a"), "a__b")
        self.assertEqual(pair_key("a", "b"), pair_key("b", "a"))

    def test_preview(self):
        self.assertEqual(preview("  hi  "), "hi")
        self.assertEqual(preview("x" * 140), "x" * 140)
        self.assertEqual(preview("x" * 141), "x" * 140 + "…")
        self.assertEqual(preview(None), "")

    def test_virtual_ids(self):
        self.assertEqual(virtual_id("bob"), "virtual:bob")
        self.assertTrue(is_virtual("virtual:bob"))
        self.assertFalse(is_virtual("c1"))
        self.assertFalse(is_virtual(None))


class ChatServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.store = InMemoryDocumentStore(clock=self.clock.now)
        self.chat = ChatService(self.store, SocialService(self.store))

    async def test_gate_runs_before_any_conversation_access(self):
        with self.assertRaises(NotFriendsError):
            await self.chat.open_chat("alice", "mallory")
        touched = [path for _op, path in self.store.operations if path.startswith("conversations")]
        self.assertEqual(touched, [])
        self.assertEqual(self.store.documents("conversations"), {})

        seed_friendship(self.store, "alice", "mallory", "pending")
        with self.assertRaises(PermissionError):
            await self.chat.open_chat("alice", "mallory")

    async def test_fetch_or_create_reuses_the_pair(self):
        seed_friendship(self.store, "alice", "bob")
        first = await self.chat.open_chat("alice", "bob")
        second = await self.chat.open_chat("bob", "alice")
        self.assertEqual(first, second)

        doc = self.store.document(f"conversations/{first}")
        self.assertEqual(doc["members"], ["alice", "bob"])
        self.assertEqual(doc["pairKey"], "alice__bob")
        self.assertIsNone(doc["lastMessage"])

    async def test_duplicates_resolve_to_most_recent(self):
        seed_conversation(self.store, "c-old", "alice", "bob", updated_ms=T0)
        seed_conversation(self.store, "c-new", "alice", "bob", updated_ms=T0 + 10)
        seed_conversation(self.store, "c-tie", "alice", "bob", updated_ms=T0 + 10)
        self.assertEqual(await self.chat.fetch_or_create_one_to_one("alice", "bob"), "c-new")

    async def test_invalid_members(self):
        with self.assertRaises(ValueError):
            await self.chat.fetch_or_create_one_to_one("alice", "alice")
        with self.assertRaises(ValueError):
            await self.chat.create_conversation(["alice"])

    async def test_send_message_writes_message_and_summary(self):
        seed_conversation(self.store, "c1", "alice", "bob", updated_ms=T0 - 1000)
        self.clock.advance(1)
        message_id = await self.chat.send_message("c1", "alice", "  " + "y" * 150 + " ")

        message = self.store.document(f"conversations/c1/messages/{message_id}")
        self.assertEqual(message["text"], "y" * 150)
        self.assertEqual(message["senderId"], "alice")
        self.assertEqual(message["authorId"], "alice")
        self.assertEqual(to_millis(message["createdAt"]), T0 + 1000)

        conversation = self.store.document("conversations/c1")
        self.assertEqual(conversation["lastMessage"], "y" * 140 + "…")
        self.assertEqual(conversation["lastSenderId"], "alice")
        self.assertEqual(to_millis(conversation["updatedAt"]), T0 + 1000)
        self.assertEqual(conversation["pairKey"], "alice__bob")

        self.assertIsNone(await self.chat.send_message("c1", "alice", "   "))
