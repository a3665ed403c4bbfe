import asyncio
import unittest

from chatsync.schemas.social import FriendStatus
from chatsync.services.profile_service import ProfileCache
from chatsync.services.remote_store import InMemoryDocumentStore
from chatsync.services.social_service import FriendViews, SocialService, friend_doc_id

from support import GatedStore, seed_friendship, settle


class FriendRequestTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = InMemoryDocumentStore()
        self.social = SocialService(self.store)

    async def test_send_creates_pending_pair_document(self):
        relationship_id = await self.social.send_friend_request("bob", "alice")
        self.assertEqual(relationship_id, "alice__bob")
        doc = self.store.document("friends/alice__bob")
        self.assertEqual(doc["from"], "bob")
        self.assertEqual(doc["to"], "alice")
        self.assertEqual(doc["members"], ["alice", "bob"])
        self.assertEqual(doc["status"], "pending")

    async def test_invalid_requests_are_rejected(self):
        with self.assertRaises(ValueError):
            await self.social.send_friend_request("alice", "alice")

        await self.social.send_friend_request("alice", "bob")
        with self.assertRaises(ValueError):
            await self.social.send_friend_request("alice", "bob")
        with self.assertRaises(ValueError):
            await self.social.send_friend_request("bob", "alice")

        await self.social.respond_friend_request("bob", "alice__bob", accept=True)
        with self.assertRaises(ValueError):
            await self.social.send_friend_request("alice", "bob")

    async def test_mutual_requests_collapse_to_one_document(self):
        results = await asyncio.gather(
            self.social.send_friend_request("alice", "bob"),
            self.social.send_friend_request("bob", "alice"),
            return_exceptions=True,
        )
        self.assertEqual(len(self.store.documents("friends")), 1)
        self.assertEqual(sum(1 for r in results if r == "alice__bob"), 1)
        self.assertEqual(sum(1 for r in results if isinstance(r, ValueError)), 1)

    async def test_only_recipient_responds_and_terminal_states_are_final(self):
        relationship_id = await self.social.send_friend_request("alice", "bob")
        with self.assertRaises(ValueError):
            await self.social.respond_friend_request("alice", relationship_id, accept=True)

        status = await self.social.respond_friend_request("bob", relationship_id, accept=False)
        self.assertEqual(status, FriendStatus.REJECTED)
        with self.assertRaises(ValueError):
            await self.social.respond_friend_request("bob", relationship_id, accept=True)
        # A rejected pair stays rejected
        with self.assertRaises(ValueError):
            await self.social.send_friend_request("alice", "bob")
        self.assertEqual(self.store.document("friends/alice__bob")["status"], "rejected")

    async def test_cancel_by_requester_only(self):
        relationship_id = await self.social.send_friend_request("alice", "bob")
        with self.assertRaises(ValueError):
            await self.social.cancel_friend_request("bob", relationship_id)
        await self.social.cancel_friend_request("alice", relationship_id)
        self.assertEqual(self.store.document("friends/alice__bob")["status"], "rejected")

        with self.assertRaises(ValueError):
            await self.social.respond_friend_request("bob", "missing__pair", accept=True)

    async def test_are_friends(self):
        seed_friendship(self.store, "alice", "bob", "accepted")
        seed_friendship(self.store, "alice", "carol", "pending")
        self.assertTrue(await self.social.are_friends("bob", "alice"))
        self.assertFalse(await self.social.are_friends("alice", "carol"))
        self.assertFalse(await self.social.are_friends("alice", "dave"))
        self.assertFalse(await self.social.are_friends("alice", "alice"))

    async def test_add_friend_by_handle(self):
        self.store.seed("usernames/bobby", {"uid": "bob"})
        self.assertEqual(await self.social.add_friend_by_handle("alice", "@Bobby"), friend_doc_id("alice", "bob"))
        with self.assertRaises(ValueError):
            await self.social.add_friend_by_handle("alice", "nobody")


class FriendViewsTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = InMemoryDocumentStore()
        self.social = SocialService(self.store)
        self.profiles = ProfileCache(self.store)
        self.views = FriendViews(self.social, self.profiles)
        self.store.seed("publicProfiles/bob", {"displayName": "Bob"})
        seed_friendship(self.store, "bob", "alice", "pending")
        seed_friendship(self.store, "alice", "carol", "pending")
        seed_friendship(self.store, "alice", "dave", "accepted")
        seed_friendship(self.store, "erin", "frank", "accepted")

    async def asyncTearDown(self):
        self.views.stop()

    async def test_three_views_with_profiles(self):
        self.views.set_identity("alice")
        self.assertTrue(self.views.state().loading)
        await settle()

        state = self.views.state()
        self.assertFalse(state.loading)
        self.assertEqual([e.counterpart_id for e in state.incoming], ["bob"])
        self.assertEqual([e.counterpart_id for e in state.outgoing], ["carol"])
        self.assertEqual([e.counterpart_id for e in state.friends], ["dave"])
        self.assertEqual((state.incoming_count, state.outgoing_count), (1, 1))
        self.assertEqual(state.incoming[0].profile.display_name, "Bob")
        self.assertEqual(self.views.accepted_ids, ["dave"])

    async def test_views_follow_remote_changes(self):
        self.views.set_identity("alice")
        await settle()
        await self.social.respond_friend_request("alice", "alice__bob", accept=True)
        await settle()
        state = self.views.state()
        self.assertEqual(state.incoming_count, 0)
        self.assertEqual(sorted(e.counterpart_id for e in state.friends), ["bob", "dave"])

    async def test_identity_change_replaces_subscriptions(self):
        self.views.set_identity("alice")
        await settle()
        self.assertEqual(self.store.listener_count(), 3)

        self.views.set_identity("erin")
        self.assertEqual(self.views.state().friends, [])
        await settle()
        self.assertEqual(self.store.listener_count(), 3)
        self.assertEqual(self.views.accepted_ids, ["frank"])

        self.views.set_identity(None)
        self.assertEqual(self.store.listener_count(), 0)
        self.assertFalse(self.views.state().loading)

    async def test_late_profiles_from_previous_identity_are_ignored(self):
        store = GatedStore()
        profiles = ProfileCache(store)
        views = FriendViews(SocialService(store), profiles)
        self.addCleanup(views.stop)
        seed_friendship(store, "alice", "dave", "accepted")
        seed_friendship(store, "erin", "frank", "accepted")
        release = store.gate("publicProfiles/dave")

        views.set_identity("alice")
        await settle()
        views.set_identity("erin")
        await settle()
        self.assertEqual(views.accepted_ids, ["frank"])

        emitted = []
        views.observe(emitted.append)
        release.set()
        await settle()
        self.assertEqual(emitted, [])
        self.assertTrue(profiles.peek("dave")[0])
        self.assertEqual([e.counterpart_id for e in views.state().friends], ["frank"])
