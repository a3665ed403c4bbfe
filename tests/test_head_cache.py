import unittest

from chatsync.services.event_bus import CHAT_HEAD_TOPIC, EventBus
from chatsync.services.head_cache_service import HeadCache
from chatsync.services.local_storage_service import HEADS_CACHE_KEY

from support import FakeClock, T0, memory_local_storage


class HeadCacheTests(unittest.IsolatedAsyncioTestCase):
    async def test_last_write_wins(self):
        heads = HeadCache()
        self.assertTrue(heads.update("c1", "second", T0 + 2))
        self.assertFalse(heads.update("c1", "first", T0 + 1))
        self.assertFalse(heads.update("c1", "same time", T0 + 2))
        self.assertEqual(heads.get("c1").text, "second")
        self.assertTrue(heads.update("c1", "third", T0 + 3))
        self.assertEqual(heads.at("c1"), T0 + 3)
        self.assertEqual(heads.at("unknown"), 0)
        self.assertFalse(heads.update("c1", "no time", None))

    async def test_accepted_updates_are_published(self):
        bus = EventBus()
        published = []
        bus.subscribe(CHAT_HEAD_TOPIC, published.append)
        heads = HeadCache(bus)
        heads.update("c1", "hi", T0)
        heads.update("c1", "stale", T0 - 1)
        self.assertEqual([(e.conversation_id, e.text) for e in published], [("c1", "hi")])

    async def test_persisted_snapshot_merges_by_time(self):
        clock = FakeClock()
        local = memory_local_storage()
        writer = HeadCache(local=local, clock=clock.now)
        writer.update("c1", "old", T0)
        writer.update("c2", "persisted", T0 + 10)
        await local.flush()

        saved = await local.get(HEADS_CACHE_KEY)
        self.assertEqual(saved["data"]["c2"], {"text": "persisted", "at": T0 + 10})
        self.assertEqual(saved["updatedAt"], T0)

        reader = HeadCache(local=local, clock=clock.now)
        self.assertEqual(await reader.load(), 2)
        self.assertEqual(await reader.load(), 0)
        self.assertEqual(reader.get("c2").text, "persisted")
        self.assertFalse(reader.update("c2", "older live", T0 + 5))
        self.assertTrue(reader.update("c1", "newer live", T0 + 5))
        self.assertEqual(reader.get("c1").text, "newer live")
        await local.flush()
