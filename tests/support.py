import asyncio

from chatsync.database import create_local_engine, create_session_factory, init_db
from chatsync.services.local_storage_service import LocalStorage
from chatsync.services.remote_store import InMemoryDocumentStore
from chatsync.utils.keys import pair_key
from chatsync.utils.time_utils import from_millis

T0 = 1_700_000_000_000
DAY_MS = 24 * 60 * 60 * 1000


class FakeClock:
    def __init__(self, start_ms: int = T0) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def advance_ms(self, ms: int) -> None:
        self.now_ms += ms

    def now(self) -> int:
        return self.now_ms


class GatedStore(InMemoryDocumentStore):
    """Document reads on gated paths wait until the gate is released."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._gates = {}

    def gate(self, path: str) -> asyncio.Event:
        return self._gates.setdefault(path, asyncio.Event())

    async def get(self, path: str):
        gate = self._gates.get(path)
        if gate is not None:
            await gate.wait()
        return await super().get(path)


async def settle(rounds: int = 30) -> None:
    """Let scheduled deliveries and background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def memory_local_storage() -> LocalStorage:
    engine = create_local_engine("sqlite://")
    init_db(engine)
    return LocalStorage(create_session_factory(engine))


def seed_conversation(store: InMemoryDocumentStore, cid: str, a: str, b: str, updated_ms: int,
                      last_message: str = None, last_ms: int = None, members_meta: dict = None):
    data = {
        "id": cid,
        "members": sorted([a, b]),
        "pairKey": pair_key(a, b),
        "updatedAt": from_millis(updated_ms),
        "lastMessage": last_message,
        "lastMessageAt": from_millis(last_ms) if last_ms is not None else None,
        "lastSenderId": None,
    }
    if members_meta:
        data["membersMeta"] = members_meta
    store.seed(f"conversations/{cid}", data)


def seed_message(store: InMemoryDocumentStore, cid: str, mid: str, sender: str, text: str, at_ms: int):
    store.seed(
        f"conversations/{cid}/messages/{mid}",
        {"id": mid, "text": text, "senderId": sender, "createdAt": from_millis(at_ms)},
    )


def seed_friendship(store: InMemoryDocumentStore, from_uid: str, to_uid: str, status: str = "accepted",
                    at_ms: int = T0):
    store.seed(
        f"friends/{pair_key(from_uid, to_uid)}",
        {
            "from": from_uid,
            "to": to_uid,
            "members": sorted([from_uid, to_uid]),
            "status": status,
            "createdAt": from_millis(at_ms),
            "updatedAt": from_millis(at_ms),
        },
    )
