"""
Social service for managing friends and friend requests
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Sequence, Set

from chatsync.core.config import settings
from chatsync.schemas.social import FriendEntry, FriendRelationship, FriendStatus, FriendViewsState
from chatsync.services.event_bus import Observable, Subscription
from chatsync.services.profile_service import ProfileCache
from chatsync.services.remote_store import (
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    Query,
    RemoteStoreError,
    Write,
    set_doc,
    update_doc,
)
from chatsync.services.username_service import UsernameService
from chatsync.utils.keys import pair_key

logger = logging.getLogger(__name__)

OnRelationships = Callable[[List[FriendRelationship]], None]
OnError = Callable[[RemoteStoreError], None]


def friend_doc_id(a: str, b: str) -> str:
    return pair_key(a, b)


class SocialService:
    """Service for social/friend operations"""

    def __init__(self, store: DocumentStore, usernames: Optional[UsernameService] = None):
        self.store = store
        self.usernames = usernames or UsernameService(store)
        self.collection = settings.FRIENDS_COLLECTION

    def _path(self, relationship_id: str) -> str:
        return f"{self.collection}/{relationship_id}"

    async def send_friend_request(self, from_uid: str, to_uid: str) -> str:
        """
        Send a friend request.
        Returns: relationship id (the pair key)
        """
        if not from_uid or not to_uid:
            raise ValueError("Both users are required")
        if from_uid == to_uid:
            raise ValueError("Cannot send friend request to yourself")

        relationship_id = friend_doc_id(from_uid, to_uid)
        path = self._path(relationship_id)

        def _decide(snapshots: Sequence[DocumentSnapshot]) -> List[Write]:
            snapshot = snapshots[0]
            if snapshot.exists:
                existing = FriendRelationship.from_document(snapshot)
                if existing.status == FriendStatus.ACCEPTED:
                    raise ValueError("Already friends")
                if existing.status == FriendStatus.PENDING:
                    if existing.from_uid == from_uid:
                        raise ValueError("Friend request already sent")
                    raise ValueError("This user already sent you a friend request")
                raise ValueError("Unable to send friend request")

            return [
                set_doc(
                    path,
                    {
                        "from": from_uid,
                        "to": to_uid,
                        "members": sorted([from_uid, to_uid]),
                        "status": FriendStatus.PENDING.value,
                        "createdAt": SERVER_TIMESTAMP,
                        "updatedAt": SERVER_TIMESTAMP,
                    },
                    merge=True,
                )
            ]

        await self.store.run_transaction([path], _decide)
        logger.info(f"Friend request {relationship_id} sent by {from_uid}")
        return relationship_id

    async def add_friend_by_handle(self, user_id: str, handle: str) -> str:
        """Send a friend request to the owner of ``@handle``."""
        target = await self.usernames.username_to_uid(handle)
        if not target:
            raise ValueError("User not found")
        return await self.send_friend_request(user_id, target)

    async def respond_friend_request(self, user_id: str, relationship_id: str, accept: bool) -> FriendStatus:
        """Accept or reject a pending request. Only the recipient may respond."""
        status = FriendStatus.ACCEPTED if accept else FriendStatus.REJECTED
        await self._resolve(relationship_id, status, lambda rel: rel.to_uid == user_id,
                            "Only the recipient can respond to this request")
        logger.info(f"Friend request {relationship_id} {status.value} by {user_id}")
        return status

    async def cancel_friend_request(self, user_id: str, relationship_id: str) -> None:
        """The requester withdraws a pending request."""
        await self._resolve(relationship_id, FriendStatus.REJECTED, lambda rel: rel.from_uid == user_id,
                            "Only the requester can cancel this request")
        logger.info(f"Friend request {relationship_id} cancelled by {user_id}")

    async def _resolve(
        self,
        relationship_id: str,
        status: FriendStatus,
        allowed: Callable[[FriendRelationship], bool],
        forbidden_message: str,
    ) -> None:
        path = self._path(relationship_id)

        def _decide(snapshots: Sequence[DocumentSnapshot]) -> List[Write]:
            snapshot = snapshots[0]
            if not snapshot.exists:
                raise ValueError("Friend request not found")
            relationship = FriendRelationship.from_document(snapshot)
            if not allowed(relationship):
                raise ValueError(forbidden_message)
            if relationship.status != FriendStatus.PENDING:
                raise ValueError("Friend request is no longer pending")
            return [update_doc(path, {"status": status.value, "updatedAt": SERVER_TIMESTAMP})]

        await self.store.run_transaction([path], _decide)

    async def get_relationship(self, a: str, b: str) -> Optional[FriendRelationship]:
        snapshot = await self.store.get(self._path(friend_doc_id(a, b)))
        if not snapshot.exists:
            return None
        return FriendRelationship.from_document(snapshot)

    async def are_friends(self, a: str, b: str) -> bool:
        if not a or not b or a == b:
            return False
        relationship = await self.get_relationship(a, b)
        return (
            relationship is not None
            and relationship.status == FriendStatus.ACCEPTED
            and a in relationship.members
            and b in relationship.members
        )

    # ==================== LIVE QUERIES ====================

    def _listen(self, query: Query, on_rows: OnRelationships, on_error: Optional[OnError]) -> Subscription:
        def _on_next(snapshots: List[DocumentSnapshot]):
            on_rows([FriendRelationship.from_document(s) for s in snapshots])

        return self.store.listen(query, _on_next, on_error)

    def listen_incoming(self, uid: str, on_rows: OnRelationships, on_error: Optional[OnError] = None) -> Subscription:
        query = (
            Query(self.collection)
            .where("to", "==", uid)
            .where("status", "==", FriendStatus.PENDING.value)
        )
        return self._listen(query, on_rows, on_error)

    def listen_outgoing(self, uid: str, on_rows: OnRelationships, on_error: Optional[OnError] = None) -> Subscription:
        query = (
            Query(self.collection)
            .where("from", "==", uid)
            .where("status", "==", FriendStatus.PENDING.value)
        )
        return self._listen(query, on_rows, on_error)

    def listen_accepted(self, uid: str, on_rows: OnRelationships, on_error: Optional[OnError] = None) -> Subscription:
        query = (
            Query(self.collection)
            .where("members", "array_contains", uid)
            .where("status", "==", FriendStatus.ACCEPTED.value)
        )
        return self._listen(query, on_rows, on_error)


INCOMING = "incoming"
OUTGOING = "outgoing"
ACCEPTED = "accepted"


class FriendViews(Observable):
    """
    Incoming, outgoing and accepted relationship views for the current
    identity. Each view has its own subscription; all of them are closed
    before the next identity's are opened.
    """

    def __init__(self, social: SocialService, profiles: ProfileCache):
        super().__init__()
        self.social = social
        self.profiles = profiles
        self.uid: Optional[str] = None
        self._generation = 0
        self._subscriptions: List[Subscription] = []
        self._rows: Dict[str, List[FriendRelationship]] = {INCOMING: [], OUTGOING: [], ACCEPTED: []}
        self._waiting: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def loading(self) -> bool:
        return bool(self._waiting)

    def set_identity(self, uid: Optional[str]) -> None:
        self._teardown()
        self.uid = uid
        if not uid:
            self._emit()
            return

        generation = self._generation
        self._waiting = {INCOMING, OUTGOING, ACCEPTED}
        listeners = {
            INCOMING: self.social.listen_incoming,
            OUTGOING: self.social.listen_outgoing,
            ACCEPTED: self.social.listen_accepted,
        }
        for view, listen in listeners.items():
            self._subscriptions.append(
                listen(
                    uid,
                    lambda rows, v=view: self._on_rows(generation, v, rows),
                    lambda error, v=view: self._on_error(generation, v, error),
                )
            )
        self._emit()

    def stop(self) -> None:
        self._teardown()
        self.uid = None

    def _teardown(self) -> None:
        self._generation += 1
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._rows = {INCOMING: [], OUTGOING: [], ACCEPTED: []}
        self._waiting = set()

    def _on_rows(self, generation: int, view: str, rows: List[FriendRelationship]) -> None:
        if generation != self._generation:
            return
        self._rows[view] = sorted(rows, key=lambda r: (-(r.updated_at or 0), r.id))
        self._waiting.discard(view)
        self._hydrate(generation, [r.counterpart(self.uid) for r in rows])
        self._emit()

    def _on_error(self, generation: int, view: str, error: RemoteStoreError) -> None:
        if generation != self._generation:
            return
        logger.warning(f"Friends view '{view}' for {self.uid} failed: {error}")
        self._rows[view] = []
        self._waiting.discard(view)
        self._emit()

    def _hydrate(self, generation: int, uids: List[Optional[str]]) -> None:
        missing = [uid for uid in uids if uid and not self.profiles.peek(uid)[0]]
        if not missing:
            return

        async def _run():
            await self.profiles.get_many(missing)
            if generation == self._generation:
                self._emit()

        task = asyncio.get_running_loop().create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ==================== READ MODEL ====================

    def _entries(self, view: str) -> List[FriendEntry]:
        entries = []
        for relationship in self._rows[view]:
            other = relationship.counterpart(self.uid)
            if not other:
                continue
            _, profile = self.profiles.peek(other)
            entries.append(FriendEntry(relationship=relationship, counterpart_id=other, profile=profile))
        return entries

    @property
    def accepted_ids(self) -> List[str]:
        seen = dict.fromkeys(
            r.counterpart(self.uid) for r in self._rows[ACCEPTED] if r.counterpart(self.uid)
        )
        return list(seen)

    def state(self) -> FriendViewsState:
        incoming = self._entries(INCOMING)
        outgoing = self._entries(OUTGOING)
        return FriendViewsState(
            incoming=incoming,
            outgoing=outgoing,
            friends=self._entries(ACCEPTED),
            incoming_count=len(incoming),
            outgoing_count=len(outgoing),
            loading=self.loading,
        )
