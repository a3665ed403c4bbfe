import asyncio
import logging
from typing import Any, List, Optional, Sequence

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1.base_query import FieldFilter as FirestoreFieldFilter

from ..core.config import settings
from .event_bus import Subscription
from .remote_store import (
    DESCENDING,
    DOCUMENT_ID,
    SERVER_TIMESTAMP,
    Decide,
    DocumentNotFoundError,
    DocumentSnapshot,
    DocumentStore,
    IndexRequiredError,
    OnError,
    OnSnapshot,
    PermissionDeniedError,
    Query,
    RemoteStoreError,
    Write,
)

logger = logging.getLogger(__name__)


def map_firestore_error(error: Exception) -> RemoteStoreError:
    """Translate google.api_core errors into the store's typed errors."""
    if isinstance(error, RemoteStoreError):
        return error
    if isinstance(error, google_exceptions.FailedPrecondition):
        return IndexRequiredError(str(error))
    if isinstance(error, google_exceptions.PermissionDenied):
        return PermissionDeniedError(str(error))
    if isinstance(error, google_exceptions.NotFound):
        return DocumentNotFoundError(str(error))
    if isinstance(error, google_exceptions.GoogleAPICallError):
        return RemoteStoreError(str(error), code="unavailable")
    return RemoteStoreError(str(error))


def _to_firestore_value(value: Any) -> Any:
    if value is SERVER_TIMESTAMP:
        return firestore.SERVER_TIMESTAMP
    if isinstance(value, dict):
        return {k: _to_firestore_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_firestore_value(v) for v in value]
    return value


class FirestoreDocumentStore(DocumentStore):
    """DocumentStore backed by Cloud Firestore through the Firebase Admin SDK."""

    def __init__(self, app: Optional[firebase_admin.App] = None):
        self._initialized = False
        self._app = app
        self._initialize_firebase()
        self._client = firestore.client(self._app)

    def _initialize_firebase(self):
        """Initialize Firebase Admin SDK."""
        if self._app is not None:
            self._initialized = True
            return
        try:
            if not firebase_admin._apps:
                # Load service account credentials
                cred = credentials.Certificate(settings.GOOGLE_APPLICATION_CREDENTIALS)
                options = {"projectId": settings.FIREBASE_PROJECT_ID} if settings.FIREBASE_PROJECT_ID else None
                self._app = firebase_admin.initialize_app(cred, options)
                logger.info("Firebase Admin SDK initialized successfully")
            else:
                self._app = firebase_admin.get_app()
                logger.info("Using existing Firebase Admin SDK instance")

            self._initialized = True

        except Exception as e:
            logger.error(f"Failed to initialize Firebase Admin SDK: {e}")
            raise

    # ---- mapping ----

    @staticmethod
    def _to_snapshot(doc) -> DocumentSnapshot:
        return DocumentSnapshot(
            id=doc.id,
            path=doc.reference.path,
            data=doc.to_dict() or {},
            exists=doc.exists,
        )

    def _build(self, query: Query):
        ref = self._client.collection(query.collection)
        for flt in query.filters:
            value = flt.value
            if flt.field == DOCUMENT_ID:
                # Document-id filters compare against references
                value = self._client.collection(query.collection).document(value)
            ref = ref.where(filter=FirestoreFieldFilter(flt.field, flt.op, value))
        for name, direction in query.orders:
            ref = ref.order_by(
                name,
                direction=firestore.Query.DESCENDING if direction == DESCENDING else firestore.Query.ASCENDING,
            )
        if query.cursor is not None:
            ref = ref.start_after(self._client.document(query.cursor.path).get())
        if query.limit is not None:
            ref = ref.limit(query.limit)
        return ref

    def _stage(self, target, write: Write) -> None:
        ref = self._client.document(write.path)
        data = _to_firestore_value(write.data)
        if write.kind == "set":
            target.set(ref, data, merge=write.merge)
        else:
            target.update(ref, data)

    # ---- DocumentStore ----

    def new_id(self, collection: str) -> str:
        return self._client.collection(collection).document().id

    async def get(self, path: str) -> DocumentSnapshot:
        try:
            doc = await asyncio.to_thread(self._client.document(path).get)
        except Exception as e:
            raise map_firestore_error(e) from e
        return self._to_snapshot(doc)

    async def query(self, query: Query) -> List[DocumentSnapshot]:
        def _run():
            return [self._to_snapshot(doc) for doc in self._build(query).stream()]

        try:
            return await asyncio.to_thread(_run)
        except Exception as e:
            raise map_firestore_error(e) from e

    async def commit(self, writes: Sequence[Write]) -> None:
        def _run():
            batch = self._client.batch()
            for write in writes:
                self._stage(batch, write)
            batch.commit()

        try:
            await asyncio.to_thread(_run)
        except Exception as e:
            raise map_firestore_error(e) from e

    async def run_transaction(self, read_paths: Sequence[str], decide: Decide) -> List[Write]:
        def _run():
            @firestore.transactional
            def _apply(transaction):
                snapshots = [
                    self._to_snapshot(self._client.document(path).get(transaction=transaction))
                    for path in read_paths
                ]
                writes = list(decide(snapshots))
                for write in writes:
                    self._stage(transaction, write)
                return writes

            return _apply(self._client.transaction())

        try:
            return await asyncio.to_thread(_run)
        except ValueError:
            raise
        except Exception as e:
            raise map_firestore_error(e) from e

    def listen(self, query: Query, on_next: OnSnapshot, on_error: Optional[OnError] = None) -> Subscription:
        """
        Probe the query once (the watch stream does not surface errors such as
        a missing index), then attach ``on_snapshot`` and marshal each
        delivery from the SDK thread back onto the event loop.
        """
        loop = asyncio.get_running_loop()
        state = {"watch": None}

        def _detach():
            if not task.done() and task is not asyncio.current_task():
                task.cancel()
            if state["watch"] is not None:
                state["watch"].unsubscribe()

        subscription = Subscription(_detach)

        def _deliver(snapshots: List[DocumentSnapshot]):
            if subscription.active:
                on_next(snapshots)

        def _callback(docs, changes, read_time):
            snapshots = [self._to_snapshot(doc) for doc in docs]
            loop.call_soon_threadsafe(_deliver, snapshots)

        async def _attach():
            try:
                await asyncio.to_thread(lambda: list(self._build(query.limit_to(1)).stream()))
            except Exception as e:
                error = map_firestore_error(e)
                if not subscription.active:
                    return
                subscription.close()
                if on_error is not None:
                    on_error(error)
                else:
                    logger.warning(f"Listener on {query.collection} failed: {error}")
                return
            if not subscription.active:
                return
            state["watch"] = self._build(query).on_snapshot(_callback)

        task = loop.create_task(_attach())
        return subscription
