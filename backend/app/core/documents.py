# core/documents.py
"""
Document access for orders, payments and products.

Every state change in this service goes through `DocumentStore.update_if`:
read the current document, check a predicate, write the changes, all in one
atomic step. On Firestore that is a transaction; whoever loses a race sees
the predicate fail and gets `None` back instead of overwriting the winner.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Optional

from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

logger = logging.getLogger("mlfor")

Check = Callable[[Optional[dict]], bool]
Mutate = Callable[[dict], dict]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def run_in_thread(fn, *args, **kwargs):
    """
    Run blocking Firestore SDK calls safely in async code.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(fn, *args, **kwargs))


class DocumentStore(ABC):
    """One collection of JSON-like documents keyed by id."""

    collection: str

    @abstractmethod
    def get(self, doc_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    def create(self, doc_id: str, data: dict) -> bool:
        """Insert `data` unless the id is taken. Returns False if it already existed."""

    @abstractmethod
    def update_if(self, doc_id: str, check: Check, mutate: Mutate) -> Optional[dict]:
        """
        Atomically apply `mutate(current)` when `check(current)` holds.

        `check` receives None for a missing document. Returns the document after
        the update, or None when the check failed and nothing was written.
        """

    @abstractmethod
    def where(self, field: str, op: str, value: Any) -> list[dict]:
        ...


class FirestoreDocumentStore(DocumentStore):
    def __init__(self, db: firestore.Client, collection: str):
        self.db = db
        self.collection = collection
        self._ref = db.collection(collection)

    def get(self, doc_id: str) -> Optional[dict]:
        snap = self._ref.document(doc_id).get()
        return snap.to_dict() if snap.exists else None

    def create(self, doc_id: str, data: dict) -> bool:
        try:
            self._ref.document(doc_id).create(data)
        except AlreadyExists:
            logger.info(f"{self.collection}/{doc_id} already exists")
            return False
        return True

    def update_if(self, doc_id: str, check: Check, mutate: Mutate) -> Optional[dict]:
        doc_ref = self._ref.document(doc_id)

        @firestore.transactional
        def _apply(transaction):
            snap = doc_ref.get(transaction=transaction)
            current = snap.to_dict() if snap.exists else None
            if not check(current):
                return None
            changes = mutate(current)
            transaction.update(doc_ref, changes)
            return {**current, **changes}

        return _apply(self.db.transaction())

    def where(self, field: str, op: str, value: Any) -> list[dict]:
        query = self._ref.where(filter=FieldFilter(field, op, value))
        return [doc.to_dict() for doc in query.stream()]
