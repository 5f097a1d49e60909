"""In-memory document store.

Used when no database is configured and throughout the test suite. All
reads and writes go through a single asyncio.Lock, and subscribers get a
deep copy of the document after each write through their own queue.
"""

import asyncio
import copy
import logging
from collections import defaultdict
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from src.aicoder.store.base import (
    Document,
    DocumentExistsError,
    DocumentNotFoundError,
    UniqueConstraintError,
    matches_conditions,
)


logger = logging.getLogger(__name__)

_Key = Tuple[str, str]


def _sort_key(doc: Mapping[str, Any], field: str) -> Tuple[bool, Any]:
    value = doc.get(field)
    if value is None:
        return (False, 0)
    return (True, value)


class InMemoryDocumentStore:
    """Process-local implementation of the DocumentStore protocol.

    Attributes:
        unique_fields: Map of collection name to fields whose non-null
            values must be unique within that collection.
    """

    def __init__(self, unique_fields: Optional[Mapping[str, Sequence[str]]] = None):
        self.unique_fields: Dict[str, List[str]] = {
            collection: list(fields)
            for collection, fields in (unique_fields or {}).items()
        }
        self._documents: Dict[str, Dict[str, Document]] = defaultdict(dict)
        self._subscribers: Dict[_Key, List[asyncio.Queue]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def _check_unique(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        for field in self.unique_fields.get(collection, []):
            value = data.get(field)
            if value is None:
                continue
            for other_id, other in self._documents[collection].items():
                if other_id != doc_id and other.get(field) == value:
                    raise UniqueConstraintError(collection, field, value)

    def _publish(self, collection: str, doc_id: str) -> None:
        queues = self._subscribers.get((collection, doc_id))
        if not queues:
            return
        snapshot = self._documents[collection][doc_id]
        for queue in queues:
            queue.put_nowait(copy.deepcopy(snapshot))

    async def insert(self, collection: str, doc_id: str, data: Document) -> None:
        async with self._lock:
            if doc_id in self._documents[collection]:
                raise DocumentExistsError(collection, doc_id)
            self._check_unique(collection, doc_id, data)
            self._documents[collection][doc_id] = copy.deepcopy(data)
            self._publish(collection, doc_id)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        async with self._lock:
            doc = self._documents[collection].get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Document,
        conditions: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        async with self._lock:
            current = self._documents[collection].get(doc_id)
            if current is None:
                raise DocumentNotFoundError(collection, doc_id)
            if conditions and not matches_conditions(current, conditions):
                return False
            merged = {**current, **copy.deepcopy(fields)}
            self._check_unique(collection, doc_id, merged)
            self._documents[collection][doc_id] = merged
            self._publish(collection, doc_id)
            return True

    async def upsert(self, collection: str, doc_id: str, fields: Document) -> None:
        async with self._lock:
            current = self._documents[collection].get(doc_id, {})
            merged = {**current, **copy.deepcopy(fields)}
            self._check_unique(collection, doc_id, merged)
            self._documents[collection][doc_id] = merged
            self._publish(collection, doc_id)

    async def query(
        self,
        collection: str,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Document]:
        async with self._lock:
            docs = [
                copy.deepcopy(doc)
                for doc in self._documents[collection].values()
                if not where or matches_conditions(doc, where)
            ]
        if order_by is not None:
            # None sorts first ascending, last descending
            docs.sort(key=lambda d: _sort_key(d, order_by), reverse=descending)
        if limit is not None:
            docs = docs[:limit]
        return docs

    async def subscribe(self, collection: str, doc_id: str) -> AsyncIterator[Document]:
        queue: asyncio.Queue = asyncio.Queue()
        key = (collection, doc_id)
        async with self._lock:
            self._subscribers[key].append(queue)
            current = self._documents[collection].get(doc_id)
            if current is not None:
                queue.put_nowait(copy.deepcopy(current))
        try:
            while True:
                yield await queue.get()
        finally:
            subscribers = self._subscribers.get(key)
            if subscribers is not None and queue in subscribers:
                subscribers.remove(queue)
                if not subscribers:
                    del self._subscribers[key]

    def subscriber_count(self, collection: str, doc_id: str) -> int:
        return len(self._subscribers.get((collection, doc_id), []))
