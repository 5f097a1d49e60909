"""Document store interface.

A minimal real-time key/value document store: every record is a JSON
object addressed by ``(collection, id)``. Writes are field-level and may
be guarded by conditions, which is how the state machine and the webhook
reconciler update the same record without losing each other's fields.
"""

from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)


Document = Dict[str, Any]


@dataclass(frozen=True)
class NotEqual:
    """Condition value that matches any stored value except ``value``."""

    value: Any


class DocumentStoreError(Exception):
    """Base class for document store failures.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class DocumentNotFoundError(DocumentStoreError):
    """Raised when updating a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document not found: {collection}/{doc_id}")


class DocumentExistsError(DocumentStoreError):
    """Raised when inserting a document whose id is already taken."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document already exists: {collection}/{doc_id}")


class UniqueConstraintError(DocumentStoreError):
    """Raised when a write would duplicate a unique field value.

    Attributes:
        collection: Collection with the unique field.
        field: Name of the unique field.
        value: The duplicated value.
    """

    def __init__(self, collection: str, field: str, value: Any):
        self.collection = collection
        self.field = field
        self.value = value
        super().__init__(
            f"Duplicate value for unique field {collection}.{field}: {value!r}"
        )


def matches_conditions(doc: Mapping[str, Any], conditions: Mapping[str, Any]) -> bool:
    """Return True if the document satisfies every condition."""
    for field, expected in conditions.items():
        actual = doc.get(field)
        if isinstance(expected, NotEqual):
            if actual == expected.value:
                return False
        elif actual != expected:
            return False
    return True


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document persistence.

    Implementations:
    - InMemoryDocumentStore: single-process store for development and tests
    - PostgresDocumentStore: JSONB documents in PostgreSQL
    """

    async def insert(self, collection: str, doc_id: str, data: Document) -> None:
        """Insert a new document.

        Raises:
            DocumentExistsError: If the id is already used in the collection.
            UniqueConstraintError: If a unique field value is already used.
        """
        ...

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return a copy of the document, or None if it does not exist."""
        ...

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Document,
        conditions: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Merge ``fields`` into a document if it satisfies ``conditions``.

        Args:
            collection: Collection name.
            doc_id: Document id.
            fields: Top-level fields to overwrite; other fields are kept.
            conditions: Field values the stored document must have. A
                NotEqual value matches anything except its wrapped value.

        Returns:
            True if the write was applied, False if a condition failed.

        Raises:
            DocumentNotFoundError: If the document does not exist.
            UniqueConstraintError: If a unique field value is already used.
        """
        ...

    async def upsert(self, collection: str, doc_id: str, fields: Document) -> None:
        """Create the document or merge ``fields`` into the existing one."""
        ...

    async def query(
        self,
        collection: str,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Document]:
        """Return documents matching ``where``, optionally ordered and limited."""
        ...

    def subscribe(self, collection: str, doc_id: str) -> AsyncIterator[Document]:
        """Yield the current document, then a snapshot after every write."""
        ...
