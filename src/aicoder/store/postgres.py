"""PostgreSQL document store.

This module implements the DocumentStore protocol using asyncpg. It provides:
- Connection pooling for production use
- JSONB documents in a single ``documents`` table
- Conditional field-level updates inside row-locking transactions
- Unique indexes on selected document fields (e.g. PR numbers)
- Real-time subscriptions via LISTEN/NOTIFY

Call ``ensure_schema()`` once after ``connect()`` to create the table and
indexes.
"""

import asyncio
import json
import logging
import re
from collections import defaultdict
from contextlib import asynccontextmanager
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

import asyncpg

from src.aicoder.store.base import (
    Document,
    DocumentExistsError,
    DocumentNotFoundError,
    DocumentStoreError,
    NotEqual,
    UniqueConstraintError,
    matches_conditions,
)


logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "aicoder_documents"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (collection, id)
);
"""


def _index_name(collection: str, field: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", f"{collection}_{field}".lower())
    return f"documents_unique_{slug}"


class PostgresDocumentStore:
    """PostgreSQL implementation of the DocumentStore protocol.

    Attributes:
        connection_string: PostgreSQL connection URL.
        unique_fields: Map of collection name to fields whose non-null
            values must be unique within that collection.
        min_pool_size: Minimum connections in pool.
        max_pool_size: Maximum connections in pool.

    Example:
        >>> async with PostgresDocumentStore("postgresql://...") as store:
        ...     await store.ensure_schema()
        ...     doc = await store.get("changeRequests", "cr-123")
    """

    def __init__(
        self,
        connection_string: str,
        unique_fields: Optional[Mapping[str, Sequence[str]]] = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.unique_fields: Dict[str, List[str]] = {
            collection: list(fields)
            for collection, fields in (unique_fields or {}).items()
        }
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None
        self._listener: Optional[asyncpg.Connection] = None
        self._subscribers: Dict[Tuple[str, str], List[asyncio.Queue]] = defaultdict(list)
        self._unique_indexes: Dict[str, Tuple[str, str]] = {
            _index_name(collection, field): (collection, field)
            for collection, fields in self.unique_fields.items()
            for field in fields
        }

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected.

        Raises:
            DocumentStoreError: If the pool is not initialized.
        """
        if self._pool is None:
            raise DocumentStoreError(
                "Database pool not initialized. Call connect() first."
            )
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool and the notification listener.

        Raises:
            DocumentStoreError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            self._listener = await asyncpg.connect(self.connection_string)
            await self._listener.add_listener(NOTIFY_CHANNEL, self._on_notify)
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise DocumentStoreError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        """Close the listener connection and the pool."""
        if self._listener is not None:
            await self._listener.remove_listener(NOTIFY_CHANNEL, self._on_notify)
            await self._listener.close()
            self._listener = None
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None
            logger.info("PostgreSQL connection pool closed")

    async def __aenter__(self) -> "PostgresDocumentStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    async def ensure_schema(self) -> None:
        """Create the documents table and the unique field indexes."""
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
            for name, (collection, field) in self._unique_indexes.items():
                # Identifiers cannot be bound parameters; both come from code.
                await conn.execute(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS {name} "
                    f"ON documents ((data->>'{field}')) "
                    f"WHERE collection = '{collection}' "
                    f"AND data->>'{field}' IS NOT NULL"
                )
        logger.info(
            "Document store schema ready",
            extra={"unique_indexes": sorted(self._unique_indexes)},
        )

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    def _translate_unique(self, error: asyncpg.UniqueViolationError, data: Mapping[str, Any]) -> DocumentStoreError:
        constraint = getattr(error, "constraint_name", None)
        if constraint in self._unique_indexes:
            collection, field = self._unique_indexes[constraint]
            return UniqueConstraintError(collection, field, data.get(field))
        return DocumentStoreError(f"Unique violation: {error}", original_error=error)

    async def _notify(self, conn: asyncpg.Connection, collection: str, doc_id: str) -> None:
        payload = json.dumps({"collection": collection, "id": doc_id})
        await conn.execute("SELECT pg_notify($1, $2)", NOTIFY_CHANNEL, payload)

    async def insert(self, collection: str, doc_id: str, data: Document) -> None:
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO documents (collection, id, data)
                    VALUES ($1, $2, $3::jsonb)
                    """,
                    collection,
                    doc_id,
                    json.dumps(data),
                )
                await self._notify(conn, collection, doc_id)
        except asyncpg.UniqueViolationError as e:
            if getattr(e, "constraint_name", None) == "documents_pkey":
                raise DocumentExistsError(collection, doc_id) from e
            raise self._translate_unique(e, data) from e
        except DocumentStoreError:
            raise
        except Exception as e:
            logger.error(
                "Failed to insert document",
                extra={"collection": collection, "doc_id": doc_id, "error": str(e)},
            )
            raise DocumentStoreError(
                f"Failed to insert document: {e}", original_error=e
            ) from e

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        try:
            async with self.pool.acquire() as conn:
                raw = await conn.fetchval(
                    "SELECT data FROM documents WHERE collection = $1 AND id = $2",
                    collection,
                    doc_id,
                )
        except DocumentStoreError:
            raise
        except Exception as e:
            raise DocumentStoreError(
                f"Failed to get document: {e}", original_error=e
            ) from e
        return json.loads(raw) if raw is not None else None

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Document,
        conditions: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        try:
            async with self._transaction() as conn:
                raw = await conn.fetchval(
                    """
                    SELECT data FROM documents
                    WHERE collection = $1 AND id = $2
                    FOR UPDATE
                    """,
                    collection,
                    doc_id,
                )
                if raw is None:
                    raise DocumentNotFoundError(collection, doc_id)
                current = json.loads(raw)
                if conditions and not matches_conditions(current, conditions):
                    return False
                await conn.execute(
                    """
                    UPDATE documents
                    SET data = data || $3::jsonb, updated_at = now()
                    WHERE collection = $1 AND id = $2
                    """,
                    collection,
                    doc_id,
                    json.dumps(fields),
                )
                await self._notify(conn, collection, doc_id)
                return True
        except asyncpg.UniqueViolationError as e:
            raise self._translate_unique(e, fields) from e
        except DocumentStoreError:
            raise
        except Exception as e:
            logger.error(
                "Failed to update document",
                extra={"collection": collection, "doc_id": doc_id, "error": str(e)},
            )
            raise DocumentStoreError(
                f"Failed to update document: {e}", original_error=e
            ) from e

    async def upsert(self, collection: str, doc_id: str, fields: Document) -> None:
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO documents (collection, id, data)
                    VALUES ($1, $2, $3::jsonb)
                    ON CONFLICT (collection, id)
                    DO UPDATE SET data = documents.data || EXCLUDED.data,
                                  updated_at = now()
                    """,
                    collection,
                    doc_id,
                    json.dumps(fields),
                )
                await self._notify(conn, collection, doc_id)
        except asyncpg.UniqueViolationError as e:
            raise self._translate_unique(e, fields) from e
        except Exception as e:
            raise DocumentStoreError(
                f"Failed to upsert document: {e}", original_error=e
            ) from e

    async def query(
        self,
        collection: str,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Document]:
        clauses = ["collection = $1"]
        params: List[Any] = [collection]
        for field, expected in (where or {}).items():
            if isinstance(expected, NotEqual):
                params.append(json.dumps({field: expected.value}))
                clauses.append(f"NOT (data @> ${len(params)}::jsonb)")
            else:
                params.append(json.dumps({field: expected}))
                clauses.append(f"data @> ${len(params)}::jsonb")

        sql = f"SELECT data FROM documents WHERE {' AND '.join(clauses)}"
        if order_by is not None:
            params.append(order_by)
            direction = "DESC NULLS LAST" if descending else "ASC NULLS FIRST"
            sql += f" ORDER BY data -> ${len(params)} {direction}"
        if limit is not None:
            params.append(limit)
            sql += f" LIMIT ${len(params)}"

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(sql, *params)
        except DocumentStoreError:
            raise
        except Exception as e:
            raise DocumentStoreError(
                f"Failed to query documents: {e}", original_error=e
            ) from e
        return [json.loads(row["data"]) for row in rows]

    def _on_notify(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        try:
            message = json.loads(payload)
            key = (message["collection"], message["id"])
        except (ValueError, KeyError):
            logger.warning("Ignoring malformed notification", extra={"payload": payload})
            return
        for queue in self._subscribers.get(key, []):
            queue.put_nowait(None)

    async def subscribe(self, collection: str, doc_id: str) -> AsyncIterator[Document]:
        queue: asyncio.Queue = asyncio.Queue()
        key = (collection, doc_id)
        self._subscribers[key].append(queue)
        try:
            current = await self.get(collection, doc_id)
            if current is not None:
                yield current
            while True:
                await queue.get()
                # Coalesce bursts of notifications into one read.
                while not queue.empty():
                    queue.get_nowait()
                current = await self.get(collection, doc_id)
                if current is not None:
                    yield current
        finally:
            subscribers = self._subscribers.get(key)
            if subscribers is not None and queue in subscribers:
                subscribers.remove(queue)
                if not subscribers:
                    del self._subscribers[key]
