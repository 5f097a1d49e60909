"""Unit tests for PostgresDocumentStore with a mocked asyncpg pool."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.aicoder.store import NotEqual, UNIQUE_FIELDS
from src.aicoder.store.base import DocumentNotFoundError, DocumentStoreError
from src.aicoder.store.postgres import NOTIFY_CHANNEL, PostgresDocumentStore


def run_async(coro):
    return asyncio.run(coro)


class FakeContext:
    """Async context manager returning a fixed value."""

    def __init__(self, value=None):
        self.value = value

    async def __aenter__(self):
        return self.value

    async def __aexit__(self, exc_type, exc, tb):
        return False


def create_mock_store(fetchval=None, fetch=None):
    """A store whose pool hands out one mocked connection."""
    conn = MagicMock()
    conn.fetchval = AsyncMock(return_value=fetchval)
    conn.fetch = AsyncMock(return_value=fetch or [])
    conn.execute = AsyncMock()
    conn.transaction.return_value = FakeContext()

    pool = MagicMock()
    pool.acquire.return_value = FakeContext(conn)

    store = PostgresDocumentStore("postgresql://test", unique_fields=UNIQUE_FIELDS)
    store._pool = pool
    return store, conn


def test_requires_connect():
    store = PostgresDocumentStore("postgresql://test")
    with pytest.raises(DocumentStoreError, match="connect"):
        run_async(store.get("changeRequests", "cr-1"))


def test_get_decodes_json():
    store, conn = create_mock_store(fetchval=json.dumps({"status": "pending"}))

    assert run_async(store.get("changeRequests", "cr-1")) == {"status": "pending"}
    assert conn.fetchval.await_args.args[1:] == ("changeRequests", "cr-1")


def test_query_builds_containment_filters():
    store, conn = create_mock_store(fetch=[{"data": json.dumps({"id": "cr-1"})}])

    docs = run_async(
        store.query(
            "changeRequests",
            where={"status": "complete", "deploy_status": NotEqual("success")},
            order_by="updated_at",
            descending=True,
            limit=1,
        )
    )

    sql, *params = conn.fetch.await_args.args
    assert docs == [{"id": "cr-1"}]
    assert "data @> $2::jsonb" in sql
    assert "NOT (data @> $3::jsonb)" in sql
    assert "ORDER BY data -> $4 DESC NULLS LAST" in sql
    assert sql.endswith("LIMIT $5")
    assert params == [
        "changeRequests",
        json.dumps({"status": "complete"}),
        json.dumps({"deploy_status": "success"}),
        "updated_at",
        1,
    ]


def test_update_checks_conditions_before_writing():
    store, conn = create_mock_store(fetchval=json.dumps({"status": "running_agent"}))

    applied = run_async(
        store.update("changeRequests", "cr-1", {"status": "failed"}, conditions={"status": "pending"})
    )

    assert applied is False
    conn.execute.assert_not_awaited()


def test_update_merges_and_notifies():
    store, conn = create_mock_store(fetchval=json.dumps({"status": "pending"}))

    applied = run_async(
        store.update("changeRequests", "cr-1", {"status": "provisioning"}, conditions={"status": "pending"})
    )

    assert applied is True
    update_call, notify_call = conn.execute.await_args_list
    assert "data || $3::jsonb" in update_call.args[0]
    assert json.loads(update_call.args[3]) == {"status": "provisioning"}
    assert notify_call.args[1] == NOTIFY_CHANNEL


def test_update_missing_document():
    store, _ = create_mock_store(fetchval=None)
    with pytest.raises(DocumentNotFoundError):
        run_async(store.update("changeRequests", "cr-1", {"status": "failed"}))


def test_ensure_schema_creates_unique_indexes():
    store, conn = create_mock_store()

    run_async(store.ensure_schema())

    statements = [call.args[0] for call in conn.execute.await_args_list]
    assert "CREATE TABLE IF NOT EXISTS documents" in statements[0]
    assert any(
        "documents_unique_changerequests_pr_number" in s and "data->>'pr_number'" in s
        for s in statements
    )


def test_notifications_wake_matching_subscribers():
    async def scenario():
        store = PostgresDocumentStore("postgresql://test")
        queue: asyncio.Queue = asyncio.Queue()
        store._subscribers[("plans", "plan-1")].append(queue)
        store._on_notify(None, 1, NOTIFY_CHANNEL, json.dumps({"collection": "plans", "id": "plan-1"}))
        store._on_notify(None, 1, NOTIFY_CHANNEL, json.dumps({"collection": "plans", "id": "other"}))
        store._on_notify(None, 1, NOTIFY_CHANNEL, "not json")
        return queue.qsize()

    assert run_async(scenario()) == 1
