"""Change request persistence on top of the document store.

Each change request is one document in the ``changeRequests``
collection, serialized with pydantic's JSON mode. Writes are field-level
so the executor and the webhook reconciler never overwrite each other's
fields.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from src.aicoder.state.models import ChangeRequest, ChangeRequestStatus, DEPLOY_SUCCESS
from src.aicoder.store import CHANGE_REQUESTS, DocumentStore, NotEqual


logger = logging.getLogger(__name__)


class DocumentChangeRequestRepository:
    """ChangeRequestRepository backed by a DocumentStore.

    Attributes:
        store: The document store holding the ``changeRequests`` collection.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def save(self, request: ChangeRequest) -> None:
        """Insert a new change request.

        Raises:
            DocumentExistsError: If the id is already used.
        """
        await self.store.insert(
            CHANGE_REQUESTS,
            request.id,
            request.model_dump(mode="json"),
        )

    async def get(self, request_id: str) -> Optional[ChangeRequest]:
        doc = await self.store.get(CHANGE_REQUESTS, request_id)
        return ChangeRequest.model_validate(doc) if doc is not None else None

    async def update_fields(
        self,
        request_id: str,
        fields: Dict[str, Any],
        conditions: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Write top-level fields, optionally guarded by conditions.

        Returns:
            True if the write was applied, False if a condition failed.
        """
        return await self.store.update(CHANGE_REQUESTS, request_id, fields, conditions)

    async def find_by_pr_number(self, pr_number: int) -> Optional[ChangeRequest]:
        docs = await self.store.query(CHANGE_REQUESTS, where={"pr_number": pr_number}, limit=1)
        return ChangeRequest.model_validate(docs[0]) if docs else None

    async def find_by_commit(self, sha: str) -> Optional[ChangeRequest]:
        """Find the request whose merge commit or own commit has this SHA."""
        for field in ("merge_commit_sha", "commit_sha"):
            docs = await self.store.query(CHANGE_REQUESTS, where={field: sha}, limit=1)
            if docs:
                return ChangeRequest.model_validate(docs[0])
        return None

    async def latest_undeployed_complete(self) -> Optional[ChangeRequest]:
        """The most recently updated complete request without a recorded deploy."""
        docs = await self.store.query(
            CHANGE_REQUESTS,
            where={
                "status": ChangeRequestStatus.COMPLETE.value,
                "deploy_status": NotEqual(DEPLOY_SUCCESS),
            },
            order_by="updated_at",
            descending=True,
            limit=1,
        )
        return ChangeRequest.model_validate(docs[0]) if docs else None

    async def list_by_status(self, status: ChangeRequestStatus) -> List[ChangeRequest]:
        docs = await self.store.query(
            CHANGE_REQUESTS,
            where={"status": status.value},
            order_by="created_at",
        )
        return [ChangeRequest.model_validate(doc) for doc in docs]
