"""Document persistence.

Collections used by the service:
- changeRequests: one document per change attempt
- plans: live checklists
- config: policy overrides
"""

from src.aicoder.store.base import (
    Document,
    DocumentExistsError,
    DocumentNotFoundError,
    DocumentStore,
    DocumentStoreError,
    NotEqual,
    UniqueConstraintError,
)
from src.aicoder.store.memory import InMemoryDocumentStore
from src.aicoder.store.postgres import PostgresDocumentStore

CHANGE_REQUESTS = "changeRequests"
PLANS = "plans"
CONFIG = "config"

UNIQUE_FIELDS = {CHANGE_REQUESTS: ["pr_number"]}

__all__ = [
    "CHANGE_REQUESTS",
    "CONFIG",
    "Document",
    "DocumentExistsError",
    "DocumentNotFoundError",
    "DocumentStore",
    "DocumentStoreError",
    "InMemoryDocumentStore",
    "NotEqual",
    "PLANS",
    "PostgresDocumentStore",
    "UNIQUE_FIELDS",
    "UniqueConstraintError",
]
