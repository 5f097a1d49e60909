"""Change request lifecycle.

- models: ChangeRequest, statuses, and the valid transitions map
- machine: ChangeRequestStateMachine with compare-and-set transitions
- repository: Persistence on top of the document store
"""

from src.aicoder.state.machine import (
    CANCELLED_ERROR,
    ChangeRequestNotFoundError,
    ChangeRequestRepository,
    ChangeRequestStateMachine,
    DuplicatePullRequestError,
    InvalidTransitionError,
    TransitionConflictError,
)
from src.aicoder.state.models import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    ChangeRequest,
    ChangeRequestStatus,
    StatusTransition,
    is_terminal_status,
    is_valid_transition,
)
from src.aicoder.state.repository import DocumentChangeRequestRepository

__all__ = [
    "CANCELLED_ERROR",
    "ChangeRequest",
    "ChangeRequestNotFoundError",
    "ChangeRequestRepository",
    "ChangeRequestStateMachine",
    "ChangeRequestStatus",
    "DocumentChangeRequestRepository",
    "DuplicatePullRequestError",
    "InvalidTransitionError",
    "StatusTransition",
    "TERMINAL_STATUSES",
    "TransitionConflictError",
    "VALID_TRANSITIONS",
    "is_terminal_status",
    "is_valid_transition",
]
