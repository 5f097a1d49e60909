"""Change request state machine models.

This module defines the data models for the change request lifecycle, including:
- ChangeRequestStatus: Enum of all lifecycle states
- StatusTransition: Record of a status change with timestamp and details
- ChangeRequest: Complete record of one attempt to change the codebase
- VALID_TRANSITIONS: Map defining allowed status transitions

The models use Pydantic for validation, consistent with the service's
approach in policy/models.py and config.py.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ChangeRequestStatus(str, Enum):
    """Lifecycle states of a change request.

    Status Flow:
        pending → provisioning → running_agent → committing → pr_opened
        → complete

    Any non-terminal status can transition to 'failed'. Both 'complete'
    and 'failed' are terminal; a retry creates a new change request.

    Attributes:
        PENDING: Request accepted by the policy engine, nothing started yet.
        PROVISIONING: Sandbox being created and the repository cloned.
        RUNNING_AGENT: Coding agent running inside the sandbox.
        COMMITTING: Diff validated; committing and pushing the branch.
        PR_OPENED: Pull request opened; waiting for merge.
        COMPLETE: Pull request merged.
        FAILED: Pipeline failed, was cancelled, or the PR was closed unmerged.
    """

    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING_AGENT = "running_agent"
    COMMITTING = "committing"
    PR_OPENED = "pr_opened"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ChangeRequestStatus.COMPLETE, ChangeRequestStatus.FAILED})

DEPLOY_SUCCESS = "success"


class StatusTransition(BaseModel):
    """Record of a status transition.

    Attributes:
        from_status: The status before the transition.
        to_status: The status after the transition.
        timestamp: When the transition occurred (UTC).
        details: Optional metadata (error, PR number, webhook delivery).
    """

    from_status: ChangeRequestStatus
    to_status: ChangeRequestStatus
    timestamp: datetime = Field(default_factory=_now)
    details: Dict[str, Any] = Field(default_factory=dict)


class ChangeRequest(BaseModel):
    """One attempt to change the codebase on an operator's behalf.

    Created by the pipeline executor once the prompt passes policy
    validation, mutated by the executor and the webhook reconciler, and
    never deleted.

    Attributes:
        id: Opaque generated identifier.
        session_id: Correlates the request with one chat/tool invocation.
        status: Current lifecycle status.
        prompt: The operator's request as given to the agent.
        summary: Short summary used for the branch name and PR title.
        skill_id: Skill the request ran under.
        operator: Display name of the requesting operator.
        branch_name: Feature branch pushed by the pipeline.
        commit_sha: SHA of the pipeline's commit.
        merge_commit_sha: SHA of the merge commit once the PR is merged.
        files_changed: Destination paths of every changed file.
        pr_number: Pull request number. Unique across all requests.
        pr_url: Pull request URL.
        checks_status: Latest CI conclusion, or "pending".
        deploy_status: "success" once a production deploy was recorded.
        deploy_url: URL of the recorded deployment.
        deploy_is_production: Whether the recorded deployment is production.
        plan_id: Plan tracking this request, if any.
        retry_of: Id of the failed request this one retries.
        error: Human-readable failure cause when failed.
        state_history: Ordered audit trail of status transitions.
        created_at: Creation time (UTC).
        updated_at: Last write time (UTC).
    """

    id: str = Field(default_factory=lambda: f"cr-{uuid.uuid4().hex}")
    session_id: str = Field(..., min_length=1)
    status: ChangeRequestStatus = ChangeRequestStatus.PENDING

    prompt: str = Field(..., min_length=1)
    summary: str = ""
    skill_id: str = Field(..., min_length=1)
    operator: str = "unknown"

    branch_name: Optional[str] = None
    commit_sha: Optional[str] = None
    merge_commit_sha: Optional[str] = None
    files_changed: List[str] = Field(default_factory=list)

    pr_number: Optional[int] = Field(default=None, gt=0)
    pr_url: Optional[str] = None

    checks_status: Optional[str] = None
    deploy_status: Optional[str] = None
    deploy_url: Optional[str] = None
    deploy_is_production: Optional[bool] = None

    plan_id: Optional[str] = None
    retry_of: Optional[str] = None
    error: Optional[str] = None

    state_history: List[StatusTransition] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# Valid status transitions map
#
# - Every non-terminal status can transition to FAILED
# - COMPLETE and FAILED are terminal (retries create a new request)
VALID_TRANSITIONS: Dict[ChangeRequestStatus, List[ChangeRequestStatus]] = {
    ChangeRequestStatus.PENDING: [
        ChangeRequestStatus.PROVISIONING,
        ChangeRequestStatus.FAILED,
    ],
    ChangeRequestStatus.PROVISIONING: [
        ChangeRequestStatus.RUNNING_AGENT,
        ChangeRequestStatus.FAILED,
    ],
    ChangeRequestStatus.RUNNING_AGENT: [
        ChangeRequestStatus.COMMITTING,
        ChangeRequestStatus.FAILED,
    ],
    ChangeRequestStatus.COMMITTING: [
        ChangeRequestStatus.PR_OPENED,
        ChangeRequestStatus.FAILED,
    ],
    ChangeRequestStatus.PR_OPENED: [
        ChangeRequestStatus.COMPLETE,
        ChangeRequestStatus.FAILED,
    ],
    ChangeRequestStatus.COMPLETE: [],
    ChangeRequestStatus.FAILED: [],
}

# Position of each status along the happy path; FAILED ranks last.
STATUS_ORDER: Dict[ChangeRequestStatus, int] = {
    status: index for index, status in enumerate(ChangeRequestStatus)
}


def is_valid_transition(
    from_status: ChangeRequestStatus,
    to_status: ChangeRequestStatus,
) -> bool:
    """Check if a status transition is allowed.

    Example:
        >>> is_valid_transition(ChangeRequestStatus.PENDING, ChangeRequestStatus.PROVISIONING)
        True
        >>> is_valid_transition(ChangeRequestStatus.FAILED, ChangeRequestStatus.PENDING)
        False
    """
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def is_terminal_status(status: ChangeRequestStatus) -> bool:
    return status in TERMINAL_STATUSES
