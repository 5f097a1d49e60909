"""GitHub data models.

Request/response models for pull request creation and the PR status
summary returned to the conversational agent.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class PRCreateRequest(BaseModel):
    """Parameters for opening a pull request."""

    title: str = Field(..., min_length=1)
    body: str = ""
    head_branch: str = Field(..., min_length=1)
    base_branch: str = Field(..., min_length=1)


class PRCreateResult(BaseModel):
    """A newly opened pull request."""

    pr_number: int = Field(..., gt=0)
    pr_url: str
    head_sha: Optional[str] = None

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "PRCreateResult":
        return cls(
            pr_number=data["number"],
            pr_url=data["html_url"],
            head_sha=(data.get("head") or {}).get("sha"),
        )


class PRState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"


class ChecksStatus(str, Enum):
    """Aggregate CI status of a pull request's head commit.

    NEUTRAL means no checks ran or they could not be read.
    """

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    NEUTRAL = "neutral"


class ReviewState(str, Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    PENDING = "pending"
    NONE = "none"


class PRStatus(BaseModel):
    """Summary of a pull request's state, checks, and reviews."""

    pr_number: int
    state: PRState
    mergeable: Optional[bool] = None
    checks_status: ChecksStatus = ChecksStatus.PENDING
    review_state: ReviewState = ReviewState.NONE
    head_sha: Optional[str] = None
