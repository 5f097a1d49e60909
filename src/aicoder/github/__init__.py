"""GitHub integration: REST client, PR conventions, and status lookups."""

from src.aicoder.github.client import GitHubAPIError, GitHubClient, RateLimitError
from src.aicoder.github.models import (
    ChecksStatus,
    PRCreateRequest,
    PRCreateResult,
    PRState,
    PRStatus,
    ReviewState,
)
from src.aicoder.github.pr import (
    PullRequestService,
    build_commit_message,
    build_pr_body,
    build_pr_title,
    generate_branch_name,
    slugify,
)

__all__ = [
    "ChecksStatus",
    "GitHubAPIError",
    "GitHubClient",
    "PRCreateRequest",
    "PRCreateResult",
    "PRState",
    "PRStatus",
    "PullRequestService",
    "RateLimitError",
    "ReviewState",
    "build_commit_message",
    "build_pr_body",
    "build_pr_title",
    "generate_branch_name",
    "slugify",
]
