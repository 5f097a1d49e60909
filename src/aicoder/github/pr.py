"""Pull request conventions and status lookups.

Branch names, commit messages, PR titles and bodies follow the policy's
git settings. PullRequestService wraps GitHubClient with the policy's
repository so callers deal only in PR numbers.
"""

import logging
import re
import time
from typing import List, Optional

from src.aicoder.github.client import GitHubAPIError, GitHubClient
from src.aicoder.github.models import (
    ChecksStatus,
    PRCreateRequest,
    PRCreateResult,
    PRState,
    PRStatus,
    ReviewState,
)
from src.aicoder.policy.models import AICoderConfig, Skill


logger = logging.getLogger(__name__)

BRANCH_SLUG_LENGTH = 40
COMMIT_SUBJECT_LENGTH = 72


def slugify(summary: str) -> str:
    """Lowercase, keep [a-z0-9 -], turn whitespace runs into '-', truncate."""
    slug = re.sub(r"[^a-z0-9\s-]", "", summary.lower())
    slug = re.sub(r"\s+", "-", slug.strip())
    return slug[:BRANCH_SLUG_LENGTH]


def generate_branch_name(summary: str, config: AICoderConfig, now: Optional[float] = None) -> str:
    """``{branch_prefix}{slug}-{unix_ts}``."""
    timestamp = int(now if now is not None else time.time())
    return f"{config.git.branch_prefix}{slugify(summary)}-{timestamp}"


def build_commit_message(prompt: str, config: AICoderConfig) -> str:
    return f"{config.git.commit_prefix} {prompt[:COMMIT_SUBJECT_LENGTH]}"


def build_pr_title(summary: str, config: AICoderConfig) -> str:
    return f"{config.git.commit_prefix} {summary}"


def build_pr_body(
    summary: str,
    files_changed: List[str],
    skill: Skill,
    operator: str,
    config: AICoderConfig,
) -> str:
    """Fill the policy's PR template placeholders."""
    files = "\n".join(f"- `{f}`" for f in files_changed)
    return (
        config.git.pr_template
        .replace("{{summary}}", summary)
        .replace("{{files}}", files)
        .replace("{{skill}}", f"{skill.name} ({skill.id})")
        .replace("{{user}}", operator)
    )


class PullRequestService:
    """PR operations against the policy's repository.

    Attributes:
        client: GitHub API client.
        config: Policy providing repository and git settings.
    """

    def __init__(self, client: GitHubClient, config: AICoderConfig):
        self.client = client
        self.config = config

    @property
    def owner(self) -> str:
        return self.config.project.owner

    @property
    def repo(self) -> str:
        return self.config.project.repo_name

    async def open_pull_request(
        self,
        branch_name: str,
        summary: str,
        prompt: str,
        files_changed: List[str],
        skill: Skill,
        operator: str,
    ) -> PRCreateResult:
        """Open a PR from the pipeline's branch against the default branch.

        Raises:
            GitHubAPIError: If GitHub rejects the request.
        """
        request = PRCreateRequest(
            title=build_pr_title(summary, self.config),
            body=build_pr_body(prompt, files_changed, skill, operator, self.config),
            head_branch=branch_name,
            base_branch=self.config.project.default_branch,
        )
        return await self.client.create_pr(self.owner, self.repo, request)

    async def _checks_status(self, head_sha: str) -> ChecksStatus:
        try:
            data = await self.client.list_check_runs(self.owner, self.repo, head_sha)
        except GitHubAPIError as e:
            logger.warning(
                "Could not read check runs",
                extra={"head_sha": head_sha, "error": str(e)},
            )
            return ChecksStatus.NEUTRAL

        runs = data.get("check_runs", [])
        if data.get("total_count", len(runs)) == 0 or not runs:
            return ChecksStatus.NEUTRAL

        required = self.config.git.required_checks
        if required:
            by_name = {run.get("name"): run for run in runs}
            missing = [name for name in required if name not in by_name]
            if missing:
                return ChecksStatus.PENDING
            runs = [by_name[name] for name in required]

        conclusions = [run.get("conclusion") for run in runs]
        if all(c == "success" for c in conclusions):
            return ChecksStatus.SUCCESS
        if any(c == "failure" for c in conclusions):
            return ChecksStatus.FAILURE
        return ChecksStatus.PENDING

    async def _review_state(self, pr_number: int) -> ReviewState:
        try:
            reviews = await self.client.list_reviews(self.owner, self.repo, pr_number)
        except GitHubAPIError as e:
            logger.warning(
                "Could not read reviews",
                extra={"pr_number": pr_number, "error": str(e)},
            )
            return ReviewState.NONE

        if not reviews:
            return ReviewState.NONE
        latest = reviews[-1].get("state")
        if latest == "APPROVED":
            return ReviewState.APPROVED
        if latest == "CHANGES_REQUESTED":
            return ReviewState.CHANGES_REQUESTED
        return ReviewState.PENDING

    async def get_pr_status(self, pr_number: int) -> PRStatus:
        """PR state, aggregate checks, and latest review.

        Raises:
            GitHubAPIError: If the PR itself cannot be read.
        """
        pr = await self.client.get_pull_request(self.owner, self.repo, pr_number)
        if pr.get("merged"):
            state = PRState.MERGED
        else:
            state = PRState(pr.get("state", "open"))
        head_sha = (pr.get("head") or {}).get("sha")

        return PRStatus(
            pr_number=pr_number,
            state=state,
            mergeable=pr.get("mergeable"),
            checks_status=await self._checks_status(head_sha) if head_sha else ChecksStatus.NEUTRAL,
            review_state=await self._review_state(pr_number),
            head_sha=head_sha,
        )

    async def get_preview_url(self, pr_number: int) -> Optional[str]:
        """Find the preview deployment URL for a PR's head commit.

        Looks at commit statuses from the deploy provider first, then at
        successful deployment statuses. Returns None when nothing is
        available yet or GitHub cannot be read.
        """
        provider = self.config.deploy.provider.value
        try:
            pr = await self.client.get_pull_request(self.owner, self.repo, pr_number)
            head_sha = (pr.get("head") or {}).get("sha")
            if not head_sha:
                return None

            statuses = await self.client.list_commit_statuses(self.owner, self.repo, head_sha)
            for status in statuses:
                if provider in (status.get("context") or "").lower() and status.get("target_url"):
                    return status["target_url"]

            deployments = await self.client.list_deployments(self.owner, self.repo, head_sha)
            if deployments:
                deploy_statuses = await self.client.list_deployment_statuses(
                    self.owner, self.repo, deployments[0]["id"]
                )
                for status in deploy_statuses:
                    if status.get("state") == "success" and status.get("environment_url"):
                        return status["environment_url"]
        except GitHubAPIError as e:
            logger.warning(
                "Could not resolve preview URL",
                extra={"pr_number": pr_number, "error": str(e)},
            )
        return None

    async def merge_if_ready(self, pr_number: int) -> bool:
        """Squash-merge the PR if auto-merge is on and checks passed.

        Returns:
            True if the PR was merged. Failures are logged, never raised.
        """
        if not self.config.git.auto_merge:
            return False
        try:
            status = await self.get_pr_status(pr_number)
            if status.checks_status != ChecksStatus.SUCCESS:
                logger.info(
                    "Skipping auto-merge, checks not successful",
                    extra={"pr_number": pr_number, "checks_status": status.checks_status.value},
                )
                return False
            await self.client.merge_pr(self.owner, self.repo, pr_number)
        except GitHubAPIError as e:
            logger.warning(
                "Auto-merge failed",
                extra={"pr_number": pr_number, "error": str(e)},
            )
            return False
        logger.info("Pull request auto-merged", extra={"pr_number": pr_number})
        return True
