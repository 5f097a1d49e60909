"""Async GitHub REST client used by the pull request service.

Only the endpoints the pipeline needs are wrapped: pull requests, check
runs, reviews, commit statuses, and deployments. Transient failures
(network errors and 408/5xx responses) are retried with jittered
exponential backoff; rate limiting is surfaced immediately as
RateLimitError so callers can decide whether to wait.
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional

import httpx

from src.aicoder.github.models import PRCreateRequest, PRCreateResult


logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
RETRY_STATUSES = frozenset({408, 500, 502, 503, 504})


class GitHubAPIError(Exception):
    """A GitHub request that failed for good.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status, or None when no response arrived.
        response_body: Raw response text, if any.
        request_url: URL of the failed request.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(GitHubAPIError):
    """GitHub refused the request because the token is out of quota."""

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


def _header_int(headers: httpx.Headers, name: str) -> Optional[int]:
    try:
        return int(headers[name])
    except (KeyError, ValueError):
        return None


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    # Secondary limits come back as 403 with an exhausted quota header.
    return (
        response.status_code == 403
        and _header_int(response.headers, "x-ratelimit-remaining") == 0
    )


def _rate_limit_error(response: httpx.Response) -> RateLimitError:
    reset_at = _header_int(response.headers, "x-ratelimit-reset")
    retry_after = _header_int(response.headers, "retry-after")
    if retry_after is None and reset_at is not None:
        retry_after = max(0, reset_at - int(time.time()))
    return RateLimitError(
        "GitHub API rate limit exceeded",
        status_code=response.status_code,
        reset_at=reset_at,
        retry_after=retry_after,
        request_url=str(response.url),
    )


class GitHubClient:
    """Thin async wrapper over the GitHub REST API.

    Works against github.com or a GitHub Enterprise Server ``base_url``.

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as client:
        ...     pr = await client.get_pull_request("owner", "repo", 42)
    """

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            token: Token used as a bearer credential.
            base_url: API root.
            max_retries: Retries after the first attempt for transient failures.
            base_delay: First backoff ceiling in seconds; doubles per retry.
            max_delay: Upper bound for any single backoff.
            timeout: Per-request timeout in seconds.
            transport: Custom httpx transport (tests pass a MockTransport).
        """
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": API_VERSION,
                    "User-Agent": "aicoder-pipeline",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
        self._http = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _backoff(self, attempt: int, path: str, reason: str) -> None:
        ceiling = min(self.base_delay * (2 ** attempt), self.max_delay)
        delay = random.uniform(0, ceiling)
        logger.warning(
            "Transient GitHub failure, retrying",
            extra={"path": path, "reason": reason, "attempt": attempt + 1, "delay": delay},
        )
        await asyncio.sleep(delay)

    async def _call(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send one API call with retries and return the decoded JSON body.

        Raises:
            RateLimitError: Quota exhausted (never retried here).
            GitHubAPIError: Non-retryable status, or retries used up.
        """
        for attempt in range(self.max_retries + 1):
            last_attempt = attempt == self.max_retries
            try:
                response = await self.http.request(method, path, json=json_data, params=params)
            except httpx.RequestError as e:
                if last_attempt:
                    logger.error(
                        "GitHub request failed after retries",
                        extra={"path": path, "method": method, "error": str(e)},
                    )
                    raise GitHubAPIError(
                        f"Request failed after {self.max_retries} retries: {e}",
                        request_url=f"{self.base_url}{path}",
                    ) from e
                await self._backoff(attempt, path, str(e))
                continue

            if _is_rate_limited(response):
                error = _rate_limit_error(response)
                logger.warning(
                    "GitHub API rate limit exceeded",
                    extra={"path": path, "retry_after": error.retry_after},
                )
                raise error

            if response.status_code in RETRY_STATUSES and not last_attempt:
                await self._backoff(attempt, path, f"HTTP {response.status_code}")
                continue

            if response.is_error:
                logger.error(
                    "GitHub API error",
                    extra={
                        "method": method,
                        "path": path,
                        "status_code": response.status_code,
                        "response_body": response.text[:500],
                    },
                )
                raise GitHubAPIError(
                    f"GitHub API error: {response.status_code}",
                    status_code=response.status_code,
                    response_body=response.text,
                    request_url=str(response.url),
                )

            return response.json() if response.content else {}

        raise AssertionError("unreachable")

    async def create_pr(self, owner: str, repo: str, request: PRCreateRequest) -> PRCreateResult:
        logger.info(
            "Opening pull request",
            extra={"repo": f"{owner}/{repo}", "head": request.head_branch, "base": request.base_branch},
        )
        data = await self._call(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json_data={
                "title": request.title,
                "body": request.body,
                "head": request.head_branch,
                "base": request.base_branch,
            },
        )
        result = PRCreateResult.from_github_response(data)
        logger.info(
            "Pull request opened",
            extra={"pr_number": result.pr_number, "pr_url": result.pr_url},
        )
        return result

    async def get_pull_request(self, owner: str, repo: str, pr_number: int) -> Dict[str, Any]:
        return await self._call("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}")

    async def list_check_runs(self, owner: str, repo: str, ref: str) -> Dict[str, Any]:
        """Check runs for a commit: ``{"total_count": n, "check_runs": [...]}``."""
        return await self._call("GET", f"/repos/{owner}/{repo}/commits/{ref}/check-runs")

    async def list_reviews(self, owner: str, repo: str, pr_number: int) -> List[Dict[str, Any]]:
        return await self._call("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}/reviews")

    async def list_commit_statuses(self, owner: str, repo: str, ref: str) -> List[Dict[str, Any]]:
        return await self._call("GET", f"/repos/{owner}/{repo}/commits/{ref}/statuses")

    async def list_deployments(self, owner: str, repo: str, sha: str) -> List[Dict[str, Any]]:
        return await self._call("GET", f"/repos/{owner}/{repo}/deployments", params={"sha": sha})

    async def list_deployment_statuses(
        self, owner: str, repo: str, deployment_id: int
    ) -> List[Dict[str, Any]]:
        return await self._call(
            "GET", f"/repos/{owner}/{repo}/deployments/{deployment_id}/statuses"
        )

    async def merge_pr(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        merge_method: str = "squash",
    ) -> Dict[str, Any]:
        """Merge a pull request.

        Raises:
            GitHubAPIError: GitHub refused the merge (405 when not mergeable).
        """
        logger.info(
            "Merging pull request",
            extra={"repo": f"{owner}/{repo}", "pr_number": pr_number, "merge_method": merge_method},
        )
        return await self._call(
            "PUT",
            f"/repos/{owner}/{repo}/pulls/{pr_number}/merge",
            json_data={"merge_method": merge_method},
        )
