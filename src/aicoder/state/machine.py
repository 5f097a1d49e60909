"""Change request state machine.

This module implements the ChangeRequestStateMachine class that moves
change requests through their lifecycle with validation, an audit trail
of transitions, and compare-and-set persistence.

Status writes are guarded by the status the transition was validated
against. If another writer changed the status first, the machine re-reads
the record and re-validates, so two writers can never both apply
conflicting transitions. Field-level updates (CI checks, deployments)
never touch the status.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import TypeAdapter

from src.aicoder.state.models import (
    ChangeRequest,
    ChangeRequestStatus,
    DEPLOY_SUCCESS,
    StatusTransition,
    is_valid_transition,
)
from src.aicoder.store import NotEqual, UniqueConstraintError


logger = logging.getLogger(__name__)

MAX_TRANSITION_ATTEMPTS = 3
CANCELLED_ERROR = "cancelled"

_TIMESTAMP = TypeAdapter(datetime)


def _timestamp_now() -> str:
    """Current UTC time in the same JSON form model dumps use."""
    return _TIMESTAMP.dump_python(datetime.now(timezone.utc), mode="json")


class InvalidTransitionError(Exception):
    """Raised when an invalid status transition is attempted.

    Attributes:
        request_id: The change request.
        from_status: The current status.
        to_status: The attempted target status.
        message: Human-readable error message.
    """

    def __init__(
        self,
        request_id: str,
        from_status: ChangeRequestStatus,
        to_status: ChangeRequestStatus,
        message: Optional[str] = None,
    ):
        self.request_id = request_id
        self.from_status = from_status
        self.to_status = to_status
        self.message = message or (
            f"Invalid transition from {from_status.value} to {to_status.value}"
            f" for change request {request_id}"
        )
        super().__init__(self.message)


class ChangeRequestNotFoundError(Exception):
    """Raised when a change request does not exist.

    Attributes:
        request_id: The id that was not found.
    """

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Change request not found: {request_id}")


class TransitionConflictError(Exception):
    """Raised when concurrent writers keep winning the status race.

    Attributes:
        request_id: The contested change request.
        to_status: The transition that could not be applied.
        attempts: Number of compare-and-set attempts made.
    """

    def __init__(self, request_id: str, to_status: ChangeRequestStatus, attempts: int):
        self.request_id = request_id
        self.to_status = to_status
        self.attempts = attempts
        super().__init__(
            f"Could not transition {request_id} to {to_status.value} "
            f"after {attempts} attempts"
        )


class DuplicatePullRequestError(Exception):
    """Raised when a PR number is already owned by another change request.

    Attributes:
        pr_number: The duplicated PR number.
        existing_request_id: The change request that owns it.
    """

    def __init__(self, pr_number: int, existing_request_id: Optional[str] = None):
        self.pr_number = pr_number
        self.existing_request_id = existing_request_id
        message = f"PR #{pr_number} is already tracked"
        if existing_request_id:
            message += f" by change request {existing_request_id}"
        super().__init__(message)


@runtime_checkable
class ChangeRequestRepository(Protocol):
    """Protocol defining the interface for change request persistence.

    The document store implementation is in repository.py.
    """

    async def save(self, request: ChangeRequest) -> None:
        ...

    async def get(self, request_id: str) -> Optional[ChangeRequest]:
        ...

    async def update_fields(
        self,
        request_id: str,
        fields: Dict[str, Any],
        conditions: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Write fields if the stored record satisfies ``conditions``.

        Returns:
            True if applied, False if a condition failed.
        """
        ...

    async def find_by_pr_number(self, pr_number: int) -> Optional[ChangeRequest]:
        ...


class ChangeRequestStateMachine:
    """State machine for change request progression.

    The state machine enforces the following invariants:
    - Only transitions listed in VALID_TRANSITIONS are applied
    - Every transition is recorded with a timestamp in state_history
    - Transitions to FAILED always carry an error message
    - Terminal records are never moved; retries create new records
    - A recorded successful deploy is never overwritten

    Attributes:
        repository: The change request repository for persistence.

    Example:
        >>> machine = ChangeRequestStateMachine(repository)
        >>> request = await machine.create("session-1", "Make the header blue", "ui-enhancement")
        >>> request = await machine.transition(request.id, ChangeRequestStatus.PROVISIONING)
    """

    def __init__(self, repository: ChangeRequestRepository):
        self.repository = repository

    async def create(
        self,
        session_id: str,
        prompt: str,
        skill_id: str,
        operator: str = "unknown",
        summary: Optional[str] = None,
        plan_id: Optional[str] = None,
        retry_of: Optional[str] = None,
    ) -> ChangeRequest:
        """Create and persist a new change request in PENDING.

        Args:
            session_id: Chat/tool invocation the request belongs to.
            prompt: The validated operator prompt.
            skill_id: Skill the request runs under.
            operator: Display name of the requesting operator.
            summary: Short summary; defaults to the prompt.
            plan_id: Plan tracking this request, if any.
            retry_of: Id of the failed request being retried.

        Returns:
            The newly created change request.
        """
        request = ChangeRequest(
            session_id=session_id,
            prompt=prompt,
            summary=summary or prompt,
            skill_id=skill_id,
            operator=operator,
            plan_id=plan_id,
            retry_of=retry_of,
        )

        logger.info(
            "Creating change request",
            extra={
                "request_id": request.id,
                "session_id": session_id,
                "skill_id": skill_id,
                "retry_of": retry_of,
            },
        )

        await self.repository.save(request)
        return request

    async def get(self, request_id: str) -> Optional[ChangeRequest]:
        return await self.repository.get(request_id)

    async def _require(self, request_id: str) -> ChangeRequest:
        request = await self.repository.get(request_id)
        if request is None:
            raise ChangeRequestNotFoundError(request_id)
        return request

    async def transition(
        self,
        request_id: str,
        to_status: ChangeRequestStatus,
        details: Optional[Dict[str, Any]] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> ChangeRequest:
        """Move a change request to a new status.

        Validates the transition, appends an audit record, and persists
        with a compare-and-set on the current status. On a lost race the
        record is re-read and the transition re-validated.

        Args:
            request_id: The change request.
            to_status: Target status.
            details: Metadata recorded with the transition. For FAILED
                transitions the "error" key becomes the request's error.
            fields: Additional fields written atomically with the status.

        Returns:
            The updated change request.

        Raises:
            ChangeRequestNotFoundError: If the request doesn't exist.
            InvalidTransitionError: If the transition is not allowed.
            TransitionConflictError: If every attempt lost a race.
        """
        details = dict(details or {})
        extra_fields = dict(fields or {})

        for attempt in range(1, MAX_TRANSITION_ATTEMPTS + 1):
            request = await self._require(request_id)
            from_status = request.status

            if not is_valid_transition(from_status, to_status):
                logger.warning(
                    "Invalid status transition attempted",
                    extra={
                        "request_id": request_id,
                        "from_status": from_status.value,
                        "to_status": to_status.value,
                    },
                )
                raise InvalidTransitionError(request_id, from_status, to_status)

            now = datetime.now(timezone.utc)
            record = StatusTransition(
                from_status=from_status,
                to_status=to_status,
                timestamp=now,
                details=details,
            )

            update: Dict[str, Any] = dict(extra_fields)
            if to_status == ChangeRequestStatus.FAILED:
                error_message = details.get("error")
                if not error_message:
                    error_message = "Unknown error (no details provided)"
                    logger.warning(
                        "Transition to failed without error details",
                        extra={"request_id": request_id},
                    )
                update["error"] = error_message

            history: List[StatusTransition] = request.state_history + [record]
            updated = request.model_copy(
                update={
                    **update,
                    "status": to_status,
                    "state_history": history,
                    "updated_at": now,
                }
            )
            payload = updated.model_dump(
                mode="json",
                include=set(update) | {"status", "state_history", "updated_at"},
            )

            applied = await self.repository.update_fields(
                request_id,
                payload,
                conditions={"status": from_status.value},
            )
            if applied:
                logger.info(
                    "Change request transitioned",
                    extra={
                        "request_id": request_id,
                        "from_status": from_status.value,
                        "to_status": to_status.value,
                        "attempt": attempt,
                    },
                )
                return updated

            logger.info(
                "Status changed concurrently, retrying transition",
                extra={
                    "request_id": request_id,
                    "to_status": to_status.value,
                    "attempt": attempt,
                },
            )

        raise TransitionConflictError(request_id, to_status, MAX_TRANSITION_ATTEMPTS)

    async def fail(
        self,
        request_id: str,
        error: str,
        details: Optional[Dict[str, Any]] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> ChangeRequest:
        """Transition to FAILED with an error message."""
        return await self.transition(
            request_id,
            ChangeRequestStatus.FAILED,
            details={**(details or {}), "error": error},
            fields=fields,
        )

    async def cancel(self, request_id: str) -> ChangeRequest:
        """Fail a request because its sandbox was killed by an operator."""
        return await self.fail(request_id, CANCELLED_ERROR, details={"cancelled": True})

    async def open_pull_request(
        self,
        request_id: str,
        pr_number: int,
        pr_url: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> ChangeRequest:
        """Record the PR and transition to PR_OPENED in one write.

        Raises:
            DuplicatePullRequestError: If another request owns the PR number.
        """
        existing = await self.repository.find_by_pr_number(pr_number)
        if existing is not None and existing.id != request_id:
            raise DuplicatePullRequestError(pr_number, existing.id)

        try:
            return await self.transition(
                request_id,
                ChangeRequestStatus.PR_OPENED,
                details={"pr_number": pr_number},
                fields={**(fields or {}), "pr_number": pr_number, "pr_url": pr_url},
            )
        except UniqueConstraintError as e:
            raise DuplicatePullRequestError(pr_number) from e

    async def record_checks(self, request_id: str, conclusion: Optional[str]) -> ChangeRequest:
        """Record the latest CI conclusion. Last write wins; status is untouched.

        Raises:
            ChangeRequestNotFoundError: If the request doesn't exist.
        """
        await self._require(request_id)
        await self.repository.update_fields(
            request_id,
            {
                "checks_status": conclusion or "pending",
                "updated_at": _timestamp_now(),
            },
        )
        logger.info(
            "Recorded checks status",
            extra={"request_id": request_id, "checks_status": conclusion or "pending"},
        )
        return await self._require(request_id)

    async def record_deploy(self, request_id: str, url: str, is_production: bool) -> bool:
        """Record a successful deployment unless one is already recorded.

        Returns:
            True if this call recorded the deploy, False if one already was.

        Raises:
            ChangeRequestNotFoundError: If the request doesn't exist.
        """
        await self._require(request_id)
        applied = await self.repository.update_fields(
            request_id,
            {
                "deploy_status": DEPLOY_SUCCESS,
                "deploy_url": url,
                "deploy_is_production": is_production,
                "updated_at": _timestamp_now(),
            },
            conditions={"deploy_status": NotEqual(DEPLOY_SUCCESS)},
        )
        logger.info(
            "Deploy recorded" if applied else "Deploy already recorded, skipping",
            extra={"request_id": request_id, "deploy_url": url},
        )
        return applied

    async def update_details(self, request_id: str, **fields: Any) -> ChangeRequest:
        """Write non-status fields such as branch name or commit SHA."""
        request = await self._require(request_id)
        now = datetime.now(timezone.utc)
        updated = request.model_copy(update={**fields, "updated_at": now})
        await self.repository.update_fields(
            request_id,
            updated.model_dump(mode="json", include=set(fields) | {"updated_at"}),
        )
        return updated

    async def retry(self, request_id: str, operator: Optional[str] = None) -> ChangeRequest:
        """Create a new PENDING request that retries a failed one.

        Raises:
            ChangeRequestNotFoundError: If the request doesn't exist.
            InvalidTransitionError: If the request has not failed.
        """
        original = await self._require(request_id)
        if original.status != ChangeRequestStatus.FAILED:
            raise InvalidTransitionError(
                request_id,
                original.status,
                ChangeRequestStatus.PENDING,
                message=f"Only failed change requests can be retried ({request_id} is {original.status.value})",
            )
        return await self.create(
            session_id=f"{original.session_id}-retry-{uuid.uuid4().hex[:8]}",
            prompt=original.prompt,
            skill_id=original.skill_id,
            operator=operator or original.operator,
            summary=original.summary,
            plan_id=None,
            retry_of=original.id,
        )
