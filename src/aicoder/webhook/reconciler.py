"""Webhook reconciler.

Folds GitHub deliveries back into change request records:

- pull_request closed: merged → complete, otherwise failed
- check_run completed: latest CI conclusion on the matching request
- deployment_status success in production: deploy URL, recorded once

Deliveries for the same PR are serialized; deliveries for different PRs
run concurrently. Every update is idempotent, so GitHub redeliveries
leave records unchanged.
"""

import asyncio
import json
import logging
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ValidationError

from src.aicoder.events.emitter import EventEmitter, NullEventEmitter
from src.aicoder.events.models import EventType, PipelineEvent
from src.aicoder.plans.tracker import PlanError, PlanTracker
from src.aicoder.state.machine import ChangeRequestStateMachine, InvalidTransitionError
from src.aicoder.state.models import ChangeRequest, ChangeRequestStatus
from src.aicoder.state.repository import DocumentChangeRequestRepository
from src.aicoder.webhook.models import (
    KNOWN_EVENTS,
    CheckRunEvent,
    DeploymentStatusEvent,
    PullRequestEvent,
    parse_webhook_event,
)
from src.aicoder.webhook.signature import verify_signature


logger = logging.getLogger(__name__)

PR_CLOSED_ERROR = "PR was closed without merging"


class WebhookOutcome(str, Enum):
    ACCEPTED = "accepted"
    IGNORED = "ignored"
    REJECTED_SIGNATURE = "rejected_signature"
    REJECTED_PAYLOAD = "rejected_payload"


@dataclass
class WebhookResult:
    """Outcome of one delivery.

    Attributes:
        outcome: What the reconciler did with the delivery.
        detail: Short human-readable reason.
        request_id: The change request that was updated, if any.
    """

    outcome: WebhookOutcome
    detail: str = ""
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.outcome.value,
            "detail": self.detail,
            "request_id": self.request_id,
        }


def _ignored(detail: str, request_id: Optional[str] = None) -> WebhookResult:
    return WebhookResult(WebhookOutcome.IGNORED, detail, request_id)


class WebhookReconciler:
    """Applies GitHub webhook deliveries to change requests.

    Attributes:
        state_machine: Change request lifecycle.
        repository: Lookups by PR number and commit SHA.
        secret: Webhook secret; None or empty disables verification.
        plan_tracker: Closes out linked plans, if configured.
        event_emitter: Receives pipeline events.
    """

    def __init__(
        self,
        state_machine: ChangeRequestStateMachine,
        repository: DocumentChangeRequestRepository,
        secret: Optional[str] = None,
        plan_tracker: Optional[PlanTracker] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.state_machine = state_machine
        self.repository = repository
        self.secret = secret
        self.plan_tracker = plan_tracker
        self.event_emitter = event_emitter or NullEventEmitter()
        self._pr_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._deploy_lock = asyncio.Lock()

    def _lock_for(self, pr_number: int) -> asyncio.Lock:
        lock = self._pr_locks.get(pr_number)
        if lock is None:
            lock = asyncio.Lock()
            self._pr_locks[pr_number] = lock
        return lock

    async def handle(
        self,
        event_type: Optional[str],
        raw_body: bytes,
        signature: Optional[str],
    ) -> WebhookResult:
        """Verify, parse, and apply one delivery.

        Args:
            event_type: ``X-GitHub-Event`` header.
            raw_body: Request body exactly as received.
            signature: ``X-Hub-Signature-256`` header.

        Returns:
            WebhookResult. Unexpected errors propagate to the caller.
        """
        if not self.secret:
            logger.warning("Webhook secret not configured, skipping signature verification")
        elif not verify_signature(self.secret, raw_body, signature):
            logger.warning(
                "Rejected webhook with invalid signature",
                extra={"event_type": event_type},
            )
            return WebhookResult(WebhookOutcome.REJECTED_SIGNATURE, "Invalid signature")

        if event_type not in KNOWN_EVENTS:
            logger.debug("Ignoring webhook event type: %s", event_type)
            return _ignored(f"Unhandled event type: {event_type}")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            logger.warning("Webhook body is not valid JSON", extra={"event_type": event_type})
            return WebhookResult(WebhookOutcome.REJECTED_PAYLOAD, "Body is not valid JSON")
        if not isinstance(payload, dict):
            return WebhookResult(WebhookOutcome.REJECTED_PAYLOAD, "Body is not a JSON object")

        try:
            event = parse_webhook_event(event_type, payload)
        except ValidationError as e:
            logger.warning(
                "Malformed webhook payload",
                extra={"event_type": event_type, "errors": e.error_count()},
            )
            return WebhookResult(
                WebhookOutcome.REJECTED_PAYLOAD,
                f"Malformed {event_type} payload",
            )

        if isinstance(event, PullRequestEvent):
            return await self.handle_pull_request(event)
        if isinstance(event, CheckRunEvent):
            return await self.handle_check_run(event)
        return await self.handle_deployment_status(event)

    async def handle_pull_request(self, event: PullRequestEvent) -> WebhookResult:
        if event.action != "closed":
            return _ignored(f"pull_request action {event.action} not tracked")

        async with self._lock_for(event.pr_number):
            record = await self.repository.find_by_pr_number(event.pr_number)
            if record is None:
                return _ignored(f"No change request for PR #{event.pr_number}")

            pr = event.pull_request
            if pr.merged:
                target = ChangeRequestStatus.COMPLETE
                details: Dict[str, Any] = {"pr_number": pr.number, "merged": True}
                fields: Dict[str, Any] = {}
                if pr.merge_commit_sha:
                    fields["merge_commit_sha"] = pr.merge_commit_sha
            else:
                target = ChangeRequestStatus.FAILED
                details = {"pr_number": pr.number, "error": PR_CLOSED_ERROR}
                fields = {}

            if record.status == target:
                return _ignored("Already applied", record.id)

            try:
                updated = await self.state_machine.transition(
                    record.id, target, details=details, fields=fields
                )
            except InvalidTransitionError as e:
                logger.info(
                    "Pull request event does not apply to change request",
                    extra={
                        "request_id": record.id,
                        "pr_number": pr.number,
                        "status": record.status.value,
                        "error": str(e),
                    },
                )
                return _ignored(str(e), record.id)

            await self._emit(
                EventType.STATE_TRANSITION,
                updated,
                {"from_status": record.status.value, "to_status": target.value},
            )
            await self._close_plan(updated, succeeded=pr.merged)

        logger.info(
            "Pull request reconciled",
            extra={"request_id": record.id, "pr_number": pr.number, "status": target.value},
        )
        return WebhookResult(WebhookOutcome.ACCEPTED, f"Change request {target.value}", record.id)

    async def handle_check_run(self, event: CheckRunEvent) -> WebhookResult:
        check_run = event.check_run
        if event.action != "completed":
            return _ignored(f"check_run action {event.action} not tracked")
        if not check_run.pull_requests:
            return _ignored("check_run has no pull requests")

        updated_id: Optional[str] = None
        for pr_ref in check_run.pull_requests:
            async with self._lock_for(pr_ref.number):
                record = await self.repository.find_by_pr_number(pr_ref.number)
                if record is None:
                    continue
                await self.state_machine.record_checks(record.id, check_run.conclusion)
                updated_id = updated_id or record.id

        if updated_id is None:
            return _ignored("No change request for check_run pull requests")
        return WebhookResult(WebhookOutcome.ACCEPTED, "Checks recorded", updated_id)

    async def handle_deployment_status(self, event: DeploymentStatusEvent) -> WebhookResult:
        if event.deployment_status.state != "success":
            return _ignored(f"deployment state {event.deployment_status.state} not tracked")
        if not event.is_production:
            return _ignored(f"deployment environment {event.environment!r} is not production")
        url = event.url
        if not url:
            return _ignored("deployment_status has no URL")

        async with self._deploy_lock:
            record = await self.repository.find_by_commit(event.deployment.sha)
            matched_by = "sha"
            if record is None:
                record = await self.repository.latest_undeployed_complete()
                matched_by = "latest_complete"
            if record is None:
                return _ignored("No change request awaiting deploy")

            applied = await self.state_machine.record_deploy(record.id, url, event.is_production)

        if not applied:
            return _ignored("Deploy already recorded", record.id)

        logger.info(
            "Deployment reconciled",
            extra={
                "request_id": record.id,
                "deploy_url": url,
                "sha": event.deployment.sha,
                "matched_by": matched_by,
            },
        )
        return WebhookResult(WebhookOutcome.ACCEPTED, "Deploy recorded", record.id)

    async def _close_plan(self, record: ChangeRequest, succeeded: bool) -> None:
        if not record.plan_id or self.plan_tracker is None:
            return
        try:
            await self.plan_tracker.finalize(record.plan_id, succeeded=succeeded)
        except PlanError as e:
            logger.warning(
                "Could not close plan",
                extra={"plan_id": record.plan_id, "request_id": record.id, "error": str(e)},
            )

    async def _emit(self, event_type: EventType, record: ChangeRequest, details: Dict[str, Any]) -> None:
        try:
            await self.event_emitter.emit(
                PipelineEvent(event_type=event_type, request_id=record.id, details=details)
            )
        except Exception:
            logger.exception(
                "Failed to emit pipeline event",
                extra={"event_type": event_type.value, "request_id": record.id},
            )
