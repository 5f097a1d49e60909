"""GitHub webhook verification, parsing, and reconciliation."""

from src.aicoder.webhook.models import (
    KNOWN_EVENTS,
    CheckRunEvent,
    DeploymentStatusEvent,
    PullRequestEvent,
    parse_webhook_event,
)
from src.aicoder.webhook.reconciler import (
    PR_CLOSED_ERROR,
    WebhookOutcome,
    WebhookReconciler,
    WebhookResult,
)
from src.aicoder.webhook.signature import compute_signature, verify_signature

__all__ = [
    "KNOWN_EVENTS",
    "PR_CLOSED_ERROR",
    "CheckRunEvent",
    "DeploymentStatusEvent",
    "PullRequestEvent",
    "WebhookOutcome",
    "WebhookReconciler",
    "WebhookResult",
    "compute_signature",
    "parse_webhook_event",
    "verify_signature",
]
