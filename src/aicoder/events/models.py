"""Pipeline event models.

Events are emitted at key points of a change request's life so that
logs and metrics can follow it end to end.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the pipeline.

    Attributes:
        STATE_TRANSITION: A change request moved between statuses.
        ERROR: A pipeline stage failed.
        COMPLETION: A change request reached pr_opened or complete.
        TIMEOUT: The agent or a sandbox command exceeded its time limit.
    """

    STATE_TRANSITION = "state_transition"
    ERROR = "error"
    COMPLETION = "completion"
    TIMEOUT = "timeout"


class PipelineEvent(BaseModel):
    """Structured event about a single change request.

    Attributes:
        event_type: The category of event.
        request_id: The change request the event is about.
        repository: Target repository in ``owner/repo`` form, if known.
        timestamp: When the event occurred (UTC).
        details: Event-specific context.

    Details Field Conventions:
        STATE_TRANSITION: ``from_status``, ``to_status``
        ERROR: ``stage``, ``error_message``, ``error_type``
        COMPLETION: ``pr_number``, ``pr_url``, ``duration_seconds``
        TIMEOUT: ``stage``, ``timeout_seconds``
    """

    event_type: EventType
    request_id: str = Field(..., min_length=1)
    repository: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    details: Dict[str, Any] = Field(default_factory=dict)

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for ``extra=`` structured logging."""
        return {
            "event_type": self.event_type.value,
            "request_id": self.request_id,
            "repository": self.repository,
            "event_timestamp": self.timestamp.isoformat(),
            **self.details,
        }
