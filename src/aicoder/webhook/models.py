"""GitHub webhook payload models.

Only the fields the reconciler reads are modelled; everything else in a
delivery is ignored. The event name from the ``X-GitHub-Event`` header is
folded into the payload as the ``event`` tag so a single discriminated
union parses every supported delivery.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class CommitRef(BaseModel):
    sha: Optional[str] = None


class PullRequestRef(BaseModel):
    number: int = Field(..., gt=0)


class PullRequestPayload(BaseModel):
    number: int = Field(..., gt=0)
    merged: bool = False
    html_url: Optional[str] = None
    merge_commit_sha: Optional[str] = None
    head: Optional[CommitRef] = None


class PullRequestEvent(BaseModel):
    """``pull_request``: opened, closed, merged, and so on."""

    event: Literal["pull_request"]
    action: str
    pull_request: PullRequestPayload

    @property
    def pr_number(self) -> int:
        return self.pull_request.number


class CheckRunPayload(BaseModel):
    name: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    head_sha: Optional[str] = None
    pull_requests: List[PullRequestRef] = Field(default_factory=list)


class CheckRunEvent(BaseModel):
    """``check_run``: CI check lifecycle."""

    event: Literal["check_run"]
    action: str
    check_run: CheckRunPayload


class DeploymentStatusPayload(BaseModel):
    state: str
    environment: Optional[str] = None
    environment_url: Optional[str] = None
    target_url: Optional[str] = None


class DeploymentPayload(BaseModel):
    sha: str = Field(..., min_length=1)
    environment: Optional[str] = None


class DeploymentStatusEvent(BaseModel):
    """``deployment_status``: a deploy provider reporting progress."""

    event: Literal["deployment_status"]
    deployment_status: DeploymentStatusPayload
    deployment: DeploymentPayload

    @property
    def environment(self) -> str:
        return self.deployment_status.environment or self.deployment.environment or ""

    @property
    def is_production(self) -> bool:
        return "production" in self.environment.lower()

    @property
    def url(self) -> Optional[str]:
        return self.deployment_status.environment_url or self.deployment_status.target_url


WebhookEvent = Annotated[
    Union[PullRequestEvent, CheckRunEvent, DeploymentStatusEvent],
    Field(discriminator="event"),
]

KNOWN_EVENTS = frozenset({"pull_request", "check_run", "deployment_status"})

_webhook_event_adapter: TypeAdapter = TypeAdapter(WebhookEvent)


def parse_webhook_event(
    event_type: str, payload: Dict[str, Any]
) -> Union[PullRequestEvent, CheckRunEvent, DeploymentStatusEvent]:
    """Parse a delivery of a known event type.

    Raises:
        pydantic.ValidationError: If the payload does not match the
            event's shape (or the event type is unknown).
    """
    return _webhook_event_adapter.validate_python({**payload, "event": event_type})
