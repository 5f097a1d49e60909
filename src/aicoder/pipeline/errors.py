"""Pipeline executor errors.

Each error names the stage it happened in so the failed change request
can carry a ``"{stage}: {cause}"`` message.
"""

from typing import List, Optional


class PipelineError(Exception):
    """Base class for pipeline stage failures.

    Attributes:
        stage: Pipeline stage the failure happened in.
        message: Human-readable cause.
    """

    stage = "pipeline"

    def __init__(self, message: str, stage: Optional[str] = None):
        self.message = message
        if stage is not None:
            self.stage = stage
        super().__init__(message)

    @property
    def error_message(self) -> str:
        return f"{self.stage}: {self.message}"


class PolicyViolationError(PipelineError):
    """The prompt or the agent's diff broke the policy.

    Attributes:
        violations: Every individual violation found.
    """

    stage = "policy violation"

    def __init__(self, message: str, violations: Optional[List[str]] = None):
        super().__init__(message)
        self.violations = violations or []


class ProvisioningError(PipelineError):
    """The sandbox could not be created or the repository prepared."""

    stage = "provisioning"


class AgentFailureError(PipelineError):
    """The coding agent failed, timed out, or changed nothing.

    Attributes:
        timed_out: True when the agent hit its time limit.
    """

    stage = "agent"

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


class PushError(PipelineError):
    """Committing or pushing the branch failed."""

    stage = "push"


class PullRequestError(PipelineError):
    """The branch was pushed but no pull request could be opened.

    Attributes:
        branch_name: The pushed branch, left for manual follow-up.
    """

    stage = "pull request"

    def __init__(self, message: str, branch_name: str):
        super().__init__(f"branch {branch_name} was pushed but no pull request was opened: {message}")
        self.branch_name = branch_name


class SandboxCancelledError(PipelineError):
    """An operator killed the request's sandbox."""

    stage = "cancelled"

    def __init__(self, session_id: str):
        super().__init__(f"Sandbox for session {session_id} was killed")
        self.session_id = session_id
