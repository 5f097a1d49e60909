"""Pipeline executor: operator prompt to pull request."""

from src.aicoder.pipeline.errors import (
    AgentFailureError,
    PipelineError,
    PolicyViolationError,
    ProvisioningError,
    PullRequestError,
    PushError,
    SandboxCancelledError,
)
from src.aicoder.pipeline.executor import CodeChangeRequest, PipelineExecutor

__all__ = [
    "AgentFailureError",
    "CodeChangeRequest",
    "PipelineError",
    "PipelineExecutor",
    "PolicyViolationError",
    "ProvisioningError",
    "PullRequestError",
    "PushError",
    "SandboxCancelledError",
]
