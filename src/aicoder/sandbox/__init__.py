"""Sandbox provisioning and the live sandbox registry."""

from src.aicoder.sandbox.provider import (
    CommandResult,
    CommandTimeoutError,
    LocalSandbox,
    LocalSandboxProvider,
    SandboxClosedError,
    SandboxError,
    SandboxHandle,
    SandboxProvider,
    SandboxProvisionError,
)
from src.aicoder.sandbox.registry import (
    SandboxRegistry,
    SandboxSession,
    SessionAlreadyRegisteredError,
)

__all__ = [
    "CommandResult",
    "CommandTimeoutError",
    "LocalSandbox",
    "LocalSandboxProvider",
    "SandboxClosedError",
    "SandboxError",
    "SandboxHandle",
    "SandboxProvider",
    "SandboxProvisionError",
    "SandboxRegistry",
    "SandboxSession",
    "SessionAlreadyRegisteredError",
]
