"""Coding agent CLI execution.

Runs the coding agent CLI inside a sandbox as a one-shot, non-interactive
command with a restricted tool list and a hard timeout, and returns a
structured result. Used by the pipeline executor's agent stage.
"""

import logging
import shlex
from dataclasses import dataclass
from typing import List, Optional

from src.aicoder.sandbox.provider import CommandTimeoutError, SandboxHandle

logger = logging.getLogger(__name__)

OUTPUT_PREVIEW_CHARS = 500


@dataclass
class AgentResult:
    """Result of a coding agent run.

    Attributes:
        success: True when the agent exited with code 0.
        exit_code: Process exit code (-1 on timeout).
        stdout: Captured standard output.
        stderr: Captured standard error.
        duration_seconds: Wall-clock execution time.
        timed_out: True when the run was killed at the time limit.
    """

    success: bool
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False

    @property
    def error_output(self) -> str:
        return (self.stderr.strip() or self.stdout.strip())[:OUTPUT_PREVIEW_CHARS]


class AgentRunner:
    """Builds and runs the coding agent command.

    Attributes:
        command: Agent executable inside the sandbox.
        allowed_tools: Tools the agent may use.
    """

    def __init__(self, command: str = "claude", allowed_tools: Optional[List[str]] = None):
        self.command = command
        self.allowed_tools = allowed_tools or ["Edit", "Read", "Grep", "Glob"]

    def build_command(self, prompt: str) -> str:
        """Build the shell command for a one-shot agent run."""
        return (
            f"{shlex.quote(self.command)} -p {shlex.quote(prompt)} "
            f"--allowedTools {shlex.quote(','.join(self.allowed_tools))}"
        )

    async def run(
        self,
        sandbox: SandboxHandle,
        prompt: str,
        workdir: str,
        timeout_ms: int,
    ) -> AgentResult:
        """Run the agent in ``workdir`` inside the sandbox.

        Args:
            sandbox: Live sandbox holding the cloned repository.
            prompt: Full agent prompt.
            workdir: Repository directory inside the sandbox.
            timeout_ms: Hard limit for the whole run.

        Returns:
            AgentResult describing the run.

        Raises:
            SandboxClosedError: If the sandbox was killed during the run.
        """
        logger.info(
            "Starting coding agent",
            extra={
                "sandbox_id": sandbox.sandbox_id,
                "timeout_ms": timeout_ms,
                "prompt_preview": prompt[:200],
            },
        )

        try:
            result = await sandbox.exec(
                self.build_command(prompt),
                cwd=workdir,
                timeout_ms=timeout_ms,
            )
        except CommandTimeoutError:
            logger.error(
                "Coding agent timed out after %ds",
                timeout_ms // 1000,
            )
            return AgentResult(
                success=False,
                exit_code=-1,
                stdout="",
                stderr=f"Agent timed out after {timeout_ms // 1000}s",
                duration_seconds=timeout_ms / 1000,
                timed_out=True,
            )

        agent_result = AgentResult(
            success=result.success,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_seconds=result.duration_seconds,
        )

        if agent_result.success:
            logger.info(
                "Coding agent completed successfully in %.1fs",
                agent_result.duration_seconds,
            )
        else:
            logger.error(
                "Coding agent failed with exit code %d in %.1fs",
                agent_result.exit_code,
                agent_result.duration_seconds,
                extra={"stderr_preview": agent_result.error_output},
            )
        return agent_result
