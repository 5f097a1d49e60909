"""Sandbox execution environments.

A sandbox is an isolated, disposable environment in which the pipeline
clones the repository and runs the coding agent. The provider interface
is deliberately small (provision, exec, write_file, kill) so a hosted
sandbox service can stand in for the local implementation here.

LocalSandboxProvider creates one directory per sandbox under a base path
and runs commands as async shell subprocesses inside it, streaming their
output to the log and enforcing a per-command timeout.
"""

import asyncio
import logging
import os
import shutil
import signal
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import (
    AsyncIterator,
    Dict,
    List,
    Optional,
    Protocol,
    Set,
    runtime_checkable,
)

logger = logging.getLogger(__name__)

SANDBOX_DIR_PERMISSIONS = 0o700
DEFAULT_COMMAND_TIMEOUT_MS = 30_000


@dataclass
class CommandResult:
    """Result of a command executed in a sandbox.

    Attributes:
        exit_code: Process exit code.
        stdout: Captured standard output.
        stderr: Captured standard error.
        duration_seconds: Wall-clock execution time.
    """

    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """stderr when present, otherwise stdout. Used in error messages."""
        return self.stderr.strip() or self.stdout.strip()


class SandboxError(Exception):
    """Base class for sandbox failures."""

    pass


class SandboxProvisionError(SandboxError):
    """Raised when a sandbox cannot be created."""

    pass


class SandboxClosedError(SandboxError):
    """Raised when using a sandbox that has been killed.

    Attributes:
        sandbox_id: The killed sandbox.
    """

    def __init__(self, sandbox_id: str):
        self.sandbox_id = sandbox_id
        super().__init__(f"Sandbox {sandbox_id} has been terminated")


class CommandTimeoutError(SandboxError):
    """Raised when a sandbox command exceeds its time limit.

    Attributes:
        command: The command that timed out (credentials redacted by caller).
        timeout_ms: The limit that was exceeded.
    """

    def __init__(self, command: str, timeout_ms: int):
        self.command = command
        self.timeout_ms = timeout_ms
        super().__init__(f"Command timed out after {timeout_ms / 1000:.0f}s")


@runtime_checkable
class SandboxHandle(Protocol):
    """A live sandbox."""

    sandbox_id: str

    @property
    def is_alive(self) -> bool:
        ...

    async def exec(
        self,
        command: str,
        cwd: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> CommandResult:
        """Run a shell command.

        Raises:
            CommandTimeoutError: If the command exceeds its time limit.
            SandboxClosedError: If the sandbox was killed.
        """
        ...

    async def write_file(self, path: str, content: str) -> None:
        """Write a text file, creating parent directories."""
        ...

    async def kill(self) -> None:
        """Terminate running commands and destroy the sandbox. Idempotent."""
        ...


@runtime_checkable
class SandboxProvider(Protocol):
    """Creates sandboxes."""

    async def provision(
        self,
        template_id: str,
        timeout_ms: int,
        env: Optional[Dict[str, str]] = None,
    ) -> SandboxHandle:
        """Create a sandbox.

        Args:
            template_id: Environment template to start from.
            timeout_ms: Default per-command time limit.
            env: Environment variables for every command.

        Raises:
            SandboxProvisionError: If the sandbox cannot be created.
        """
        ...


class LocalSandbox:
    """A sandbox backed by a private directory and local subprocesses.

    Relative ``cwd`` and file paths are resolved against the sandbox root.

    Attributes:
        sandbox_id: Unique sandbox identifier.
        root: Sandbox root directory.
        template_id: Template the sandbox was provisioned from.
        timeout_ms: Default per-command time limit.
    """

    def __init__(
        self,
        sandbox_id: str,
        root: Path,
        template_id: str,
        timeout_ms: int,
        env: Optional[Dict[str, str]] = None,
    ):
        self.sandbox_id = sandbox_id
        self.root = root
        self.template_id = template_id
        self.timeout_ms = timeout_ms
        self._env = env or {}
        self._processes: Set[asyncio.subprocess.Process] = set()
        self._closed = False

    @property
    def is_alive(self) -> bool:
        return not self._closed

    def _resolve(self, path: Optional[str]) -> Path:
        if path is None:
            return self.root
        resolved = (self.root / path).resolve()
        if resolved != self.root.resolve() and self.root.resolve() not in resolved.parents:
            raise SandboxError(f"Path escapes sandbox root: {path}")
        return resolved

    def _command_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["HOME"] = str(self.root)
        env.update(self._env)
        return env

    async def exec(
        self,
        command: str,
        cwd: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> CommandResult:
        if self._closed:
            raise SandboxClosedError(self.sandbox_id)

        limit_ms = timeout_ms or self.timeout_ms
        start_time = time.monotonic()
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self._resolve(cwd)),
            env=self._command_env(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        self._processes.add(process)

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        async def collect() -> None:
            await asyncio.gather(
                self._stream(process.stdout, stdout_lines, "stdout"),
                self._stream(process.stderr, stderr_lines, "stderr"),
            )
            await process.wait()

        try:
            await asyncio.wait_for(collect(), timeout=limit_ms / 1000)
        except asyncio.CancelledError:
            await _terminate(process)
            raise
        except asyncio.TimeoutError:
            await _terminate(process)
            logger.error(
                "Sandbox command timed out",
                extra={"sandbox_id": self.sandbox_id, "timeout_ms": limit_ms},
            )
            raise CommandTimeoutError(command, limit_ms)
        finally:
            self._processes.discard(process)

        if self._closed:
            raise SandboxClosedError(self.sandbox_id)

        return CommandResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
            duration_seconds=time.monotonic() - start_time,
        )

    async def _stream(
        self,
        stream: Optional[asyncio.StreamReader],
        lines: List[str],
        stream_name: str,
    ) -> None:
        async for line in _read_lines(stream):
            lines.append(line)
            logger.debug("sandbox %s %s: %s", self.sandbox_id, stream_name, line)

    async def write_file(self, path: str, content: str) -> None:
        if self._closed:
            raise SandboxClosedError(self.sandbox_id)
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    async def kill(self) -> None:
        if self._closed:
            return
        self._closed = True
        for process in list(self._processes):
            _kill_group(process)
        await asyncio.to_thread(shutil.rmtree, self.root, ignore_errors=True)
        logger.info("Sandbox destroyed", extra={"sandbox_id": self.sandbox_id})


def _kill_group(process: asyncio.subprocess.Process) -> None:
    """SIGKILL the command and everything it spawned."""
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def _terminate(process: asyncio.subprocess.Process) -> None:
    _kill_group(process)
    await process.wait()


async def _read_lines(stream: Optional[asyncio.StreamReader]) -> AsyncIterator[str]:
    if stream is None:
        return
    while True:
        raw_line = await stream.readline()
        if not raw_line:
            break
        yield raw_line.decode("utf-8", errors="replace").rstrip("\n")


class LocalSandboxProvider:
    """Provisions LocalSandbox instances under a base directory.

    Attributes:
        base_path: Directory under which sandbox roots are created.
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)

    async def provision(
        self,
        template_id: str,
        timeout_ms: int,
        env: Optional[Dict[str, str]] = None,
    ) -> LocalSandbox:
        sandbox_id = f"sbx-{uuid.uuid4().hex[:12]}"
        root = self.base_path / sandbox_id
        try:
            root.mkdir(parents=True, exist_ok=False)
            root.chmod(SANDBOX_DIR_PERMISSIONS)
        except OSError as exc:
            raise SandboxProvisionError(
                f"Failed to create sandbox at {root}: {exc}"
            ) from exc

        logger.info(
            "Sandbox provisioned",
            extra={
                "sandbox_id": sandbox_id,
                "template_id": template_id,
                "timeout_ms": timeout_ms,
            },
        )
        return LocalSandbox(sandbox_id, root, template_id, timeout_ms, env)
