"""Pipeline executor: prompt to pull request.

Drives one change request through the pipeline:
validate prompt → provision sandbox → clone and branch → run agent →
validate diff → commit and push → open PR.

Each stage failure is caught at the stage boundary and turned into a
failed change request with a ``"{stage}: {cause}"`` message; the sandbox
is always released. Only a rejected prompt raises, and it does so
before anything is persisted or provisioned.
"""

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from src.aicoder.events.emitter import EventEmitter, NullEventEmitter
from src.aicoder.events.models import EventType, PipelineEvent
from src.aicoder.github.client import GitHubAPIError
from src.aicoder.github.models import PRCreateResult
from src.aicoder.github.pr import (
    PullRequestService,
    build_commit_message,
    generate_branch_name,
)
from src.aicoder.pipeline.errors import (
    AgentFailureError,
    PipelineError,
    PolicyViolationError,
    ProvisioningError,
    PullRequestError,
    PushError,
    SandboxCancelledError,
)
from src.aicoder.plans.models import PlanItemStatus
from src.aicoder.plans.tracker import PlanError, PlanTracker
from src.aicoder.policy.models import AICoderConfig, Skill
from src.aicoder.policy.rules import (
    RULES_FILE_NAME,
    UnknownSkillError,
    build_agent_prompt,
    build_rules_file,
    get_skill_by_id,
    validate_diff,
    validate_prompt,
)
from src.aicoder.policy.store import ConfigStore
from src.aicoder.runner.agent import AgentRunner
from src.aicoder.sandbox.provider import (
    CommandResult,
    SandboxError,
    SandboxHandle,
    SandboxProvider,
)
from src.aicoder.sandbox.registry import SandboxRegistry, SessionAlreadyRegisteredError
from src.aicoder.state.machine import (
    CANCELLED_ERROR,
    ChangeRequestNotFoundError,
    ChangeRequestStateMachine,
    DuplicatePullRequestError,
    InvalidTransitionError,
    TransitionConflictError,
)
from src.aicoder.state.models import ChangeRequest, ChangeRequestStatus
from src.aicoder.store import DocumentStoreError


logger = logging.getLogger(__name__)

WORKSPACE_DIR = "workspace"
GIT_USER_NAME = "AI Coder"
GIT_USER_EMAIL = "ai-coder@automated.dev"
GIT_COMMAND_TIMEOUT_MS = 30_000
NETWORK_COMMAND_TIMEOUT_MS = 120_000
REDACTED = "***"


class CodeChangeRequest(BaseModel):
    """Input to the pipeline executor.

    Attributes:
        session_id: Chat/tool invocation that owns the sandbox.
        prompt: Detailed instructions for the coding agent.
        summary: One-line summary used for the branch name and PR title.
        skill_id: Skill the change runs under.
        operator: Display name of the requesting operator.
        plan_id: Plan to keep in step with the request, if any.
    """

    session_id: str = Field(..., min_length=1)
    prompt: str
    summary: str = Field(..., min_length=1)
    skill_id: str = Field(..., min_length=1)
    operator: str = "unknown"
    plan_id: Optional[str] = None


@dataclass
class _Execution:
    """Mutable state of one execute() call."""

    request: CodeChangeRequest
    record: ChangeRequest
    config: AICoderConfig
    skill: Skill
    start_time: float
    stage: str = "provisioning"
    sandbox: Optional[SandboxHandle] = None
    registered: bool = False
    branch_name: Optional[str] = None
    pushed: bool = False

    @property
    def request_id(self) -> str:
        return self.record.id

    @property
    def repository(self) -> str:
        return self.config.project.repo

    @property
    def duration_seconds(self) -> float:
        return time.monotonic() - self.start_time


class PipelineExecutor:
    """Runs change requests end to end.

    Attributes:
        state_machine: Change request lifecycle.
        registry: Live sandbox registry shared with the kill endpoint.
        sandbox_provider: Creates sandboxes.
        agent_runner: Runs the coding agent inside a sandbox.
        pr_service: Opens and merges pull requests.
        config_store: Source of the effective (merged) policy.
        github_token: Token used for the authenticated clone URL.
        git_host: Host the repository is cloned from.
        plan_tracker: Keeps linked plans in step, if configured.
        event_emitter: Receives pipeline events.
        sandbox_env: Environment variables for every sandbox command.
    """

    def __init__(
        self,
        state_machine: ChangeRequestStateMachine,
        registry: SandboxRegistry,
        sandbox_provider: SandboxProvider,
        agent_runner: AgentRunner,
        pr_service: PullRequestService,
        config_store: ConfigStore,
        github_token: str,
        git_host: str = "github.com",
        plan_tracker: Optional[PlanTracker] = None,
        event_emitter: Optional[EventEmitter] = None,
        sandbox_env: Optional[Dict[str, str]] = None,
    ):
        self.state_machine = state_machine
        self.registry = registry
        self.sandbox_provider = sandbox_provider
        self.agent_runner = agent_runner
        self.pr_service = pr_service
        self.config_store = config_store
        self.github_token = github_token
        self.git_host = git_host
        self.plan_tracker = plan_tracker
        self.event_emitter = event_emitter or NullEventEmitter()
        self.sandbox_env = sandbox_env or {}

    async def execute(self, request: CodeChangeRequest) -> ChangeRequest:
        """Run a change request through the whole pipeline.

        Args:
            request: What to change and on whose behalf.

        Returns:
            The change request in ``pr_opened`` on success or ``failed``
            otherwise.

        Raises:
            PolicyViolationError: If the prompt or skill is rejected. No
                record is created in that case.
        """
        config = await self.config_store.get_merged_config()
        skill = self._resolve_skill(config, request.skill_id)

        validation = validate_prompt(request.prompt, skill, config)
        if not validation.valid:
            logger.warning(
                "Prompt rejected before execution",
                extra={"session_id": request.session_id, "skill_id": skill.id, "error": validation.error},
            )
            raise PolicyViolationError(validation.error or "Prompt rejected by policy")

        record = await self.state_machine.create(
            session_id=request.session_id,
            prompt=request.prompt,
            skill_id=skill.id,
            operator=request.operator,
            summary=request.summary,
            plan_id=request.plan_id,
        )
        run = _Execution(
            request=request,
            record=record,
            config=config,
            skill=skill,
            start_time=time.monotonic(),
        )
        await self._emit(
            EventType.STATE_TRANSITION,
            run,
            {"from_status": None, "to_status": ChangeRequestStatus.PENDING.value},
        )

        if request.plan_id and self.plan_tracker is not None:
            try:
                await self.plan_tracker.attach(request.plan_id, record.id)
            except PlanError as e:
                logger.warning(
                    "Could not attach plan to change request",
                    extra={"plan_id": request.plan_id, "request_id": record.id, "error": str(e)},
                )

        logger.info(
            "Starting pipeline",
            extra={"request_id": record.id, "session_id": request.session_id, "skill_id": skill.id},
        )

        try:
            run.record = await self._run_stages(run)
        except asyncio.CancelledError:
            # The caller went away; the record still has to reach a terminal status.
            run.record = await asyncio.shield(
                self._handle_failure(run, SandboxCancelledError(request.session_id))
            )
            raise
        except Exception as exc:
            run.record = await self._handle_failure(run, exc)
        else:
            await self._handle_success(run)
        finally:
            if run.registered:
                await self.registry.release(request.session_id)
                self.registry.forget(request.session_id)
            elif run.sandbox is not None:
                await self._discard_unregistered(run.sandbox)

        return run.record

    def _resolve_skill(self, config: AICoderConfig, skill_id: str) -> Skill:
        try:
            return get_skill_by_id(config, skill_id)
        except UnknownSkillError as e:
            raise PolicyViolationError(str(e)) from e

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run_stages(self, run: _Execution) -> ChangeRequest:
        await self._provision(run)
        await self._transition(run, ChangeRequestStatus.PROVISIONING)

        await self._prepare_repository(run)

        run.stage = "agent"
        await run.sandbox.write_file(
            f"{WORKSPACE_DIR}/{RULES_FILE_NAME}",
            build_rules_file(run.skill, run.config),
        )
        await self._transition(run, ChangeRequestStatus.RUNNING_AGENT)
        await self._run_agent(run)

        run.stage = "validation"
        files = await self._collect_diff(run)

        run.stage = "commit"
        await self._transition(run, ChangeRequestStatus.COMMITTING)
        commit_sha = await self._commit(run)
        await self.state_machine.update_details(
            run.request_id, commit_sha=commit_sha, files_changed=files
        )

        run.stage = "push"
        await self._run_command(
            run.sandbox,
            f"git push origin {shlex.quote(run.branch_name)}",
            PushError,
            "git push failed",
            timeout_ms=NETWORK_COMMAND_TIMEOUT_MS,
        )
        run.pushed = True

        run.stage = "pull request"
        pr = await self._open_pull_request(run, files)
        try:
            record = await self.state_machine.open_pull_request(run.request_id, pr.pr_number, pr.pr_url)
        except DuplicatePullRequestError as e:
            raise PullRequestError(str(e), run.branch_name) from e
        await self._emit(
            EventType.STATE_TRANSITION,
            run,
            {
                "from_status": ChangeRequestStatus.COMMITTING.value,
                "to_status": ChangeRequestStatus.PR_OPENED.value,
            },
        )

        if run.config.git.auto_merge and not run.skill.requires_approval:
            await self.pr_service.merge_if_ready(pr.pr_number)

        return record

    async def _provision(self, run: _Execution) -> None:
        run.stage = "provisioning"
        sandbox_config = run.config.sandbox
        try:
            run.sandbox = await self.sandbox_provider.provision(
                sandbox_config.template_id,
                sandbox_config.timeout_ms,
                env=self.sandbox_env,
            )
        except SandboxError as e:
            raise ProvisioningError(f"sandbox could not be created: {e}") from e

        try:
            await self.registry.register(run.request.session_id, run.sandbox)
        except SessionAlreadyRegisteredError as e:
            raise ProvisioningError(str(e)) from e
        run.registered = True

        logger.info(
            "Sandbox ready",
            extra={"request_id": run.request_id, "sandbox_id": run.sandbox.sandbox_id},
        )

    async def _prepare_repository(self, run: _Execution) -> None:
        run.stage = "clone"
        project = run.config.project
        sandbox = run.sandbox

        await self._run_command(
            sandbox,
            f"git config --global user.email {shlex.quote(GIT_USER_EMAIL)}",
            ProvisioningError,
            "git config failed",
            cwd=None,
        )
        await self._run_command(
            sandbox,
            f"git config --global user.name {shlex.quote(GIT_USER_NAME)}",
            ProvisioningError,
            "git config failed",
            cwd=None,
        )

        clone_url = f"https://x-access-token:{self.github_token}@{self.git_host}/{project.repo}.git"
        logger.info(
            "Cloning repository",
            extra={"request_id": run.request_id, "repository": project.repo, "branch": project.default_branch},
        )
        await self._run_command(
            sandbox,
            f"git clone --branch {shlex.quote(project.default_branch)} "
            f"{shlex.quote(clone_url)} {WORKSPACE_DIR}",
            ProvisioningError,
            "git clone failed",
            cwd=None,
            timeout_ms=NETWORK_COMMAND_TIMEOUT_MS,
        )

        run.stage = "branch"
        run.branch_name = generate_branch_name(run.request.summary, run.config)
        await self._run_command(
            sandbox,
            f"git checkout -b {shlex.quote(run.branch_name)}",
            ProvisioningError,
            "branch creation failed",
        )
        await self.state_machine.update_details(run.request_id, branch_name=run.branch_name)

    async def _run_agent(self, run: _Execution) -> None:
        timeout_ms = run.config.sandbox.timeout_ms
        result = await self.agent_runner.run(
            run.sandbox,
            build_agent_prompt(run.request.prompt, run.skill),
            WORKSPACE_DIR,
            timeout_ms,
        )
        if result.timed_out:
            await self._emit(
                EventType.TIMEOUT,
                run,
                {"stage": "agent", "timeout_seconds": timeout_ms / 1000},
            )
            raise AgentFailureError(result.error_output, timed_out=True)
        if not result.success:
            raise AgentFailureError(
                f"agent exited with code {result.exit_code}: {result.error_output}"
            )

    async def _collect_diff(self, run: _Execution) -> List[str]:
        """Stage everything but the rules file and validate the diff.

        Returns:
            The changed file paths.
        """
        sandbox = run.sandbox
        await self._run_command(
            sandbox, "git add -A", PipelineError, "git add failed", stage="validation"
        )
        unstage = await sandbox.exec(
            f"git reset HEAD -- {RULES_FILE_NAME}",
            cwd=WORKSPACE_DIR,
            timeout_ms=GIT_COMMAND_TIMEOUT_MS,
        )
        if not unstage.success:
            logger.warning(
                "Could not unstage rules file",
                extra={"request_id": run.request_id, "output": unstage.output[:500]},
            )

        diff_result = await self._run_command(
            sandbox, "git diff --cached", PipelineError, "git diff failed", stage="validation"
        )
        diff = diff_result.stdout
        if not diff.strip():
            raise AgentFailureError("No changes were made by the AI agent.")

        validation = validate_diff(diff, run.skill, run.config)
        if not validation.valid:
            logger.warning(
                "Agent diff rejected by policy",
                extra={"request_id": run.request_id, "violations": validation.violations},
            )
            raise PolicyViolationError(
                "; ".join(validation.violations) or validation.error or "diff rejected",
                violations=validation.violations,
            )

        logger.info(
            "Diff validated",
            extra={"request_id": run.request_id, "files_changed": validation.files},
        )
        return validation.files

    async def _commit(self, run: _Execution) -> str:
        message = build_commit_message(run.request.prompt, run.config)
        await self._run_command(
            run.sandbox,
            f"git commit -m {shlex.quote(message)}",
            PushError,
            "git commit failed",
        )
        sha_result = await self._run_command(
            run.sandbox, "git rev-parse HEAD", PushError, "could not read commit SHA"
        )
        return sha_result.stdout.strip()

    async def _open_pull_request(self, run: _Execution, files: List[str]) -> PRCreateResult:
        try:
            return await self.pr_service.open_pull_request(
                branch_name=run.branch_name,
                summary=run.request.summary,
                prompt=run.request.prompt,
                files_changed=files,
                skill=run.skill,
                operator=run.request.operator,
            )
        except GitHubAPIError as e:
            raise PullRequestError(str(e), run.branch_name) from e

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _handle_success(self, run: _Execution) -> None:
        record = run.record
        await self._emit(
            EventType.COMPLETION,
            run,
            {
                "pr_number": record.pr_number,
                "pr_url": record.pr_url,
                "duration_seconds": run.duration_seconds,
            },
        )
        if record.plan_id and self.plan_tracker is not None:
            try:
                await self.plan_tracker.update_all(record.plan_id, PlanItemStatus.DONE)
            except PlanError as e:
                logger.warning(
                    "Could not complete plan",
                    extra={"plan_id": record.plan_id, "request_id": record.id, "error": str(e)},
                )
        logger.info(
            "Pipeline completed",
            extra={
                "request_id": record.id,
                "pr_number": record.pr_number,
                "duration_seconds": run.duration_seconds,
            },
        )

    def _failure_cause(self, run: _Execution, exc: Exception) -> Tuple[str, str]:
        if isinstance(exc, SandboxCancelledError) or self.registry.was_cancelled(
            run.request.session_id
        ):
            return "cancelled", CANCELLED_ERROR
        if isinstance(exc, PipelineError):
            stage, message = exc.stage, exc.error_message
        else:
            stage, message = run.stage, f"{run.stage}: {exc}"
        if run.pushed and run.branch_name and run.branch_name not in message:
            message = f"{message} (branch {run.branch_name} was pushed)"
        return stage, self._redact(message)

    async def _handle_failure(self, run: _Execution, exc: Exception) -> ChangeRequest:
        stage, error_message = self._failure_cause(run, exc)
        cancelled = error_message == CANCELLED_ERROR

        if cancelled:
            exc = SandboxCancelledError(run.request.session_id)
            logger.info(
                "Pipeline cancelled by operator",
                extra={"request_id": run.request_id, "stage": run.stage},
            )
        else:
            logger.exception(
                "Pipeline stage failed",
                extra={"request_id": run.request_id, "stage": stage, "error": error_message},
            )

        record = run.record
        try:
            if cancelled:
                record = await self.state_machine.cancel(run.request_id)
            else:
                record = await self.state_machine.fail(
                    run.request_id, error_message, details={"stage": stage}
                )
        except (InvalidTransitionError, TransitionConflictError):
            logger.exception(
                "Failed to record pipeline failure",
                extra={"request_id": run.request_id},
            )
            record = await self._reload_after_failure(run, error_message)
        except (ChangeRequestNotFoundError, DocumentStoreError) as e:
            logger.exception(
                "Failed to record pipeline failure",
                extra={"request_id": run.request_id, "error": str(e)},
            )
            record = _as_failed(record, error_message)

        await self._emit(
            EventType.ERROR,
            run,
            {
                "stage": stage,
                "error_message": error_message,
                "error_type": type(exc).__name__,
                "duration_seconds": run.duration_seconds,
            },
        )

        if record.plan_id and self.plan_tracker is not None:
            try:
                await self.plan_tracker.finalize(record.plan_id, succeeded=False)
            except PlanError as e:
                logger.warning(
                    "Could not close plan",
                    extra={"plan_id": record.plan_id, "request_id": record.id, "error": str(e)},
                )
        return record

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _reload_after_failure(self, run: _Execution, error_message: str) -> ChangeRequest:
        try:
            stored = await self.state_machine.get(run.request_id)
        except DocumentStoreError as e:
            logger.error(
                "Could not reload change request",
                extra={"request_id": run.request_id, "error": str(e)},
            )
            stored = None
        return stored or _as_failed(run.record, error_message)

    async def _transition(self, run: _Execution, to_status: ChangeRequestStatus) -> None:
        from_status = run.record.status
        run.record = await self.state_machine.transition(run.request_id, to_status)
        await self._emit(
            EventType.STATE_TRANSITION,
            run,
            {"from_status": from_status.value, "to_status": to_status.value},
        )

    async def _run_command(
        self,
        sandbox: SandboxHandle,
        command: str,
        error_cls: type,
        failure: str,
        cwd: Optional[str] = WORKSPACE_DIR,
        timeout_ms: int = GIT_COMMAND_TIMEOUT_MS,
        stage: Optional[str] = None,
    ) -> CommandResult:
        """Run a command and raise ``error_cls`` if it exits non-zero."""
        result = await sandbox.exec(command, cwd=cwd, timeout_ms=timeout_ms)
        if not result.success:
            message = f"{failure}: {self._redact(result.output[:500])}"
            if stage is not None:
                raise error_cls(message, stage=stage)
            raise error_cls(message)
        return result

    async def _discard_unregistered(self, sandbox: SandboxHandle) -> None:
        try:
            await sandbox.kill()
        except Exception as e:
            logger.error(
                "Failed to kill unregistered sandbox",
                extra={"sandbox_id": sandbox.sandbox_id, "error": str(e)},
            )

    def _redact(self, text: str) -> str:
        if self.github_token:
            return text.replace(self.github_token, REDACTED)
        return text

    async def _emit(self, event_type: EventType, run: _Execution, details: Dict[str, Any]) -> None:
        """Emit an event without letting a sink failure disrupt the pipeline."""
        event = PipelineEvent(
            event_type=event_type,
            request_id=run.request_id,
            repository=run.repository,
            details=details,
        )
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit pipeline event",
                extra={"event_type": event_type.value, "request_id": run.request_id},
            )


def _as_failed(record: ChangeRequest, error_message: str) -> ChangeRequest:
    """What the caller sees when the failure itself could not be persisted."""
    if record.is_terminal:
        return record
    return record.model_copy(
        update={"status": ChangeRequestStatus.FAILED, "error": error_message}
    )
