"""Tools offered to the conversational model.

- create_plan: a checklist for a multi-step change (plan id = tool call id)
- update_plan: move plan items forward as work proceeds
- trigger_code_change: run the pipeline and open a pull request
- check_deploy_status: PR state, CI checks, reviews, and preview URL
- get_project_context: read-only overview of the project and its rules

Tool arguments come from the model and are untrusted: each call is
validated against its pydantic schema, and code changes go through the
executor, which re-checks the prompt against the policy.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, Field, ValidationError

from src.aicoder.github.client import GitHubAPIError
from src.aicoder.github.pr import PullRequestService
from src.aicoder.pipeline.errors import PolicyViolationError
from src.aicoder.pipeline.executor import CodeChangeRequest, PipelineExecutor
from src.aicoder.plans.models import PlanItemInput, PlanItemStatus
from src.aicoder.plans.tracker import PlanError, PlanTracker
from src.aicoder.policy.models import AICoderConfig
from src.aicoder.state.models import ChangeRequestStatus


logger = logging.getLogger(__name__)

DO_NOT_RETRY_INSTRUCTION = (
    "Do NOT call trigger_code_change again. Tell the user what went wrong "
    "and suggest they try again or rephrase."
)
TIMEOUT_INSTRUCTION = (
    "Do NOT call trigger_code_change again. The pipeline timed out. Tell the "
    "user what happened and that they can try again in a moment or with a "
    "simpler request."
)
PREVIEW_PENDING = "Not available yet, the preview may still be deploying."


class CreatePlanArgs(BaseModel):
    title: str = Field(..., min_length=1, description="Short title for the plan (e.g. 'Add Dark Mode Toggle')")
    overview: str = Field(..., description="One or two sentences describing the overall approach")
    items: List[PlanItemInput] = Field(..., min_length=1, description="Ordered list of implementation steps")


class PlanItemUpdate(BaseModel):
    id: str = Field(..., min_length=1, description="The item id from create_plan")
    status: PlanItemStatus = Field(..., description="New status of this item")
    label: Optional[str] = Field(default=None, description="The item description (ignored)")


class UpdatePlanArgs(BaseModel):
    plan_id: Optional[str] = Field(
        default=None, description="Plan id returned by create_plan. Defaults to the current plan."
    )
    items: List[PlanItemUpdate] = Field(..., min_length=1, description="Items whose status changed")


class TriggerCodeChangeArgs(BaseModel):
    summary: str = Field(
        ..., min_length=1, description="Brief one-line summary of the change (used for branch name and PR title)"
    )
    prompt: str = Field(
        ...,
        min_length=1,
        description=(
            "Detailed prompt describing exactly what the coding agent should do. "
            "Be specific about which files to modify and what changes to make."
        ),
    )
    skill_id: str = Field(
        ..., min_length=1, description="The skill id to use for this change (e.g. 'ui-enhancement', 'bug-fix')"
    )


class CheckDeployStatusArgs(BaseModel):
    pr_number: int = Field(..., gt=0, description="The GitHub pull request number to check")


class GetProjectContextArgs(BaseModel):
    pass


@dataclass
class ToolContext:
    """Per-turn state shared by the tools.

    Attributes:
        config: Effective policy for this turn.
        operator: Display name of the requesting operator.
        session_id: Chat session id, if the client sent one.
        plan_id: Plan created earlier in the turn, linked to code changes.
    """

    config: AICoderConfig
    operator: str = "unknown"
    session_id: Optional[str] = None
    plan_id: Optional[str] = None


ToolHandler = Callable[[Any, str, ToolContext], Awaitable[Dict[str, Any]]]


@dataclass
class ChatTool:
    name: str
    description: str
    args_schema: Type[BaseModel]
    handler: ToolHandler

    def to_openai_tool(self) -> Dict[str, Any]:
        """OpenAI function-calling schema, accepted by ``bind_tools``."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_schema.model_json_schema(),
            },
        }


def _failed(error: str, **extra: Any) -> Dict[str, Any]:
    return {"status": "failed", "error": error, **extra}


class ChatToolbox:
    """The tool set and its dispatcher.

    Attributes:
        executor: Runs code changes.
        plan_tracker: Stores plans.
        pr_service: Reads PR and deploy status.
    """

    def __init__(
        self,
        executor: PipelineExecutor,
        plan_tracker: PlanTracker,
        pr_service: PullRequestService,
    ):
        self.executor = executor
        self.plan_tracker = plan_tracker
        self.pr_service = pr_service
        self.tools: Dict[str, ChatTool] = {
            tool.name: tool
            for tool in [
                ChatTool(
                    "create_plan",
                    "Create an implementation plan with a todo list. Call this BEFORE making "
                    "any code changes when using the New Feature skill. The plan is shown to "
                    "the user as a live checklist.",
                    CreatePlanArgs,
                    self._create_plan,
                ),
                ChatTool(
                    "update_plan",
                    "Update the status of plan items. Mark items 'in_progress' before coding "
                    "and 'done' after the PR is created. Statuses never move backward.",
                    UpdatePlanArgs,
                    self._update_plan,
                ),
                ChatTool(
                    "trigger_code_change",
                    "Trigger an AI coding agent to implement a code change, push it, and "
                    "create a pull request. Call this AFTER explaining your plan. If this "
                    "tool returns status 'failed', do NOT call it again; inform the user.",
                    TriggerCodeChangeArgs,
                    self._trigger_code_change,
                ),
                ChatTool(
                    "check_deploy_status",
                    "Check a pull request's state, CI checks, reviews, and whether a "
                    "preview URL is available.",
                    CheckDeployStatusArgs,
                    self._check_deploy_status,
                ),
                ChatTool(
                    "get_project_context",
                    "Get an overview of the project, its skills, and its file rules. Call "
                    "this before planning a code change.",
                    GetProjectContextArgs,
                    self._get_project_context,
                ),
            ]
        }

    def tool_schemas(self) -> List[Dict[str, Any]]:
        return [tool.to_openai_tool() for tool in self.tools.values()]

    async def invoke(
        self,
        name: str,
        raw_args: Any,
        call_id: str,
        context: ToolContext,
    ) -> Dict[str, Any]:
        """Validate a tool call's arguments and run it.

        Returns:
            The tool result. Invalid calls yield a ``failed`` result rather
            than an exception so the model can read the error.
        """
        tool = self.tools.get(name)
        if tool is None:
            logger.warning("Model called unknown tool", extra={"tool": name})
            return _failed(f"Unknown tool: {name}")

        if isinstance(raw_args, str):
            try:
                raw_args = json.loads(raw_args or "{}")
            except ValueError:
                return _failed(f"Invalid arguments for {name}: not valid JSON")

        try:
            args = tool.args_schema.model_validate(raw_args or {})
        except ValidationError as e:
            logger.warning(
                "Model sent invalid tool arguments",
                extra={"tool": name, "errors": e.error_count()},
            )
            return _failed(f"Invalid arguments for {name}: {e}")

        logger.info("Running chat tool", extra={"tool": name, "tool_call_id": call_id})
        return await tool.handler(args, call_id, context)

    async def _create_plan(self, args: CreatePlanArgs, call_id: str, context: ToolContext) -> Dict[str, Any]:
        try:
            plan = await self.plan_tracker.create_plan(
                plan_id=call_id,
                title=args.title,
                overview=args.overview,
                items=args.items,
            )
        except PlanError as e:
            return _failed(e.message)
        context.plan_id = plan.plan_id
        return {"status": "success", "plan": plan.model_dump(mode="json")}

    async def _update_plan(self, args: UpdatePlanArgs, call_id: str, context: ToolContext) -> Dict[str, Any]:
        plan_id = args.plan_id or context.plan_id
        if not plan_id:
            return _failed("No plan to update. Call create_plan first.")
        try:
            plan = await self.plan_tracker.update_items(
                plan_id, {item.id: item.status for item in args.items}
            )
        except PlanError as e:
            return _failed(e.message)
        return {"status": "success", "plan": plan.model_dump(mode="json")}

    async def _trigger_code_change(
        self, args: TriggerCodeChangeArgs, call_id: str, context: ToolContext
    ) -> Dict[str, Any]:
        request = CodeChangeRequest(
            session_id=context.session_id or call_id,
            prompt=args.prompt,
            summary=args.summary,
            skill_id=args.skill_id,
            operator=context.operator,
            plan_id=context.plan_id,
        )
        try:
            record = await self.executor.execute(request)
        except PolicyViolationError as e:
            return _failed(
                e.message, doNotRetry=True, instruction=DO_NOT_RETRY_INSTRUCTION
            )

        if record.status == ChangeRequestStatus.FAILED:
            error = record.error or "Unknown error occurred"
            timed_out = "timed out" in error.lower() or "timeout" in error.lower()
            return _failed(
                error,
                requestId=record.id,
                doNotRetry=True,
                instruction=TIMEOUT_INSTRUCTION if timed_out else DO_NOT_RETRY_INSTRUCTION,
            )

        return {
            "status": "success",
            "requestId": record.id,
            "prUrl": record.pr_url,
            "prNumber": record.pr_number,
            "branchName": record.branch_name,
            "commitSha": record.commit_sha,
            "filesChanged": record.files_changed,
            "summary": args.summary,
        }

    async def _check_deploy_status(
        self, args: CheckDeployStatusArgs, call_id: str, context: ToolContext
    ) -> Dict[str, Any]:
        try:
            status = await self.pr_service.get_pr_status(args.pr_number)
        except GitHubAPIError as e:
            return _failed(e.message)
        preview_url = await self.pr_service.get_preview_url(args.pr_number)
        return {
            "status": "success",
            "prState": status.state.value,
            "mergeable": status.mergeable,
            "checksStatus": status.checks_status.value,
            "reviewState": status.review_state.value,
            "previewUrl": preview_url or PREVIEW_PENDING,
        }

    async def _get_project_context(
        self, args: GetProjectContextArgs, call_id: str, context: ToolContext
    ) -> Dict[str, Any]:
        config = context.config
        return {
            "projectName": config.project.name,
            "repo": config.project.repo,
            "skills": [
                {"id": s.id, "name": s.name, "description": s.description}
                for s in config.skills
            ],
            "rules": {
                "allowedPaths": config.rules.allowed,
                "blockedPaths": config.rules.blocked,
                "constraints": config.rules.constraints,
            },
        }
