"""Conversational agent loop.

One chat turn: resolve the skill, validate the operator's latest message,
compile the policy into a system prompt, then let the model call tools
for at most ``max_tool_steps`` round-trips.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Literal, Optional

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field

from src.aicoder.chat.tools import ChatToolbox, ToolContext
from src.aicoder.policy.models import ScreenContext
from src.aicoder.policy.rules import (
    UnknownSkillError,
    build_instructions,
    get_skill_by_id,
    validate_prompt,
)
from src.aicoder.policy.store import ConfigStore


logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_STEPS = 5


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ToolCallResult(BaseModel):
    tool_call_id: str
    name: str
    result: Dict[str, Any]


class ChatReply(BaseModel):
    """Outcome of one chat turn.

    Attributes:
        reply: The model's final text.
        skill_id: Skill the turn ran under.
        tool_results: Every tool call made during the turn, in order.
        steps: Model round-trips used.
        exhausted: True if the step budget ran out before a final answer.
        plan_id: Plan created during the turn, if any.
    """

    reply: str
    skill_id: str
    tool_results: List[ToolCallResult] = Field(default_factory=list)
    steps: int = 0
    exhausted: bool = False
    plan_id: Optional[str] = None


class ChatRequestError(Exception):
    """The chat request was rejected before reaching the model.

    Attributes:
        message: Operator-facing reason.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def build_chat_model(
    llm_url: str,
    model_name: str,
    api_key: str = "",
    temperature: float = 0.2,
    timeout: float = 60.0,
) -> ChatOpenAI:
    """ChatOpenAI client for any OpenAI-compatible endpoint."""
    return ChatOpenAI(
        base_url=llm_url,
        model=model_name,
        temperature=temperature,
        timeout=timeout,
        api_key=api_key or "not-needed",
    )


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class ChatSession:
    """Runs chat turns against a tool-calling model.

    Attributes:
        llm: Chat model supporting ``bind_tools``.
        toolbox: Tools offered to the model.
        config_store: Source of the effective policy.
        max_tool_steps: Model round-trips allowed per turn.
    """

    def __init__(
        self,
        llm: Any,
        toolbox: ChatToolbox,
        config_store: ConfigStore,
        max_tool_steps: int = DEFAULT_MAX_TOOL_STEPS,
    ):
        self.llm = llm
        self.toolbox = toolbox
        self.config_store = config_store
        self.max_tool_steps = max_tool_steps

    async def run(
        self,
        messages: List[ChatMessage],
        skill_id: Optional[str] = None,
        screen_context: Optional[ScreenContext] = None,
        operator: str = "unknown",
        session_id: Optional[str] = None,
    ) -> ChatReply:
        """Run one chat turn.

        Raises:
            ChatRequestError: Unknown skill, no user message, or the latest
                user message fails prompt validation.
        """
        config = await self.config_store.get_merged_config()
        resolved_skill_id = skill_id or config.skills[0].id
        try:
            skill = get_skill_by_id(config, resolved_skill_id)
        except UnknownSkillError as e:
            raise ChatRequestError(f"Unknown skill: {resolved_skill_id}") from e

        latest_user = next((m for m in reversed(messages) if m.role == "user"), None)
        if latest_user is None:
            raise ChatRequestError("At least one user message is required.")

        validation = validate_prompt(latest_user.content, skill, config)
        if not validation.valid:
            raise ChatRequestError(validation.error or "Message rejected by policy.")

        history: List[BaseMessage] = [
            SystemMessage(content=build_instructions(skill, config, screen_context))
        ]
        for message in messages:
            if message.role == "user":
                history.append(HumanMessage(content=message.content))
            else:
                history.append(AIMessage(content=message.content))

        context = ToolContext(config=config, operator=operator, session_id=session_id)
        model = self.llm.bind_tools(self.toolbox.tool_schemas())
        tool_results: List[ToolCallResult] = []

        logger.info(
            "Starting chat turn",
            extra={"skill_id": skill.id, "operator": operator, "messages": len(messages)},
        )

        last_text = ""
        for step in range(1, self.max_tool_steps + 1):
            response = await model.ainvoke(history)
            history.append(response)
            last_text = _message_text(response) or last_text

            tool_calls = getattr(response, "tool_calls", None) or []
            if not tool_calls:
                return ChatReply(
                    reply=last_text,
                    skill_id=skill.id,
                    tool_results=tool_results,
                    steps=step,
                    plan_id=context.plan_id,
                )

            for call in tool_calls:
                call_id = call.get("id") or f"call-{uuid.uuid4().hex[:12]}"
                result = await self.toolbox.invoke(call["name"], call.get("args"), call_id, context)
                tool_results.append(ToolCallResult(tool_call_id=call_id, name=call["name"], result=result))
                history.append(
                    ToolMessage(content=json.dumps(result, default=str), tool_call_id=call_id)
                )

        logger.warning(
            "Chat turn exhausted its tool step budget",
            extra={"skill_id": skill.id, "max_tool_steps": self.max_tool_steps},
        )
        return ChatReply(
            reply=last_text or f"Stopped after {self.max_tool_steps} tool steps.",
            skill_id=skill.id,
            tool_results=tool_results,
            steps=self.max_tool_steps,
            exhausted=True,
            plan_id=context.plan_id,
        )
