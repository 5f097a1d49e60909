"""Conversational agent: bounded tool-calling loop and its tools."""

from src.aicoder.chat.session import (
    ChatMessage,
    ChatReply,
    ChatRequestError,
    ChatSession,
    ToolCallResult,
    build_chat_model,
)
from src.aicoder.chat.tools import ChatTool, ChatToolbox, ToolContext

__all__ = [
    "ChatMessage",
    "ChatReply",
    "ChatRequestError",
    "ChatSession",
    "ChatTool",
    "ChatToolbox",
    "ToolCallResult",
    "ToolContext",
    "build_chat_model",
]
