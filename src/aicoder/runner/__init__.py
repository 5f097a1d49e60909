"""Coding agent execution."""

from src.aicoder.runner.agent import AgentResult, AgentRunner

__all__ = ["AgentResult", "AgentRunner"]
