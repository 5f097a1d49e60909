"""Service configuration using pydantic-settings.

This module defines the AICoderSettings class that reads configuration
from environment variables with the AICODER_ prefix. The policy itself
(rules, skills, git and sandbox settings) lives in a YAML file referenced
by ``policy_config_path``; see ``src.aicoder.policy.loader``.
"""

from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AICoderSettings(BaseSettings):
    """AI coder service configuration from environment variables.

    All environment variables are prefixed with AICODER_ (e.g., AICODER_GITHUB_TOKEN).

    Required fields (must be set via environment variables):
    - github_token: GitHub API token used for clone, push, and PR creation
    """

    model_config = SettingsConfigDict(
        env_prefix="AICODER_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    # GitHub API token for cloning, pushing, and opening pull requests
    github_token: str

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # Host used for authenticated git transport
    github_git_host: str = "github.com"

    # Secret for validating webhook signatures. Empty disables verification.
    github_webhook_secret: str = ""

    # Refuse to start when no webhook secret is configured
    require_webhook_secret: bool = False

    # -------------------------------------------------------------------------
    # Policy Configuration
    # -------------------------------------------------------------------------
    # YAML file with project, rules, skills, git, sandbox, and deploy settings.
    # The built-in default policy is used when unset.
    policy_config_path: Optional[str] = None

    # -------------------------------------------------------------------------
    # Sandbox Configuration
    # -------------------------------------------------------------------------
    # Base path under which local sandbox workspaces are created
    sandbox_base_path: str = "/var/lib/aicoder/sandboxes"

    # -------------------------------------------------------------------------
    # Coding Agent Configuration
    # -------------------------------------------------------------------------
    # Executable of the coding agent CLI inside the sandbox
    agent_command: str = "claude"

    # Tools the coding agent may use inside the sandbox
    agent_allowed_tools: str = "Edit,Read,Grep,Glob"

    # API key passed to the coding agent process
    agent_api_key: str = ""

    # -------------------------------------------------------------------------
    # Chat Model Configuration
    # -------------------------------------------------------------------------
    # OpenAI-compatible endpoint for the conversational model
    llm_url: str = "https://api.openai.com/v1"

    # Model name for the conversational model
    llm_model: str = "gpt-4o"

    # API key for the conversational model endpoint
    llm_api_key: str = ""

    # Maximum model round-trips per chat turn
    chat_max_tool_steps: int = 5

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string. An in-memory store is used when unset.
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_token")
    @classmethod
    def validate_github_token(cls, v: str) -> str:
        """Validate that GitHub token is not empty."""
        if not v or not v.strip():
            raise ValueError("github_token cannot be empty")
        return v

    @field_validator("llm_url")
    @classmethod
    def validate_llm_url(cls, v: str) -> str:
        """Validate that LLM URL is a valid URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("llm_url must start with http:// or https://")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database URL format when one is given."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("sandbox_base_path")
    @classmethod
    def validate_sandbox_path(cls, v: str) -> str:
        """Validate that sandbox base path is an absolute path."""
        if not Path(v).is_absolute():
            raise ValueError("sandbox_base_path must be an absolute path")
        return v

    @field_validator("chat_max_tool_steps")
    @classmethod
    def validate_max_tool_steps(cls, v: int) -> int:
        """Validate that the tool-step budget is positive."""
        if v < 1:
            raise ValueError("chat_max_tool_steps must be at least 1")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v


def get_settings() -> AICoderSettings:
    """Create and return an AICoderSettings instance.

    Returns:
        AICoderSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return AICoderSettings()
