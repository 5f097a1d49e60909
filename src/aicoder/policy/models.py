"""Policy configuration models.

This module defines the data models for the policy that constrains what
the coding agent may touch, including:
- Skill: A named behaviour profile with its own prompt and path limits
- Rules: Global allow/block globs, constraints, and operational limits
- GitConfig, SandboxConfig, DeployConfig, ProjectConfig: Pipeline settings
- ProductContext: Product knowledge injected into agent instructions
- AICoderConfig: The complete policy
- ConfigOverrides: Operator edits layered over the static policy

The models use Pydantic for validation, consistent with the service's
approach in config.py and state/models.py.
"""

import re
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

REPO_PATTERN = re.compile(r"^[^/]+/[^/]+$")


class Skill(BaseModel):
    """A pre-configured behaviour profile for the coding agent.

    Attributes:
        id: Stable identifier used by tools and the chat API.
        name: Display name.
        description: One-line description shown to operators.
        icon: Icon name for the operator UI.
        prompt: Skill-specific instructions appended to the agent prompt.
        allowed_paths: Extra allowed globs, merged with the global list.
        max_files_per_change: Overrides the global file ceiling.
        allow_new_files: Overrides the global new-file permission.
        requires_approval: PRs from this skill are never auto-merged.
    """

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    icon: str = ""
    prompt: str = Field(..., min_length=1)
    allowed_paths: Optional[List[str]] = None
    max_files_per_change: Optional[int] = Field(default=None, gt=0)
    allow_new_files: Optional[bool] = None
    requires_approval: bool = False


class Rules(BaseModel):
    """Global guardrails for what the agent may modify."""

    allowed: List[str] = Field(..., min_length=1)
    blocked: List[str] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)
    max_files_per_change: int = Field(default=10, gt=0)
    allow_new_files: bool = True
    allow_delete_files: bool = False
    allow_dependency_changes: bool = False


class GitConfig(BaseModel):
    """Branch, commit, and pull request conventions."""

    branch_prefix: str = "ai/"
    commit_prefix: str = "ai:"
    pr_template: str = (
        "## AI-Generated Change\n\n"
        "**Summary:** {{summary}}\n\n"
        "### Modified Files\n{{files}}\n\n"
        "### Skill Used\n{{skill}}\n\n"
        "---\n_Generated via AI Coder by {{user}}_"
    )
    auto_merge: bool = False
    required_checks: List[str] = Field(default_factory=list)


class SandboxConfig(BaseModel):
    """Execution environment settings.

    Attributes:
        provider: Sandbox provider name.
        template_id: Environment template with the agent CLI pre-installed.
        timeout_ms: Per-command limit, including the agent run.
    """

    provider: str = "local"
    template_id: str = Field(default="claude-code-sandbox", min_length=1)
    timeout_ms: int = Field(default=600_000, gt=0)


class DeployProvider(str, Enum):
    """Hosting providers that report deployments back through webhooks."""

    VERCEL = "vercel"
    NETLIFY = "netlify"
    CUSTOM = "custom"


class DeployConfig(BaseModel):
    """Deployment tracking settings."""

    provider: DeployProvider = DeployProvider.VERCEL
    wait_for_preview: bool = True


class ProjectConfig(BaseModel):
    """Identity of the repository the agent modifies."""

    name: str = Field(..., min_length=1)
    repo: str
    default_branch: str = "main"

    @field_validator("repo")
    @classmethod
    def validate_repo(cls, v: str) -> str:
        """Validate that repo is in owner/repo format."""
        if not REPO_PATTERN.match(v):
            raise ValueError("repo must be in 'owner/repo' format")
        return v

    @property
    def owner(self) -> str:
        return self.repo.split("/", 1)[0]

    @property
    def repo_name(self) -> str:
        return self.repo.split("/", 1)[1]


class ProductContext(BaseModel):
    """Product knowledge injected into system prompts and rules files."""

    product_description: str = ""
    data_model: str = ""
    patterns: str = ""
    style_guide: str = ""
    scope_rules: str = ""


class AICoderConfig(BaseModel):
    """Complete policy for the code-change pipeline."""

    project: ProjectConfig
    rules: Rules
    skills: List[Skill] = Field(..., min_length=1)
    git: GitConfig = Field(default_factory=GitConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    product_context: ProductContext = Field(default_factory=ProductContext)


class RulesOverride(BaseModel):
    """Partial rules edit. Unset fields keep the base value."""

    allowed: Optional[List[str]] = None
    blocked: Optional[List[str]] = None
    constraints: Optional[List[str]] = None
    max_files_per_change: Optional[int] = Field(default=None, gt=0)
    allow_new_files: Optional[bool] = None
    allow_delete_files: Optional[bool] = None
    allow_dependency_changes: Optional[bool] = None


class ConfigOverrides(BaseModel):
    """Operator edits stored in the document store.

    Only rules, skills, and product context are editable. Project, git,
    sandbox, and deploy settings always come from the static policy.

    Attributes:
        updated_by: Operator who last saved the overrides.
        updated_at: When the overrides were last saved (UTC).
    """

    rules: Optional[RulesOverride] = None
    skills: Optional[List[Skill]] = None
    product_context: Optional[ProductContext] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class ScreenContext(BaseModel):
    """The screen the operator was looking at when prompting.

    A best-effort hint for the agent, never a security boundary.
    """

    screen_name: str = ""
    route: str = ""
    description: str = ""


class PromptValidationResult(BaseModel):
    """Outcome of pre-execution prompt validation."""

    valid: bool
    error: Optional[str] = None


class DiffValidationResult(BaseModel):
    """Outcome of post-execution diff validation.

    Attributes:
        valid: True when the diff satisfies every rule.
        error: Summary message when invalid.
        violations: One message per violated rule.
        files: Destination paths of every changed file.
    """

    valid: bool
    error: Optional[str] = None
    violations: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)
