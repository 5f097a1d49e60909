"""Policy and rules engine.

This package defines what the coding agent may change and enforces it:
- models: Policy configuration models (rules, skills, git, sandbox)
- rules: Prompt validation, instruction building, and diff validation
- loader: YAML policy loading
- store: Operator overrides merged over the static policy
"""

from src.aicoder.policy.loader import ConfigValidationError, load_config
from src.aicoder.policy.models import (
    AICoderConfig,
    ConfigOverrides,
    DiffValidationResult,
    ProductContext,
    PromptValidationResult,
    Rules,
    RulesOverride,
    ScreenContext,
    Skill,
)
from src.aicoder.policy.rules import (
    UnknownSkillError,
    build_instructions,
    build_rules_file,
    get_skill_by_id,
    match_glob,
    validate_diff,
    validate_prompt,
)
from src.aicoder.policy.store import ConfigStore, merge_config

__all__ = [
    "AICoderConfig",
    "ConfigOverrides",
    "ConfigStore",
    "ConfigValidationError",
    "DiffValidationResult",
    "ProductContext",
    "PromptValidationResult",
    "Rules",
    "RulesOverride",
    "ScreenContext",
    "Skill",
    "UnknownSkillError",
    "build_instructions",
    "build_rules_file",
    "get_skill_by_id",
    "load_config",
    "match_glob",
    "merge_config",
    "validate_diff",
    "validate_prompt",
]
