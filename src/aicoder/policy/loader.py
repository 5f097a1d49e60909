"""Loading the policy from YAML."""

import logging
from typing import Optional

import yaml
from pydantic import ValidationError

from src.aicoder.policy.defaults import default_config
from src.aicoder.policy.models import AICoderConfig


logger = logging.getLogger(__name__)


class ConfigValidationError(Exception):
    """Raised when the policy file cannot be parsed or validated."""
    pass


def load_config(config_path: Optional[str] = None) -> AICoderConfig:
    """
    Load the policy from a YAML file.

    Without a path the built-in default policy is returned.

    Args:
        config_path: Path to the YAML policy file

    Returns:
        Validated AICoderConfig

    Raises:
        FileNotFoundError: If the policy file doesn't exist
        ConfigValidationError: If the file is empty, not YAML, or invalid
    """
    if not config_path:
        logger.info("No policy file configured, using built-in policy")
        return default_config()

    try:
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"Policy file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Failed to parse YAML: {e}")

    if not config_dict:
        raise ConfigValidationError("Policy file is empty")
    if not isinstance(config_dict, dict):
        raise ConfigValidationError("Policy file must contain a mapping")

    try:
        config = AICoderConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid policy: {e}")

    _check_skill_ids(config)
    logger.info(
        "Loaded policy",
        extra={
            "path": config_path,
            "repo": config.project.repo,
            "skills": [s.id for s in config.skills],
        },
    )
    return config


def _check_skill_ids(config: AICoderConfig) -> None:
    seen = set()
    for skill in config.skills:
        if skill.id in seen:
            raise ConfigValidationError(f"Duplicate skill id: {skill.id}")
        seen.add(skill.id)
