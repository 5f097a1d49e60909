"""Pytest configuration for all tests."""

import pytest

from src.aicoder.policy.defaults import default_config
from src.aicoder.policy.models import AICoderConfig


@pytest.fixture
def policy() -> AICoderConfig:
    """A fresh copy of the built-in policy."""
    return default_config()
