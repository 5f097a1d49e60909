"""Tests for service settings loading."""

import pytest
from pydantic import ValidationError

from src.aicoder.config import AICoderSettings, get_settings


@pytest.fixture
def settings_env(monkeypatch, tmp_path):
    """Minimal valid environment."""
    monkeypatch.setenv("AICODER_GITHUB_TOKEN", "test-token")
    monkeypatch.setenv("AICODER_SANDBOX_BASE_PATH", str(tmp_path))
    return monkeypatch


class TestGetSettings:
    """Tests for get_settings."""

    def test_defaults(self, settings_env):
        settings = get_settings()

        assert settings.github_token == "test-token"
        assert settings.github_base_url == "https://api.github.com"
        assert settings.github_webhook_secret == ""
        assert settings.require_webhook_secret is False
        assert settings.agent_command == "claude"
        assert settings.chat_max_tool_steps == 5
        assert settings.database_url is None
        assert settings.port == 8080

    def test_loads_from_env(self, settings_env):
        settings_env.setenv("AICODER_GITHUB_WEBHOOK_SECRET", "whsec")
        settings_env.setenv("AICODER_REQUIRE_WEBHOOK_SECRET", "true")
        settings_env.setenv("AICODER_LLM_URL", "http://vllm:8000/v1")
        settings_env.setenv("AICODER_DATABASE_URL", "postgresql://aicoder:pw@postgres:5432/aicoder")
        settings_env.setenv("AICODER_POLICY_CONFIG_PATH", "/etc/aicoder/policy.yaml")

        settings = get_settings()

        assert settings.github_webhook_secret == "whsec"
        assert settings.require_webhook_secret is True
        assert settings.llm_url == "http://vllm:8000/v1"
        assert settings.database_url.startswith("postgresql://")
        assert settings.policy_config_path == "/etc/aicoder/policy.yaml"

    def test_missing_token(self, monkeypatch):
        monkeypatch.delenv("AICODER_GITHUB_TOKEN", raising=False)
        with pytest.raises(ValidationError):
            get_settings()

    def test_blank_database_url_means_in_memory(self, settings_env):
        settings_env.setenv("AICODER_DATABASE_URL", "  ")
        assert get_settings().database_url is None


class TestValidation:
    @pytest.mark.parametrize(
        "field,value",
        [
            ("github_token", "   "),
            ("llm_url", "vllm:8000"),
            ("database_url", "mysql://db"),
            ("sandbox_base_path", "relative/path"),
            ("chat_max_tool_steps", 0),
            ("port", 70000),
        ],
    )
    def test_rejects_invalid_values(self, field, value):
        fields = {"github_token": "test-token", field: value}
        with pytest.raises(ValidationError):
            AICoderSettings(**fields)
