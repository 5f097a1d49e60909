"""Unit tests for policy loading and runtime overrides."""

import asyncio
from pathlib import Path

import pytest

from src.aicoder.policy.loader import ConfigValidationError, load_config
from src.aicoder.policy.models import (
    ConfigOverrides,
    ProductContext,
    RulesOverride,
    Skill,
)
from src.aicoder.policy.store import (
    OVERRIDES_DOC_ID,
    ConfigStore,
    merge_config,
    merge_product_context,
)
from src.aicoder.store import CONFIG, InMemoryDocumentStore


def run_async(coro):
    return asyncio.run(coro)


VALID_POLICY_YAML = """
project:
  name: Widgets
  repo: acme/widgets
  default_branch: develop
rules:
  allowed:
    - "src/**"
  blocked:
    - "src/secrets/**"
  max_files_per_change: 3
skills:
  - id: fix
    name: Fix
    prompt: Fix the bug.
git:
  branch_prefix: "bot/"
"""


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_defaults_without_path(self):
        config = load_config(None)
        assert config.project.name == "Project Dashboard"
        assert [s.id for s in config.skills][0] == "ui-enhancement"

    def test_loads_yaml(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(VALID_POLICY_YAML)

        config = load_config(str(path))

        assert config.project.owner == "acme"
        assert config.project.repo_name == "widgets"
        assert config.project.default_branch == "develop"
        assert config.rules.max_files_per_change == 3
        assert config.git.branch_prefix == "bot/"
        assert config.git.commit_prefix == "ai:"

    def test_example_policy_file(self):
        path = Path(__file__).resolve().parents[2] / "config" / "policy.example.yaml"

        config = load_config(str(path))

        assert config.project.repo == "yourorg/project-dashboard"
        assert "firestore.rules" in config.rules.blocked
        assert [s.id for s in config.skills if s.requires_approval] == ["new-feature"]
        assert config.git.required_checks == ["build"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        with pytest.raises(ConfigValidationError, match="empty"):
            load_config(str(path))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("project: [unclosed")
        with pytest.raises(ConfigValidationError, match="YAML"):
            load_config(str(path))

    def test_invalid_repo(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(VALID_POLICY_YAML.replace("acme/widgets", "not-a-repo"))
        with pytest.raises(ConfigValidationError, match="Invalid policy"):
            load_config(str(path))

    def test_duplicate_skill_ids(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(
            VALID_POLICY_YAML.replace(
                "    prompt: Fix the bug.\n",
                "    prompt: Fix the bug.\n  - id: fix\n    name: Fix again\n    prompt: Again.\n",
            )
        )
        with pytest.raises(ConfigValidationError, match="Duplicate skill id"):
            load_config(str(path))


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


class TestMergeConfig:
    def test_no_overrides_returns_copy(self, policy):
        merged = merge_config(policy, None)
        assert merged == policy
        assert merged is not policy

    def test_rule_lists_replace_base(self, policy):
        overrides = ConfigOverrides(rules=RulesOverride(blocked=["secret/**"], max_files_per_change=2))

        merged = merge_config(policy, overrides)

        assert merged.rules.blocked == ["secret/**"]
        assert merged.rules.max_files_per_change == 2
        assert merged.rules.allowed == policy.rules.allowed
        assert policy.rules.blocked != ["secret/**"]

    def test_empty_skill_list_keeps_base(self, policy):
        merged = merge_config(policy, ConfigOverrides(skills=[]))
        assert [s.id for s in merged.skills] == [s.id for s in policy.skills]

    def test_skills_replace_base(self, policy):
        skill = Skill(id="only", name="Only", prompt="Do only this.")
        merged = merge_config(policy, ConfigOverrides(skills=[skill]))
        assert [s.id for s in merged.skills] == ["only"]

    def test_project_always_from_base(self, policy):
        merged = merge_config(policy, ConfigOverrides(rules=RulesOverride(allowed=["x/**"])))
        assert merged.project == policy.project
        assert merged.git == policy.git

    def test_product_context_blank_fields_fall_back(self):
        base = ProductContext(product_description="Base", style_guide="Base style")
        merged = merge_product_context(
            base, ProductContext(product_description="New", style_guide="   ")
        )
        assert merged.product_description == "New"
        assert merged.style_guide == "Base style"


# ---------------------------------------------------------------------------
# ConfigStore
# ---------------------------------------------------------------------------


class TestConfigStore:
    def test_no_overrides(self, policy):
        async def scenario():
            store = ConfigStore(policy, InMemoryDocumentStore())
            assert await store.get_overrides() is None
            return await store.get_merged_config()

        assert run_async(scenario()) == policy

    def test_save_records_audit_trail(self, policy):
        async def scenario():
            documents = InMemoryDocumentStore()
            store = ConfigStore(policy, documents)
            saved = await store.save_overrides(
                ConfigOverrides(rules=RulesOverride(blocked=["x/**"])), updated_by="dana"
            )
            raw = await documents.get(CONFIG, OVERRIDES_DOC_ID)
            merged = await store.get_merged_config()
            return saved, raw, merged

        saved, raw, merged = run_async(scenario())
        assert saved.updated_by == "dana"
        assert saved.updated_at is not None
        assert raw["updated_by"] == "dana"
        assert merged.rules.blocked == ["x/**"]

    def test_partial_save_keeps_other_sections(self, policy):
        async def scenario():
            store = ConfigStore(policy, InMemoryDocumentStore())
            await store.save_overrides(
                ConfigOverrides(rules=RulesOverride(blocked=["x/**"])), updated_by="a"
            )
            await store.save_overrides(
                ConfigOverrides(product_context=ProductContext(patterns="Use hooks")),
                updated_by="b",
            )
            return await store.get_overrides()

        overrides = run_async(scenario())
        assert overrides.rules.blocked == ["x/**"]
        assert overrides.product_context.patterns == "Use hooks"
        assert overrides.updated_by == "b"

    def test_invalid_stored_overrides_fall_back_to_base(self, policy):
        async def scenario():
            documents = InMemoryDocumentStore()
            await documents.upsert(CONFIG, OVERRIDES_DOC_ID, {"rules": {"max_files_per_change": -1}})
            store = ConfigStore(policy, documents)
            return await store.get_overrides(), await store.get_merged_config()

        overrides, merged = run_async(scenario())
        assert overrides is None
        assert merged == policy
