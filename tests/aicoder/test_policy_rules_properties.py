"""Property-based tests for the policy rules engine.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

from hypothesis import given, settings, strategies as st

from src.aicoder.policy.defaults import default_config
from src.aicoder.policy.rules import (
    effective_max_files,
    get_skill_by_id,
    match_glob,
    validate_diff,
    validate_prompt,
)


segment = st.text(
    alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789-_()."),
    min_size=1,
    max_size=12,
).filter(lambda s: s not in (".", ".."))


@st.composite
def repo_path(draw: st.DrawFn) -> str:
    parts = draw(st.lists(segment, min_size=1, max_size=5))
    return "/".join(parts)


def _diff_for(paths):
    return "".join(
        f"diff --git a/{p} b/{p}\n--- a/{p}\n+++ b/{p}\n@@ -1 +1 @@\n-x\n+y\n"
        for p in paths
    )


@settings(max_examples=100)
@given(path=repo_path())
def test_double_star_matches_everything_under_prefix(path):
    """``dir/**`` matches every path below ``dir/``."""
    assert match_glob(f"components/{path}", "components/**")


@settings(max_examples=100)
@given(path=repo_path())
def test_literal_pattern_matches_only_itself(path):
    """A pattern without wildcards matches exactly one path."""
    assert match_glob(path, path)
    assert not match_glob(path + "x", path)
    assert not match_glob("x" + path, path)


@settings(max_examples=100)
@given(path=repo_path())
def test_single_star_stays_in_segment(path):
    """``*`` never crosses a ``/``."""
    assert match_glob(path, "*") == ("/" not in path)


@settings(max_examples=100)
@given(
    names=st.lists(
        st.text(alphabet="abcdefghij", min_size=1, max_size=8),
        min_size=1,
        max_size=15,
        unique=True,
    ),
    skill_id=st.sampled_from(["ui-enhancement", "copy-update", "bug-fix"]),
)
def test_diff_file_limit(names, skill_id):
    """Diffs within the allow list are valid exactly when under the file limit."""
    config = default_config()
    skill = get_skill_by_id(config, skill_id)
    paths = [f"components/{name}.tsx" for name in names]

    result = validate_diff(_diff_for(paths), skill, config)

    assert result.files == paths
    assert result.valid == (len(paths) <= effective_max_files(skill, config))


@settings(max_examples=100)
@given(
    blocked=st.sampled_from(["firestore.rules", "firebase.json", "lib/firebase/auth.ts", ".env.local"]),
    prefix=st.text(alphabet="abcdefghij ", max_size=30),
)
def test_prompt_naming_blocked_file_is_rejected(blocked, prefix):
    """Any prompt that names a blocked file is rejected."""
    config = default_config()
    skill = get_skill_by_id(config, "bug-fix")

    result = validate_prompt(f"{prefix} please update {blocked}", skill, config)

    assert not result.valid
    assert blocked in result.error
