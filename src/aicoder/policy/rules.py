"""Policy rules engine.

Three layers of enforcement around the coding agent:

1. validate_prompt: checks the operator's request before anything runs.
2. build_instructions / build_rules_file: compiles the policy into the
   agent's system prompt and the rules document written into the sandbox.
3. validate_diff: checks the agent's actual diff before anything is
   committed. This is the authoritative check; the first two layers only
   steer the agent.

All functions here are pure and synchronous.
"""

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List, Optional, Pattern, Tuple

from src.aicoder.policy.models import (
    AICoderConfig,
    DiffValidationResult,
    ProductContext,
    PromptValidationResult,
    ScreenContext,
    Skill,
)


logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 5000

INJECTION_PATTERNS: List[Pattern[str]] = [
    re.compile(r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions|rules|prompts)", re.I),
    re.compile(r"disregard\s+(all\s+)?(previous|prior|above)", re.I),
    re.compile(r"you\s+are\s+now\s+(a|an)\s+", re.I),
    re.compile(r"forget\s+(everything|all|your)\s+(rules|instructions)", re.I),
    re.compile(r"override\s+(your|the|all)\s+(rules|constraints|instructions)", re.I),
    re.compile(r"system\s*prompt", re.I),
    re.compile(r"\bsudo\b", re.I),
    re.compile(r"rm\s+-rf", re.I),
    re.compile(r"eval\s*\(", re.I),
    re.compile(r"exec\s*\(", re.I),
]

DEPENDENCY_FILES = frozenset(
    {"package.json", "package-lock.json", "yarn.lock", "pnpm-lock.yaml"}
)

RULES_FILE_NAME = "CLAUDE.md"

_DIFF_HEADER = "diff --git "
_UNQUOTED_HEADER = re.compile(r"^(a/.+?) (b/.+)$")
_QUOTED_TOKEN = re.compile(r'"(?:[^"\\]|\\.)*"')
_QUOTED_ESCAPE = re.compile(r'\\([0-7]{3}|[abtnvfr"\\])')
_C_ESCAPES = {"a": 7, "b": 8, "t": 9, "n": 10, "v": 11, "f": 12, "r": 13, '"': 34, "\\": 92}

# Characters trimmed from whitespace-separated prompt tokens before they
# are considered as paths. Parentheses are kept: "app/(dashboard)/x.tsx".
_TOKEN_STRIP = "`'\",;:!?<>[]{}"
_DOTTED_NAME = re.compile(r"[\w-]{2,}(\.[\w-]+)+")
_DOTFILE = re.compile(r"\.[\w-][\w.-]*")
# A bare dotted token only counts as a file name with one of these
# extensions. "Next.js" style product names are excluded.
_SOURCE_EXTENSIONS = frozenset(
    {
        "ts", "tsx", "js", "jsx", "mjs", "cjs", "json", "css", "scss", "sass",
        "less", "html", "md", "mdx", "yaml", "yml", "toml", "lock", "svg",
        "png", "jpg", "jpeg", "gif", "ico", "webp", "rules", "env", "txt",
        "sql", "sh", "graphql", "prisma",
    }
)
_PRODUCT_NAME = re.compile(r"[A-Z][A-Za-z0-9]*\.js")

_PRODUCT_CONTEXT_SECTIONS = (
    ("Product Context", "product_description"),
    ("Data Model", "data_model"),
    ("Patterns", "patterns"),
    ("Style Guide", "style_guide"),
    ("Scope Rules", "scope_rules"),
)


class UnknownSkillError(Exception):
    """Raised when a skill id is not present in the policy.

    Attributes:
        skill_id: The requested skill id.
        available: Skill ids defined in the policy.
    """

    def __init__(self, skill_id: str, available: List[str]):
        self.skill_id = skill_id
        self.available = available
        super().__init__(
            f'Unknown skill "{skill_id}". Available skills: {", ".join(available)}'
        )


# -----------------------------------------------------------------------------
# Glob matching
# -----------------------------------------------------------------------------


@lru_cache(maxsize=512)
def _compile_glob(pattern: str) -> Pattern[str]:
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


def match_glob(path: str, pattern: str) -> bool:
    """Match a repository-relative path against a glob.

    ``**`` matches any characters including ``/``, ``*`` matches within a
    single path segment, and every other character is literal. The match
    is anchored at both ends.

    Args:
        path: Path relative to the repository root.
        pattern: Glob pattern.

    Returns:
        True if the whole path matches the pattern.
    """
    return _compile_glob(pattern).match(path) is not None


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    """Return True if the path matches at least one glob."""
    return any(match_glob(path, pattern) for pattern in patterns)


# -----------------------------------------------------------------------------
# Effective limits
# -----------------------------------------------------------------------------


def effective_allowed(skill: Skill, config: AICoderConfig) -> List[str]:
    """Global allow list extended with the skill's own paths, order kept."""
    allowed = list(config.rules.allowed)
    for pattern in skill.allowed_paths or []:
        if pattern not in allowed:
            allowed.append(pattern)
    return allowed


def effective_max_files(skill: Skill, config: AICoderConfig) -> int:
    if skill.max_files_per_change is not None:
        return skill.max_files_per_change
    return config.rules.max_files_per_change


def effective_allow_new_files(skill: Skill, config: AICoderConfig) -> bool:
    if skill.allow_new_files is not None:
        return skill.allow_new_files
    return config.rules.allow_new_files


def get_skill_by_id(config: AICoderConfig, skill_id: str) -> Skill:
    """Look up a skill by id.

    Raises:
        UnknownSkillError: If no skill has the given id.
    """
    for skill in config.skills:
        if skill.id == skill_id:
            return skill
    raise UnknownSkillError(skill_id, [s.id for s in config.skills])


# -----------------------------------------------------------------------------
# Layer 1: prompt validation
# -----------------------------------------------------------------------------


def _looks_like_path(token: str) -> bool:
    if "://" in token:
        return False
    if "/" in token:
        return len(token.strip("/")) > 0
    if _DOTFILE.fullmatch(token):
        return True
    if not _DOTTED_NAME.fullmatch(token) or _PRODUCT_NAME.fullmatch(token):
        return False
    return token.rsplit(".", 1)[1].lower() in _SOURCE_EXTENSIONS


def extract_prompt_paths(prompt: str) -> List[str]:
    """Extract distinct file-path-like tokens from free text, in order."""
    paths: List[str] = []
    for raw in prompt.split():
        token = raw.strip(_TOKEN_STRIP).rstrip(".")
        if token.startswith("./"):
            token = token[2:]
        if token and _looks_like_path(token) and token not in paths:
            paths.append(token)
    return paths


def _is_blocked_path(path: str, blocked: List[str]) -> bool:
    segments = path.strip("/").split("/")
    for end in range(1, len(segments) + 1):
        prefix = "/".join(segments[:end])
        if matches_any(prefix, blocked) or matches_any(prefix + "/", blocked):
            return True
    return False


def validate_prompt(
    prompt: str,
    skill: Skill,
    config: AICoderConfig,
) -> PromptValidationResult:
    """Validate an operator prompt before any work starts.

    Rejects empty prompts, overlong prompts, known injection phrasings,
    prompts that name a blocked path, and prompts that name more files
    than the skill may change.

    Args:
        prompt: The operator's request.
        skill: The selected skill.
        config: The effective policy.

    Returns:
        PromptValidationResult with ``valid`` and an operator-facing error.

    Raises:
        TypeError: If prompt is not a string or skill is missing.
    """
    if not isinstance(prompt, str):
        raise TypeError(f"prompt must be a str, got {type(prompt).__name__}")
    if not isinstance(skill, Skill):
        raise TypeError("a skill is required to validate a prompt")

    if not prompt.strip():
        return PromptValidationResult(valid=False, error="Prompt cannot be empty.")

    if len(prompt) > MAX_PROMPT_LENGTH:
        return PromptValidationResult(
            valid=False,
            error=(
                f"Prompt is too long ({len(prompt)} chars). "
                f"Maximum is {MAX_PROMPT_LENGTH} characters."
            ),
        )

    for pattern in INJECTION_PATTERNS:
        if pattern.search(prompt):
            logger.warning(
                "Prompt rejected by injection filter",
                extra={"skill_id": skill.id, "pattern": pattern.pattern},
            )
            return PromptValidationResult(
                valid=False,
                error="Prompt contains disallowed patterns. Please rephrase your request.",
            )

    paths = extract_prompt_paths(prompt)
    blocked = [p for p in paths if _is_blocked_path(p, config.rules.blocked)]
    if blocked:
        return PromptValidationResult(
            valid=False,
            error=(
                "Prompt references blocked files: "
                + ", ".join(blocked)
                + ". These files cannot be modified."
            ),
        )

    max_files = effective_max_files(skill, config)
    if len(paths) > max_files:
        return PromptValidationResult(
            valid=False,
            error=(
                f"Prompt names {len(paths)} files but the {skill.name} skill "
                f"may change at most {max_files}."
            ),
        )

    return PromptValidationResult(valid=True)


# -----------------------------------------------------------------------------
# Layer 2: instruction compilation
# -----------------------------------------------------------------------------


def build_product_context(context: ProductContext) -> str:
    """Join the product context fields into one markdown document."""
    return "\n\n---\n\n".join(
        f"# {title}\n\n{getattr(context, field)}"
        for title, field in _PRODUCT_CONTEXT_SECTIONS
    )


def _allowed_label(flag: bool) -> str:
    return "ALLOWED" if flag else "NOT ALLOWED"


def build_instructions(
    skill: Skill,
    config: AICoderConfig,
    screen_context: Optional[ScreenContext] = None,
) -> str:
    """Compile the policy into the conversational model's system prompt.

    Args:
        skill: The active skill.
        config: The effective policy.
        screen_context: The operator's current screen, if captured.

    Returns:
        The system prompt text.
    """
    rules = config.rules
    lines = [
        build_product_context(config.product_context),
        "",
        f'You are an AI coding assistant modifying the "{config.project.name}" codebase.',
        f'You are operating under the "{skill.name}" skill.',
        "",
        "## Skill Instructions",
        skill.prompt,
        "",
        "## File Access Rules",
        "You may ONLY modify files matching these patterns:",
        *[f"  - {p}" for p in effective_allowed(skill, config)],
        "",
        "You must NEVER modify files matching these patterns:",
        *[f"  - {p}" for p in rules.blocked],
        "",
        "## Constraints",
        *[f"{i}. {c}" for i, c in enumerate(rules.constraints, start=1)],
        "",
        f"- Maximum files to change per request: {effective_max_files(skill, config)}",
        f"- Creating new files: {_allowed_label(effective_allow_new_files(skill, config))}",
        f"- Deleting files: {_allowed_label(rules.allow_delete_files)}",
        "- Modifying dependencies (package.json): "
        f"{_allowed_label(rules.allow_dependency_changes)}",
        "",
        "## Behavior",
        "1. First, explain your plan for the change clearly and concisely.",
        "2. Then, call the trigger_code_change tool with a detailed prompt and the specific files involved.",
        "3. After the change is made, summarize what was done and share the PR link.",
        "4. If anything fails or violates the rules, explain the issue to the user.",
        "5. Never attempt to work around the rules or constraints above.",
    ]

    if screen_context is not None and screen_context.screen_name:
        lines.extend([
            "",
            "## Current Screen Context",
            f"The user is currently viewing the **{screen_context.screen_name}** "
            f"screen (route: `{screen_context.route}`).",
            screen_context.description,
            "",
            "When the user refers to 'this page', 'this screen', or 'here', "
            "they mean the screen described above.",
            "Focus your changes on the components and files that render this screen.",
        ])

    return "\n".join(lines)


def build_rules_file(skill: Skill, config: AICoderConfig) -> str:
    """Build the rules document written into the sandbox for the agent."""
    rules = config.rules
    allowed = "\n".join(f"- {p}" for p in effective_allowed(skill, config))
    blocked = "\n".join(f"- {p}" for p in rules.blocked)
    constraints = "\n".join(f"- {c}" for c in rules.constraints)
    new_files = "allowed" if effective_allow_new_files(skill, config) else "NOT allowed"
    deletion = "allowed" if rules.allow_delete_files else "NOT allowed"
    dependencies = "allowed" if rules.allow_dependency_changes else "NOT allowed"

    return (
        f"{build_product_context(config.product_context)}\n\n"
        "---\n\n"
        "# AI Coder Rules\n\n"
        "## You MUST follow these rules at all times\n\n"
        "### Allowed Files\n"
        "You may ONLY modify files matching these patterns:\n"
        f"{allowed}\n\n"
        "### Blocked Files\n"
        "You must NEVER modify these files:\n"
        f"{blocked}\n\n"
        "### Constraints\n"
        f"{constraints}\n\n"
        "### Operational Limits\n"
        f"- Maximum files to change: {effective_max_files(skill, config)}\n"
        f"- New file creation: {new_files}\n"
        f"- File deletion: {deletion}\n"
        f"- Dependency changes: {dependencies}\n\n"
        f"### Skill: {skill.name}\n"
        f"{skill.prompt}\n"
    )


def build_agent_prompt(prompt: str, skill: Skill) -> str:
    """Build the one-shot prompt passed to the coding agent CLI."""
    return (
        f"[Skill: {skill.name}] {prompt}\n\n"
        f"Follow all rules in {RULES_FILE_NAME} strictly. "
        "Do not modify any blocked files."
    )


# -----------------------------------------------------------------------------
# Layer 3: diff validation
# -----------------------------------------------------------------------------


@dataclass
class FileChange:
    """One file block of a git diff.

    Attributes:
        old_path: Path before the change, None for an added file.
        new_path: Path after the change, None for a deleted file.
        status: added, deleted, modified, renamed, copied, or unparsed
            when neither path could be read.
    """

    old_path: Optional[str]
    new_path: Optional[str]
    status: str = "modified"

    @property
    def touched(self) -> List[str]:
        """Every path this change writes to or removes."""
        if self.status == "unparsed":
            return []
        if self.status == "renamed":
            return [self.old_path, self.new_path]
        if self.status == "deleted":
            return [self.old_path]
        return [self.new_path]

    @property
    def removes_path(self) -> bool:
        return self.status in ("deleted", "renamed")

    @property
    def creates_path(self) -> bool:
        return self.status in ("added", "renamed", "copied")


def _unquote_path(text: str) -> str:
    """Undo git's C-style quoting, e.g. ``"caf\\303\\251.ts"``."""
    if len(text) < 2 or not (text.startswith('"') and text.endswith('"')):
        return text
    body = text[1:-1]
    raw = bytearray()
    position = 0
    for match in _QUOTED_ESCAPE.finditer(body):
        raw += body[position:match.start()].encode("utf-8")
        code = match.group(1)
        raw.append(int(code, 8) if len(code) == 3 else _C_ESCAPES[code])
        position = match.end()
    raw += body[position:].encode("utf-8")
    return raw.decode("utf-8", errors="replace")


def _strip_side(path: str, prefix: str) -> str:
    return path[len(prefix):] if path.startswith(prefix) else path


def _header_paths(rest: str) -> Tuple[Optional[str], Optional[str]]:
    if rest.startswith('"'):
        match = _QUOTED_TOKEN.match(rest)
        if match is None:
            return None, None
        old, new = match.group(0), rest[match.end():].strip()
    elif rest.endswith('"') and ' "' in rest:
        old, new = rest.split(' "', 1)
        new = '"' + new
    else:
        # Unquoted and identical on both sides unless renamed, in which
        # case the rename lines supply the real paths.
        half = len(rest) // 2
        if len(rest) % 2 == 1 and rest[half] == " " and rest[2:half] == rest[half + 3:]:
            old, new = rest[:half], rest[half + 1:]
        else:
            match = _UNQUOTED_HEADER.match(rest)
            if match is None:
                return None, None
            old, new = match.groups()
    return _strip_side(_unquote_path(old), "a/"), _strip_side(_unquote_path(new), "b/")


def _diff_side(text: str, prefix: str) -> Optional[str]:
    # git appends a tab to ---/+++ names that contain spaces.
    if text.endswith("\t"):
        text = text[:-1]
    if text == "/dev/null":
        return None
    return _strip_side(_unquote_path(text), prefix)


def parse_diff(diff: str) -> List[FileChange]:
    """Split a ``git diff`` into per-file changes.

    Handles renames, copies, quoted (non-ASCII or special character)
    paths and binary files. Hunk bodies are skipped, so a removed line
    that starts with ``--`` is never mistaken for a file header.
    """
    changes: List[FileChange] = []
    current: Optional[FileChange] = None
    in_hunks = False
    for line in diff.splitlines():
        if line.startswith(_DIFF_HEADER):
            old, new = _header_paths(line[len(_DIFF_HEADER):])
            current = FileChange(old_path=old, new_path=new)
            changes.append(current)
            in_hunks = False
        elif current is None or in_hunks:
            continue
        elif line.startswith("@@"):
            in_hunks = True
        elif line.startswith("new file mode"):
            current.status, current.old_path = "added", None
        elif line.startswith("deleted file mode"):
            current.status, current.new_path = "deleted", None
        elif line.startswith("rename from "):
            current.status, current.old_path = "renamed", _unquote_path(line[len("rename from "):])
        elif line.startswith("rename to "):
            current.status, current.new_path = "renamed", _unquote_path(line[len("rename to "):])
        elif line.startswith("copy from "):
            current.status, current.old_path = "copied", _unquote_path(line[len("copy from "):])
        elif line.startswith("copy to "):
            current.status, current.new_path = "copied", _unquote_path(line[len("copy to "):])
        elif line.startswith("--- "):
            current.old_path = _diff_side(line[4:], "a/")
        elif line.startswith("+++ "):
            current.new_path = _diff_side(line[4:], "b/")

    parsed: List[FileChange] = []
    for change in changes:
        if change.old_path is None and change.new_path is None:
            logger.warning("Could not read the paths of a diff block")
            change.status = "unparsed"
        elif change.old_path is None:
            change.status = "added"
        elif change.new_path is None:
            change.status = "deleted"
        parsed.append(change)
    return parsed


def extract_changed_files(diff: str) -> List[str]:
    """Every path a unified git diff touches, deduplicated.

    A rename contributes both its source and its destination.
    """
    return _touched_paths(parse_diff(diff))


def _touched_paths(changes: List[FileChange]) -> List[str]:
    files: List[str] = []
    for change in changes:
        for path in change.touched:
            if path not in files:
                files.append(path)
    return files


def validate_diff(
    diff: str,
    skill: Skill,
    config: AICoderConfig,
) -> DiffValidationResult:
    """Validate the agent's staged diff against the policy.

    Every violation is reported, not just the first one.

    Args:
        diff: Output of ``git diff --cached``.
        skill: The active skill.
        config: The effective policy.

    Returns:
        DiffValidationResult listing violations and the changed files.
    """
    rules = config.rules
    changes = parse_diff(diff)
    files = _touched_paths(changes)

    if not changes:
        return DiffValidationResult(
            valid=False,
            error="No file changes detected in the diff.",
            violations=["No file changes detected in the diff."],
        )

    violations: List[str] = [
        "Could not determine which file a diff block changes."
        for change in changes
        if change.status == "unparsed"
    ]

    max_files = effective_max_files(skill, config)
    if len(files) > max_files:
        violations.append(f"Too many files changed: {len(files)} (max: {max_files})")

    for path in files:
        if matches_any(path, rules.blocked):
            violations.append(f"Blocked file modified: {path}")

    allowed = effective_allowed(skill, config)
    for path in files:
        if not matches_any(path, allowed):
            violations.append(f"File not in allowed paths: {path}")

    if not rules.allow_dependency_changes:
        dependency_files = [f for f in files if f in DEPENDENCY_FILES]
        if dependency_files:
            violations.append(
                f"Dependency file modified: {', '.join(dependency_files)}"
            )

    if not rules.allow_delete_files:
        for change in changes:
            if change.removes_path:
                violations.append(f"File deletion not allowed: {change.old_path}")

    if not effective_allow_new_files(skill, config):
        for change in changes:
            if change.creates_path:
                violations.append(f"New file creation not allowed: {change.new_path}")

    if violations:
        return DiffValidationResult(
            valid=False,
            error=f"Diff validation failed with {len(violations)} violation(s).",
            violations=violations,
            files=files,
        )

    return DiffValidationResult(valid=True, files=files)
