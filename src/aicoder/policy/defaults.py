"""Built-in default policy.

Used when no policy file is configured. Project identity can still be
pointed at a different repository through the policy YAML file.
"""

from src.aicoder.policy.models import (
    AICoderConfig,
    DeployConfig,
    GitConfig,
    ProductContext,
    ProjectConfig,
    Rules,
    SandboxConfig,
    Skill,
)


DEFAULT_PRODUCT_CONTEXT = ProductContext(
    product_description=(
        "Project Dashboard is a project management platform for freelance "
        "designers and developers. It manages clients, projects, invoices, "
        "contracts, and team collaboration from a single interface.\n\n"
        "Target user: Solo freelancer or small studio owner.\n"
        "Tech stack: Next.js, React, Tailwind CSS, Firestore, shadcn/ui, "
        "Phosphor Icons.\n"
        "Hosting: Vercel (auto-deploys from GitHub)."
    ),
    data_model=(
        "Projects are the central entity. Everything connects through them.\n\n"
        "- Client: A company or person you do work for. Linked to invoices "
        "and contracts.\n"
        "- Project: Belongs to a client. Contains brief, workstreams, tasks, "
        "notes, and files.\n"
        "- Invoice: Belongs to a client, optionally linked to a project.\n"
        "- Contract: Belongs to a client. Status: draft, sent, signed.\n"
        "- Task: Belongs to a project, optionally grouped under a workstream.\n\n"
        "Every document has an ownerId for multi-tenancy."
    ),
    patterns=(
        "When someone says \"backend\", \"server\", or \"database\", they mean "
        "Firestore. There is no REST API or SQL database.\n\n"
        "- Flat top-level collections (no subcollections)\n"
        "- Realtime updates via onSnapshot in React hooks\n"
        "- One service file per collection: lib/firebase/services/{collection}.ts\n"
        "- One hook file per domain: hooks/use{Domain}.ts\n"
        "- Server timestamps for createdAt/updatedAt"
    ),
    style_guide=(
        "Modern, minimal, professional design.\n\n"
        "Components: Always use shadcn/ui from components/ui/.\n"
        "Icons: Phosphor Icons. Use weight=\"duotone\" for emphasis.\n"
        "Cards: rounded-2xl border border-border bg-background.\n"
        "Spacing: p-4 for cards, p-6 for page sections.\n"
        "Dark mode: Use semantic tokens. No hardcoded colors.\n"
        "No custom CSS: Tailwind utility classes only."
    ),
    scope_rules=(
        "Stay in scope. Only implement what was asked.\n"
        "Ask before guessing. If a request is ambiguous, ask a clarifying "
        "question first.\n"
        "Explain blockers. If a request touches blocked files or needs new "
        "dependencies, explain why and suggest alternatives.\n"
        "Default to simple. Keep changes minimal and correct."
    ),
)


DEFAULT_RULES = Rules(
    allowed=[
        "components/**",
        "app/(dashboard)/**",
        "lib/utils/**",
        "lib/data/**",
        "public/**",
    ],
    blocked=[
        "lib/firebase/**",
        "lib/ai-coder/**",
        "contexts/AuthContext.tsx",
        "firestore.rules",
        "firebase.json",
        ".env*",
        "ai-coder.config.ts",
        "app/api/**",
    ],
    constraints=[
        "Do NOT modify authentication or authorization logic",
        "Do NOT add new npm dependencies without explicit approval",
        "Always use existing shadcn/ui components from components/ui/",
        "Maintain TypeScript strict mode with no `any` types",
        "Follow existing code patterns and naming conventions",
        "Use Tailwind CSS for all styling, no inline styles or CSS modules",
        "Use Phosphor Icons (@phosphor-icons/react) for new icons",
        "When the user says 'backend', 'server', or 'database', they mean "
        "Firestore. There is no REST API or SQL",
        "Follow the existing Firestore service pattern: one file per "
        "collection in lib/firebase/services/",
        "Use onSnapshot for realtime data in hooks, not one-time fetches",
        "All new Firestore documents must include ownerId, createdAt, and "
        "updatedAt fields",
        "If the request is unclear or ambiguous, ask a clarifying question "
        "before implementing",
        "Default to the simpler implementation when multiple approaches exist",
    ],
    max_files_per_change=10,
    allow_new_files=True,
    allow_delete_files=False,
    allow_dependency_changes=False,
)


DEFAULT_SKILLS = [
    Skill(
        id="ui-enhancement",
        name="UI Enhancement",
        description="Modify UI components, layouts, and styling",
        icon="Palette",
        prompt=(
            "You are enhancing UI components. Follow these rules strictly:\n"
            "- Use existing shadcn/ui components from components/ui/.\n"
            "- Use Tailwind CSS utility classes only.\n"
            "- Icons: Phosphor Icons only.\n"
            "- Dark mode: All changes must work in both light and dark mode.\n"
            "Ensure all changes are responsive and accessible."
        ),
        allowed_paths=["components/**", "app/**"],
    ),
    Skill(
        id="copy-update",
        name="Copy & Content",
        description="Update text, labels, and content",
        icon="TextAa",
        prompt=(
            "You are updating text content only. Make minimal changes to the "
            "code and only modify string literals and text content. Do not "
            "restructure components or change logic."
        ),
        allowed_paths=["components/**", "app/**"],
        max_files_per_change=5,
    ),
    Skill(
        id="new-feature",
        name="New Feature",
        description="Add new pages, components, or functionality",
        icon="PlusCircle",
        prompt=(
            "You are adding a new feature. You MUST follow this workflow:\n"
            "1. FIRST, call create_plan with a clear title, overview, and a "
            "numbered list of implementation steps.\n"
            "2. Before coding, call update_plan to mark all steps as "
            "'in_progress'.\n"
            "3. Call trigger_code_change with a detailed prompt covering ALL "
            "plan items.\n"
            "4. After the PR is created, call update_plan to mark all items "
            "as 'done'.\n\n"
            "Follow existing patterns in the codebase. Reuse existing "
            "components and utilities."
        ),
        allow_new_files=True,
        requires_approval=True,
    ),
    Skill(
        id="bug-fix",
        name="Bug Fix",
        description="Fix reported bugs and issues",
        icon="Bug",
        prompt=(
            "You are fixing a bug. Follow these rules:\n"
            "- Make the minimal change necessary to fix the issue.\n"
            "- Add a brief comment explaining the fix.\n"
            "- Do NOT refactor unrelated code.\n"
            "- If the root cause is unclear, explain what you found and ask "
            "the user for more context."
        ),
    ),
    Skill(
        id="data-backend",
        name="Data & Backend",
        description="Add or modify collections, queries, and data hooks",
        icon="Database",
        prompt=(
            "You are modifying data operations. Follow the existing patterns "
            "exactly:\n"
            "- Service files: lib/firebase/services/{collection}.ts\n"
            "- Hooks: hooks/use{Domain}.ts with onSnapshot for realtime data.\n"
            "- Every document needs ownerId, createdAt, and updatedAt.\n"
            "- If adding a new collection, also create the service file AND hook."
        ),
        allowed_paths=["lib/firebase/services/**", "hooks/**", "lib/data/**"],
        requires_approval=True,
    ),
]


def default_config() -> AICoderConfig:
    """Return a fresh copy of the built-in policy."""
    return AICoderConfig(
        project=ProjectConfig(
            name="Project Dashboard",
            repo="yourorg/project-dashboard",
            default_branch="main",
        ),
        rules=DEFAULT_RULES.model_copy(deep=True),
        skills=[skill.model_copy(deep=True) for skill in DEFAULT_SKILLS],
        git=GitConfig(auto_merge=True),
        sandbox=SandboxConfig(),
        deploy=DeployConfig(),
        product_context=DEFAULT_PRODUCT_CONTEXT.model_copy(),
    )
