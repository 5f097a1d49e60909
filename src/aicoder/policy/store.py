"""Policy overrides persisted in the document store.

The static policy (YAML file or built-in default) is the base. Operators
may edit rules, skills, and product context at runtime; those edits live
in ``config/current`` with an audit trail and are merged over the base
whenever the effective policy is needed.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError

from src.aicoder.policy.models import (
    AICoderConfig,
    ConfigOverrides,
    ProductContext,
)
from src.aicoder.store import CONFIG, DocumentStore


logger = logging.getLogger(__name__)

OVERRIDES_DOC_ID = "current"


def merge_product_context(
    base: ProductContext,
    overrides: Optional[ProductContext],
) -> ProductContext:
    """Non-empty override fields win; empty ones fall back to the base."""
    if overrides is None:
        return base.model_copy()
    merged = {}
    for field in ProductContext.model_fields:
        value = getattr(overrides, field).strip()
        merged[field] = value or getattr(base, field)
    return ProductContext(**merged)


def merge_config(base: AICoderConfig, overrides: Optional[ConfigOverrides]) -> AICoderConfig:
    """Combine the static policy with operator overrides.

    Override lists replace the base lists entirely rather than extending
    them. Skills are replaced only when the override list is non-empty.
    Project, git, sandbox, and deploy settings always come from the base.

    Args:
        base: The static policy.
        overrides: Stored overrides, or None.

    Returns:
        A new AICoderConfig; ``base`` is not modified.
    """
    if overrides is None:
        return base.model_copy(deep=True)

    rules = base.rules.model_copy(deep=True)
    if overrides.rules is not None:
        changes = overrides.rules.model_dump(exclude_none=True)
        rules = rules.model_copy(update=changes)

    skills = base.skills
    if overrides.skills:
        skills = overrides.skills

    return base.model_copy(
        deep=True,
        update={
            "rules": rules,
            "skills": [s.model_copy(deep=True) for s in skills],
            "product_context": merge_product_context(
                base.product_context, overrides.product_context
            ),
        },
    )


class ConfigStore:
    """Reads and writes policy overrides.

    Attributes:
        base: The static policy overrides are merged over.
        store: Document store holding the ``config`` collection.
    """

    def __init__(self, base: AICoderConfig, store: DocumentStore):
        self.base = base
        self.store = store

    async def get_overrides(self) -> Optional[ConfigOverrides]:
        """Return saved overrides, or None if none were ever saved.

        A stored document that no longer validates is logged and ignored
        so a bad edit cannot take the pipeline down.
        """
        doc = await self.store.get(CONFIG, OVERRIDES_DOC_ID)
        if doc is None:
            return None
        try:
            return ConfigOverrides.model_validate(doc)
        except ValidationError as e:
            logger.error(
                "Stored config overrides are invalid, using static policy",
                extra={"error": str(e)},
            )
            return None

    async def save_overrides(
        self,
        overrides: ConfigOverrides,
        updated_by: Optional[str] = None,
    ) -> ConfigOverrides:
        """Save overrides with an audit trail.

        Only the sections present in ``overrides`` are written; sections
        left unset keep their previously saved values.

        Args:
            overrides: Sections to save.
            updated_by: Operator making the change.

        Returns:
            The full stored overrides after the write.
        """
        fields = overrides.model_dump(
            mode="json",
            include={"rules", "skills", "product_context"},
            exclude_none=True,
        )
        fields["updated_by"] = updated_by or "unknown"
        fields["updated_at"] = datetime.now(timezone.utc).isoformat()
        await self.store.upsert(CONFIG, OVERRIDES_DOC_ID, fields)

        logger.info(
            "Saved config overrides",
            extra={
                "updated_by": fields["updated_by"],
                "sections": sorted(k for k in fields if k not in ("updated_by", "updated_at")),
            },
        )
        saved = await self.get_overrides()
        return saved if saved is not None else ConfigOverrides.model_validate(fields)

    async def get_merged_config(self) -> AICoderConfig:
        """Return the effective policy: static base plus overrides."""
        return merge_config(self.base, await self.get_overrides())
