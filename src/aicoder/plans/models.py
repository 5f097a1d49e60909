"""Plan models.

A plan is an ordered checklist the conversational agent creates for
multi-step requests. It is a display aid for the operator, not a
synchronization mechanism: statuses only move forward and the whole plan
becomes read-only once its change request reaches a terminal status.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class PlanItemStatus(str, Enum):
    """Status of a single plan item.

    PENDING → IN_PROGRESS → {DONE | SKIPPED | FAILED}. Skipping
    IN_PROGRESS is allowed; moving backward is not.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


FINAL_ITEM_STATUSES = frozenset(
    {PlanItemStatus.DONE, PlanItemStatus.SKIPPED, PlanItemStatus.FAILED}
)

_ITEM_RANK: Dict[PlanItemStatus, int] = {
    PlanItemStatus.PENDING: 0,
    PlanItemStatus.IN_PROGRESS: 1,
    PlanItemStatus.DONE: 2,
    PlanItemStatus.SKIPPED: 2,
    PlanItemStatus.FAILED: 2,
}


def is_valid_item_update(current: PlanItemStatus, target: PlanItemStatus) -> bool:
    """True if ``current`` may move to ``target``.

    Re-applying the current status is allowed and is a no-op. Final
    statuses never change.
    """
    if current == target:
        return True
    if current in FINAL_ITEM_STATUSES:
        return False
    return _ITEM_RANK[target] > _ITEM_RANK[current]


class PlanItemInput(BaseModel):
    """A plan item as supplied by the conversational agent."""

    id: str = Field(..., min_length=1, description="Unique id for this item (e.g. 'step-1')")
    label: str = Field(..., min_length=1, description="Description of this implementation step")


class PlanItem(BaseModel):
    id: str
    label: str
    status: PlanItemStatus = PlanItemStatus.PENDING


class Plan(BaseModel):
    """A live checklist.

    Attributes:
        plan_id: Id of the tool invocation that created the plan.
        title: Short title.
        overview: One or two sentences describing the approach.
        items: Ordered items. Order never changes after creation.
        change_request_id: Change request this plan tracks, once attached.
        locked: True once the change request is terminal.
        revision: Incremented on every write; guards concurrent updates.
        created_at: Creation time (UTC).
        updated_at: Last write time (UTC).
    """

    plan_id: str = Field(..., min_length=1)
    title: str
    overview: str = ""
    items: List[PlanItem] = Field(..., min_length=1)
    change_request_id: Optional[str] = None
    locked: bool = False
    revision: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def item(self, item_id: str) -> Optional[PlanItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None
