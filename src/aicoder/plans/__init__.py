"""Live plan checklists for multi-step requests."""

from src.aicoder.plans.models import (
    FINAL_ITEM_STATUSES,
    Plan,
    PlanItem,
    PlanItemInput,
    PlanItemStatus,
    is_valid_item_update,
)
from src.aicoder.plans.tracker import (
    InvalidPlanUpdateError,
    PlanError,
    PlanExistsError,
    PlanLockedError,
    PlanNotFoundError,
    PlanTracker,
    PlanWriteConflictError,
)

__all__ = [
    "FINAL_ITEM_STATUSES",
    "InvalidPlanUpdateError",
    "Plan",
    "PlanError",
    "PlanExistsError",
    "PlanItem",
    "PlanItemInput",
    "PlanItemStatus",
    "PlanLockedError",
    "PlanNotFoundError",
    "PlanTracker",
    "PlanWriteConflictError",
    "is_valid_item_update",
]
