"""Plan tracker.

Stores plans as documents in the ``plans`` collection. Each mutation is a
single document write guarded by the plan's revision, so concurrent
updates to different items never lose each other. Subscribers observe
plans through the document store's own subscription.
"""

import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional, Union

from src.aicoder.plans.models import (
    FINAL_ITEM_STATUSES,
    Plan,
    PlanItem,
    PlanItemInput,
    PlanItemStatus,
    is_valid_item_update,
)
from src.aicoder.store import PLANS, DocumentExistsError, DocumentStore


logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


class PlanError(Exception):
    """Base class for plan tracker errors.

    Attributes:
        plan_id: The plan involved.
        message: Human-readable description.
    """

    def __init__(self, plan_id: str, message: str):
        self.plan_id = plan_id
        self.message = message
        super().__init__(message)


class PlanNotFoundError(PlanError):
    def __init__(self, plan_id: str):
        super().__init__(plan_id, f"Plan not found: {plan_id}")


class PlanExistsError(PlanError):
    def __init__(self, plan_id: str):
        super().__init__(plan_id, f"Plan already exists: {plan_id}")


class PlanLockedError(PlanError):
    """Raised when updating a plan whose change request has finished."""

    def __init__(self, plan_id: str):
        super().__init__(plan_id, f"Plan {plan_id} is locked and can no longer be updated")


class InvalidPlanUpdateError(PlanError):
    """Raised for unknown items or backward status moves.

    Attributes:
        item_id: The offending item, if any.
    """

    def __init__(self, plan_id: str, message: str, item_id: Optional[str] = None):
        self.item_id = item_id
        super().__init__(plan_id, message)


class PlanWriteConflictError(PlanError):
    def __init__(self, plan_id: str):
        super().__init__(plan_id, f"Plan {plan_id} kept changing; update not applied")


ItemSpec = Union[PlanItemInput, Dict[str, str]]


class PlanTracker:
    """Creates, updates, and streams plans.

    Attributes:
        store: Document store holding the ``plans`` collection.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def create_plan(
        self,
        plan_id: str,
        title: str,
        overview: str,
        items: Iterable[ItemSpec],
        change_request_id: Optional[str] = None,
    ) -> Plan:
        """Create a plan with every item seeded at pending.

        Raises:
            PlanExistsError: If the plan id is already used.
            InvalidPlanUpdateError: If item ids are duplicated.
        """
        parsed = [
            item if isinstance(item, PlanItemInput) else PlanItemInput.model_validate(item)
            for item in items
        ]
        seen = set()
        for item in parsed:
            if item.id in seen:
                raise InvalidPlanUpdateError(plan_id, f"Duplicate plan item id: {item.id}", item.id)
            seen.add(item.id)

        plan = Plan(
            plan_id=plan_id,
            title=title,
            overview=overview,
            items=[PlanItem(id=i.id, label=i.label) for i in parsed],
            change_request_id=change_request_id,
        )
        try:
            await self.store.insert(PLANS, plan_id, plan.model_dump(mode="json"))
        except DocumentExistsError as e:
            raise PlanExistsError(plan_id) from e

        logger.info(
            "Plan created",
            extra={"plan_id": plan_id, "items": len(plan.items)},
        )
        return plan

    async def get(self, plan_id: str) -> Optional[Plan]:
        doc = await self.store.get(PLANS, plan_id)
        return Plan.model_validate(doc) if doc is not None else None

    async def _require(self, plan_id: str) -> Plan:
        plan = await self.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    async def _write(self, plan: Plan, **changes) -> Optional[Plan]:
        updated = plan.model_copy(
            update={
                **changes,
                "revision": plan.revision + 1,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        fields = updated.model_dump(
            mode="json", include=set(changes) | {"revision", "updated_at"}
        )
        applied = await self.store.update(
            PLANS, plan.plan_id, fields, conditions={"revision": plan.revision}
        )
        return updated if applied else None

    async def update_items(
        self,
        plan_id: str,
        updates: Dict[str, PlanItemStatus],
    ) -> Plan:
        """Apply several item status changes in one write.

        The whole update is rejected if any item is unknown or would move
        backward.

        Raises:
            PlanNotFoundError: If the plan does not exist.
            PlanLockedError: If the plan is locked.
            InvalidPlanUpdateError: For unknown items or backward moves.
        """
        for _ in range(MAX_WRITE_ATTEMPTS):
            plan = await self._require(plan_id)
            if plan.locked:
                raise PlanLockedError(plan_id)

            items: List[PlanItem] = []
            known = {item.id for item in plan.items}
            for item_id in updates:
                if item_id not in known:
                    raise InvalidPlanUpdateError(
                        plan_id, f"Unknown plan item: {item_id}", item_id
                    )
            for item in plan.items:
                target = updates.get(item.id)
                if target is None:
                    items.append(item)
                    continue
                target = PlanItemStatus(target)
                if not is_valid_item_update(item.status, target):
                    raise InvalidPlanUpdateError(
                        plan_id,
                        f"Cannot move item {item.id} from {item.status.value} to {target.value}",
                        item.id,
                    )
                items.append(item.model_copy(update={"status": target}))

            updated = await self._write(plan, items=items)
            if updated is not None:
                logger.info(
                    "Plan updated",
                    extra={
                        "plan_id": plan_id,
                        "updates": {k: PlanItemStatus(v).value for k, v in updates.items()},
                    },
                )
                return updated

        raise PlanWriteConflictError(plan_id)

    async def update_item(self, plan_id: str, item_id: str, status: PlanItemStatus) -> Plan:
        return await self.update_items(plan_id, {item_id: status})

    async def update_all(self, plan_id: str, status: PlanItemStatus) -> Plan:
        """Move every unfinished item to ``status``.

        Items already in a final status are left alone, as are items that
        cannot move to ``status`` (e.g. in_progress items when ``status``
        is pending).
        """
        plan = await self._require(plan_id)
        status = PlanItemStatus(status)
        updates = {
            item.id: status
            for item in plan.items
            if item.status not in FINAL_ITEM_STATUSES
            and item.status != status
            and is_valid_item_update(item.status, status)
        }
        if not updates:
            if plan.locked:
                raise PlanLockedError(plan_id)
            return plan
        return await self.update_items(plan_id, updates)

    async def attach(self, plan_id: str, change_request_id: str) -> Plan:
        """Link a plan to the change request it tracks."""
        for _ in range(MAX_WRITE_ATTEMPTS):
            plan = await self._require(plan_id)
            if plan.locked:
                raise PlanLockedError(plan_id)
            updated = await self._write(plan, change_request_id=change_request_id)
            if updated is not None:
                logger.info(
                    "Plan attached to change request",
                    extra={"plan_id": plan_id, "request_id": change_request_id},
                )
                return updated
        raise PlanWriteConflictError(plan_id)

    async def lock(self, plan_id: str) -> Plan:
        """Make the plan read-only. Idempotent."""
        for _ in range(MAX_WRITE_ATTEMPTS):
            plan = await self._require(plan_id)
            if plan.locked:
                return plan
            updated = await self._write(plan, locked=True)
            if updated is not None:
                logger.info("Plan locked", extra={"plan_id": plan_id})
                return updated
        raise PlanWriteConflictError(plan_id)

    async def finalize(self, plan_id: str, succeeded: bool) -> Plan:
        """Close out a plan when its change request reaches a terminal status."""
        plan = await self._require(plan_id)
        if not plan.locked:
            await self.update_all(
                plan_id,
                PlanItemStatus.DONE if succeeded else PlanItemStatus.FAILED,
            )
        return await self.lock(plan_id)

    async def subscribe(self, plan_id: str) -> AsyncIterator[Plan]:
        """Yield the plan now and after every write."""
        async for doc in self.store.subscribe(PLANS, plan_id):
            yield Plan.model_validate(doc)
