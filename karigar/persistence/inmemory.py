"""In-memory implementation of the engine repository."""

from __future__ import annotations

from typing import Dict, Iterable, List

from ..models import ActivityEntry, ManufacturingOrder, OrderStepInstance
from ..workflow import WorkflowDefinition
from .repository import DuplicateInstanceError, EngineRepository, StaleWriteError


class InMemoryRepository(EngineRepository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._orders: Dict[str, ManufacturingOrder] = {}
        self._instances: Dict[str, OrderStepInstance] = {}
        self._workflow: WorkflowDefinition | None = None
        self._activity: List[ActivityEntry] = []
        self._order_sequence = 0

    # ------------------------------------------------------------------
    async def get_order(self, order_id: str) -> ManufacturingOrder | None:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def list_orders(self) -> list[ManufacturingOrder]:
        orders = sorted(self._orders.values(), key=lambda o: (o.created_at, o.order_number))
        return [order.model_copy(deep=True) for order in orders]

    async def list_child_orders(self, order_id: str) -> list[ManufacturingOrder]:
        return [
            order for order in await self.list_orders() if order.parent_order_id == order_id
        ]

    async def save_order(self, order: ManufacturingOrder) -> None:
        self._orders[order.id] = order.model_copy(deep=True)

    async def next_order_number(self) -> int:
        self._order_sequence += 1
        return self._order_sequence

    # ------------------------------------------------------------------
    async def get_instance(self, instance_id: str) -> OrderStepInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(self, order_id: str) -> list[OrderStepInstance]:
        return [
            instance.model_copy(deep=True)
            for instance in self._instances.values()
            if instance.order_id == order_id
        ]

    async def list_instances_by_origin(
        self, origin_ids: Iterable[str]
    ) -> list[OrderStepInstance]:
        wanted = set(origin_ids)
        return [
            instance.model_copy(deep=True)
            for instance in self._instances.values()
            if instance.origin_instance_id in wanted
        ]

    async def insert_instance(self, instance: OrderStepInstance) -> OrderStepInstance:
        for existing in self._instances.values():
            if (
                existing.order_id == instance.order_id
                and existing.step_definition_id == instance.step_definition_id
                and existing.instance_number == instance.instance_number
            ):
                raise DuplicateInstanceError(
                    f"Instance #{instance.instance_number} already exists for "
                    f"order {instance.order_id} step {instance.step_definition_id}"
                )
        stored = instance.model_copy(deep=True, update={"version": 1})
        self._instances[stored.id] = stored
        return stored.model_copy(deep=True)

    async def save_instance(
        self, instance: OrderStepInstance, expected_version: int
    ) -> OrderStepInstance:
        current = self._instances.get(instance.id)
        if current is None or current.version != expected_version:
            raise StaleWriteError(
                f"Instance {instance.id} changed since version {expected_version}"
            )
        stored = instance.model_copy(deep=True, update={"version": expected_version + 1})
        self._instances[stored.id] = stored
        return stored.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def get_workflow(self) -> WorkflowDefinition | None:
        return self._workflow.model_copy(deep=True) if self._workflow else None

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        self._workflow = workflow.model_copy(deep=True)

    async def step_in_use(self, step_definition_id: str) -> bool:
        return any(
            instance.step_definition_id == step_definition_id
            for instance in self._instances.values()
        )

    async def append_activity(self, entry: ActivityEntry) -> None:
        stored = entry.model_copy(update={"id": len(self._activity) + 1})
        self._activity.append(stored)

    async def list_activity(self, order_id: str) -> list[ActivityEntry]:
        return [entry for entry in self._activity if entry.order_id == order_id]
