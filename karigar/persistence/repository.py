"""Repository abstraction for orders, step instances and workflow state."""

from __future__ import annotations

from typing import Iterable, Protocol

from ..models import ActivityEntry, ManufacturingOrder, OrderStepInstance
from ..workflow import WorkflowDefinition


class RepositoryError(RuntimeError):
    """Base exception for repository errors."""


class DuplicateInstanceError(RepositoryError):
    """``(order_id, step_definition_id, instance_number)`` is already taken."""


class StaleWriteError(RepositoryError):
    """The stored instance changed since it was read."""


class EngineRepository(Protocol):
    """Protocol for persistence backends used by the engine.

    Each call is transactional on its own. Writes of instances go through
    :meth:`insert_instance` (unique instance number) or :meth:`save_instance`
    (optimistic version check); both bump ``version`` on success.
    """

    async def get_order(self, order_id: str) -> ManufacturingOrder | None:
        """Retrieve an order by id."""

    async def list_orders(self) -> list[ManufacturingOrder]:
        """Return all orders, oldest first."""

    async def list_child_orders(self, order_id: str) -> list[ManufacturingOrder]:
        """Return rework orders whose parent is ``order_id``."""

    async def save_order(self, order: ManufacturingOrder) -> None:
        """Insert or update an order."""

    async def next_order_number(self) -> int:
        """Atomically issue the next order sequence number."""

    async def get_instance(self, instance_id: str) -> OrderStepInstance | None:
        """Retrieve a step instance by id."""

    async def list_instances(self, order_id: str) -> list[OrderStepInstance]:
        """Return all instances of an order."""

    async def list_instances_by_origin(
        self, origin_ids: Iterable[str]
    ) -> list[OrderStepInstance]:
        """Return rework instances (in any order) pointing at ``origin_ids``."""

    async def insert_instance(self, instance: OrderStepInstance) -> OrderStepInstance:
        """Persist a new instance; raise :class:`DuplicateInstanceError` on number clash."""

    async def save_instance(
        self, instance: OrderStepInstance, expected_version: int
    ) -> OrderStepInstance:
        """Update an instance; raise :class:`StaleWriteError` if the version moved."""

    async def get_workflow(self) -> WorkflowDefinition | None:
        """Return the stored workflow definition."""

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        """Persist the workflow definition."""

    async def step_in_use(self, step_definition_id: str) -> bool:
        """Whether any instance references the step definition."""

    async def append_activity(self, entry: ActivityEntry) -> None:
        """Append an audit trail entry."""

    async def list_activity(self, order_id: str) -> list[ActivityEntry]:
        """Return audit trail entries of an order, oldest first."""
