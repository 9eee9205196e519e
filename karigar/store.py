"""Step instance store: creation, assignment and validated status writes."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from .contracts import Origin, OriginKind
from .errors import (
    ConcurrentModificationError,
    FieldValidationError,
    InvalidTransitionError,
    NotFoundError,
    OverAllocationError,
)
from .fields import missing_required, validate_field_values
from .ledger import ConservationLedger
from .locks import KeyedLock
from .models import (
    CLOSED_ORDER_STATUSES,
    SETTLED_STATUSES,
    InstanceStatus,
    ManufacturingOrder,
    OrderStatus,
    OrderStepInstance,
    utcnow,
)
from .persistence.repository import DuplicateInstanceError, EngineRepository, StaleWriteError
from .state_machine import check_transition
from .workflow import WorkflowDefinition

logger = logging.getLogger(__name__)


class StepInstanceStore:
    """Owns every write to :class:`OrderStepInstance` records.

    Instance numbers are allocated under a per ``(order_id,
    step_definition_id)`` lock and protected by the repository's unique
    constraint; a clash is retried once from fresh state. Status writes hold
    a per-instance lock and use the repository's version check, so the
    ledger read and the write cannot be split by another writer.
    """

    def __init__(self, repository: EngineRepository) -> None:
        self._repository = repository
        self._number_locks = KeyedLock()
        self._claim_locks = KeyedLock()
        self._instance_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Reads
    async def get_instance(self, instance_id: str) -> OrderStepInstance:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Instance {instance_id!r} not found", entity_id=instance_id)
        return instance

    async def get_order(self, order_id: str) -> ManufacturingOrder:
        order = await self._repository.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id!r} not found", entity_id=order_id)
        return order

    async def load_graph(self, order_id: str) -> ConservationLedger:
        """Snapshot the instance graph around one order.

        Includes the order's instances, ancestors living in a parent order
        and rework instances in child orders that point back in. Instances
        of cancelled rework orders are left out, which releases their claim
        on the shortfall.
        """
        instances = await self._repository.list_instances(order_id)
        by_id = {instance.id: instance for instance in instances}
        foreign = {
            instance.ancestor_id
            for instance in instances
            if instance.ancestor_id and instance.ancestor_id not in by_id
        }
        for ancestor_id in sorted(foreign):
            ancestor = await self._repository.get_instance(ancestor_id)
            if ancestor is not None:
                by_id[ancestor.id] = ancestor
        if by_id:
            children = await self._repository.list_instances_by_origin(list(by_id))
            cancelled = await self._cancelled_orders(
                {child.order_id for child in children if child.order_id != order_id}
            )
            for child in children:
                if child.order_id not in cancelled:
                    by_id.setdefault(child.id, child)
        return ConservationLedger(by_id.values())

    async def _cancelled_orders(self, order_ids: set[str]) -> set[str]:
        cancelled = set()
        for order_id in order_ids:
            order = await self._repository.get_order(order_id)
            if order is not None and order.status == OrderStatus.CANCELLED:
                cancelled.add(order_id)
        return cancelled

    # ------------------------------------------------------------------
    # Creation
    async def create_instance(
        self,
        workflow: WorkflowDefinition,
        order_id: str,
        step_definition_id: str,
        origin: Optional[Origin] = None,
        *,
        quantity_assigned: int = 0,
        weight_assigned: float = 0.0,
        assigned_worker_id: Optional[str] = None,
        field_values: Optional[Mapping[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> OrderStepInstance:
        """Create a pending instance with the next free instance number.

        Raises:
            NotFoundError: Unknown order, step definition or lineage instance.
            InvalidTransitionError: Lineage instance not settled, wrong entry
                step, or closed order.
            OverAllocationError: The assignment exceeds what the lineage
                instance can hand on.
            ConcurrentModificationError: Instance number allocation clashed
                twice.
        """

        origin = origin or Origin.none()
        order = await self.get_order(order_id)
        if order.status in CLOSED_ORDER_STATUSES or order.status == OrderStatus.COMPLETED:
            raise InvalidTransitionError(
                f"Order {order.order_number} is {OrderStatus(order.status).value}",
                entity_id=order_id,
            )
        step = workflow.get_step(step_definition_id)
        if not step.is_active:
            raise InvalidTransitionError(
                f"Step {step.name!r} is inactive", entity_id=step_definition_id
            )
        typed_values = validate_field_values(
            workflow.fields_for(step_definition_id), field_values or {}
        )

        claim_key = origin.instance_id or order_id
        async with self._claim_locks.hold(claim_key):
            if origin.kind is OriginKind.NONE:
                await self._check_entry(workflow, order, step_definition_id, quantity_assigned)
                parent_id = origin_id = None
            else:
                lineage = await self.get_instance(origin.instance_id)
                ledger = await self.load_graph(lineage.order_id)
                if origin.kind is OriginKind.PARENT:
                    self._check_progression(workflow, order, step_definition_id, lineage)
                    ledger.check_progression_claim(lineage.id, quantity_assigned, weight_assigned)
                    parent_id, origin_id = lineage.id, None
                else:
                    self._check_rework(workflow, order, step_definition_id, lineage)
                    ledger.check_rework_claim(lineage.id, quantity_assigned, weight_assigned)
                    parent_id, origin_id = None, lineage.id

            candidate = OrderStepInstance(
                order_id=order_id,
                step_definition_id=step_definition_id,
                instance_number=1,
                quantity_assigned=quantity_assigned,
                weight_assigned=weight_assigned,
                assigned_worker_id=assigned_worker_id,
                parent_instance_id=parent_id,
                origin_instance_id=origin_id,
                field_values=typed_values,
                notes=notes,
            )
            created = await self._insert_numbered(candidate)

        logger.info(
            f"Created {step.name} #{created.instance_number} for order "
            f"{order.order_number} (origin={origin.kind.value})"
        )
        return created

    async def _check_entry(
        self,
        workflow: WorkflowDefinition,
        order: ManufacturingOrder,
        step_definition_id: str,
        quantity_assigned: int,
    ) -> None:
        if order.is_rework:
            raise InvalidTransitionError(
                f"Rework order {order.order_number} must start from its origin instance",
                entity_id=order.id,
            )
        first = workflow.first_step()
        if first is None or first.id != step_definition_id:
            raise InvalidTransitionError(
                "Work without lineage must start at the workflow's first active step",
                entity_id=step_definition_id,
            )
        existing = await self._repository.list_instances(order.id)
        batched = sum(
            i.quantity_assigned
            for i in existing
            if i.step_definition_id == step_definition_id and not i.ancestor_id
        )
        if batched + quantity_assigned > order.quantity_required:
            raise OverAllocationError(
                f"Order {order.order_number} requires {order.quantity_required}; "
                f"{batched} already batched at the first step",
                entity_id=order.id,
            )

    @staticmethod
    def _check_progression(
        workflow: WorkflowDefinition,
        order: ManufacturingOrder,
        step_definition_id: str,
        parent: OrderStepInstance,
    ) -> None:
        if parent.order_id != order.id:
            raise InvalidTransitionError(
                "Progression stays within one order", entity_id=parent.id
            )
        if parent.status not in SETTLED_STATUSES:
            raise InvalidTransitionError(
                f"Instance {parent.id} is still {InstanceStatus(parent.status).value}",
                entity_id=parent.id,
            )
        following = workflow.next_step(workflow.get_step(parent.step_definition_id).step_order)
        if following is None or following.id != step_definition_id:
            raise InvalidTransitionError(
                "Output can only move on to the next active step", entity_id=parent.id
            )

    @staticmethod
    def _check_rework(
        workflow: WorkflowDefinition,
        order: ManufacturingOrder,
        step_definition_id: str,
        origin: OrderStepInstance,
    ) -> None:
        if origin.status not in SETTLED_STATUSES:
            raise InvalidTransitionError(
                f"Instance {origin.id} is still {InstanceStatus(origin.status).value}",
                entity_id=origin.id,
            )
        if origin.order_id != order.id and order.origin_instance_id != origin.id:
            raise InvalidTransitionError(
                f"Order {order.order_number} was not opened to rework instance {origin.id}",
                entity_id=origin.id,
            )
        origin_order = workflow.get_step(origin.step_definition_id).step_order
        if workflow.get_step(step_definition_id).step_order > origin_order:
            raise InvalidTransitionError(
                "Rework re-enters at or before the step that fell short",
                entity_id=step_definition_id,
            )

    async def _insert_numbered(self, candidate: OrderStepInstance) -> OrderStepInstance:
        key = (candidate.order_id, candidate.step_definition_id)
        async with self._number_locks.hold(key):
            for attempt in (1, 2):
                existing = await self._repository.list_instances(candidate.order_id)
                numbers = [
                    i.instance_number
                    for i in existing
                    if i.step_definition_id == candidate.step_definition_id
                ]
                candidate.instance_number = max(numbers, default=0) + 1
                try:
                    return await self._repository.insert_instance(candidate)
                except DuplicateInstanceError as exc:
                    if attempt == 2:
                        raise ConcurrentModificationError(
                            f"Instance number #{candidate.instance_number} was taken twice",
                            entity_id=candidate.order_id,
                        ) from exc
                    logger.warning(
                        f"Instance number #{candidate.instance_number} taken for order "
                        f"{candidate.order_id}; retrying once"
                    )
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # Updates
    async def assign(
        self,
        workflow: WorkflowDefinition,
        instance_id: str,
        *,
        assigned_worker_id: Optional[str] = None,
        quantity_assigned: Optional[int] = None,
        weight_assigned: Optional[float] = None,
    ) -> OrderStepInstance:
        """Change worker or assigned amounts of a pending instance."""

        async with self._instance_locks.hold(instance_id):
            instance = await self.get_instance(instance_id)
            if instance.status != InstanceStatus.PENDING:
                raise InvalidTransitionError(
                    "Assignments can only change before the step starts",
                    entity_id=instance_id,
                )
            candidate = instance.model_copy(deep=True)
            if assigned_worker_id is not None:
                candidate.assigned_worker_id = assigned_worker_id
            if quantity_assigned is not None:
                candidate.quantity_assigned = quantity_assigned
            if weight_assigned is not None:
                candidate.weight_assigned = weight_assigned

            if candidate.ancestor_id:
                async with self._claim_locks.hold(candidate.ancestor_id):
                    lineage = await self.get_instance(candidate.ancestor_id)
                    ledger = await self.load_graph(lineage.order_id)
                    check = (
                        ledger.check_rework_claim
                        if candidate.is_rework
                        else ledger.check_progression_claim
                    )
                    check(
                        lineage.id,
                        candidate.quantity_assigned,
                        candidate.weight_assigned,
                        exclude_id=candidate.id,
                    )
                    return await self._save(candidate, instance.version)
            async with self._claim_locks.hold(candidate.order_id):
                order = await self.get_order(candidate.order_id)
                existing = await self._repository.list_instances(order.id)
                batched = sum(
                    i.quantity_assigned
                    for i in existing
                    if i.step_definition_id == candidate.step_definition_id
                    and not i.ancestor_id
                    and i.id != candidate.id
                )
                if batched + candidate.quantity_assigned > order.quantity_required:
                    raise OverAllocationError(
                        f"Order {order.order_number} requires {order.quantity_required}; "
                        f"{batched} already batched at the first step",
                        entity_id=order.id,
                    )
                return await self._save(candidate, instance.version)

    async def update_status(
        self,
        workflow: WorkflowDefinition,
        instance_id: str,
        new_status: InstanceStatus,
        field_values: Optional[Mapping[str, Any]] = None,
        *,
        quantity_received: Optional[int] = None,
        weight_received: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> OrderStepInstance:
        """Validate and write a status transition.

        Received figures may only be given together with a move into
        ``completed`` or ``partially_completed``. Nothing is written when any
        check fails.
        """

        new_status = InstanceStatus(new_status)
        async with self._instance_locks.hold(instance_id):
            instance = await self.get_instance(instance_id)
            ancestor = (
                await self.get_instance(instance.ancestor_id) if instance.ancestor_id else None
            )
            candidate = instance.model_copy(deep=True)

            if quantity_received is not None or weight_received is not None:
                if new_status not in SETTLED_STATUSES:
                    raise InvalidTransitionError(
                        "Received amounts are recorded when the step finishes",
                        entity_id=instance_id,
                    )
                q = instance.quantity_received if quantity_received is None else quantity_received
                w = instance.weight_received if weight_received is None else weight_received
                ConservationLedger.check_output(instance, q, w)
                candidate.quantity_received = q
                candidate.weight_received = w

            fields = workflow.fields_for(instance.step_definition_id)
            if field_values:
                candidate.field_values.update(validate_field_values(fields, field_values))

            check_transition(candidate, new_status, workflow.measure, ancestor)

            if new_status in SETTLED_STATUSES:
                missing = missing_required(fields, candidate.field_values)
                if missing:
                    raise FieldValidationError(
                        f"Required fields missing: {', '.join(missing)}",
                        entity_id=instance_id,
                    )
                candidate.completed_at = utcnow()
            elif new_status is InstanceStatus.IN_PROGRESS and candidate.started_at is None:
                candidate.started_at = utcnow()

            candidate.status = new_status
            if notes is not None:
                candidate.notes = notes
            saved = await self._save(candidate, instance.version)

        logger.info(
            f"Instance {instance_id} {InstanceStatus(instance.status).value} -> {new_status.value}"
        )
        return saved

    async def update_fields(
        self,
        workflow: WorkflowDefinition,
        instance_id: str,
        field_values: Mapping[str, Any],
    ) -> OrderStepInstance:
        """Record field values without changing status."""

        async with self._instance_locks.hold(instance_id):
            instance = await self.get_instance(instance_id)
            if instance.status in SETTLED_STATUSES:
                raise InvalidTransitionError(
                    "Finished instances are not edited; start a new batch instead",
                    entity_id=instance_id,
                )
            candidate = instance.model_copy(deep=True)
            candidate.field_values.update(
                validate_field_values(workflow.fields_for(instance.step_definition_id), field_values)
            )
            return await self._save(candidate, instance.version)

    async def accept_shortfall(
        self, instance_id: str, notes: Optional[str] = None
    ) -> OrderStepInstance:
        """Close a partial instance's shortfall without (further) rework."""

        async with self._instance_locks.hold(instance_id):
            instance = await self.get_instance(instance_id)
            if instance.status != InstanceStatus.PARTIALLY_COMPLETED:
                raise InvalidTransitionError(
                    "Only partially completed instances have a shortfall to accept",
                    entity_id=instance_id,
                )
            if instance.shortfall_accepted:
                return instance
            candidate = instance.model_copy(deep=True)
            candidate.shortfall_accepted = True
            if notes is not None:
                candidate.notes = notes
            return await self._save(candidate, instance.version)

    async def _save(self, candidate: OrderStepInstance, version: int) -> OrderStepInstance:
        try:
            return await self._repository.save_instance(candidate, expected_version=version)
        except StaleWriteError as exc:
            logger.warning(f"Lost write race on instance {candidate.id}")
            raise ConcurrentModificationError(
                f"Instance {candidate.id} was changed concurrently", entity_id=candidate.id
            ) from exc


__all__ = ["StepInstanceStore"]
