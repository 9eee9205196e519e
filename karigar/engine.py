"""Progression engine: orders, progression, rework and tag-in."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, List, Mapping, Optional, Tuple

from .config import KarigarConfig, load_config
from .contracts import Branch, EngineEvent, NextAction, Origin, Reconciliation, TagInEvent
from .errors import InvalidTransitionError, NotFoundError
from .ledger import ConservationLedger
from .locks import KeyedLock
from .models import (
    CLOSED_ORDER_STATUSES,
    OPEN_STATUSES,
    ActivityEntry,
    InstanceStatus,
    ManufacturingOrder,
    OrderStatus,
    OrderStepInstance,
    Priority,
    utcnow,
)
from .persistence import EngineRepository, get_repository
from .resolver import resolve_next_action
from .state_machine import WEIGHT_EPSILON, measured
from .store import StepInstanceStore
from .topology import outgoing_branches
from .transports import BaseTransport, get_transport
from .workflow import Measure, WorkflowDefinition, load_workflow_file

logger = logging.getLogger(__name__)

_STATUS_ACTIONS = {
    InstanceStatus.IN_PROGRESS: "Started",
    InstanceStatus.COMPLETED: "Completed",
    InstanceStatus.PARTIALLY_COMPLETED: "Partially Completed",
    InstanceStatus.BLOCKED: "Blocked",
}


def is_order_complete(
    order: ManufacturingOrder, ledger: ConservationLedger, workflow: WorkflowDefinition
) -> bool:
    """Whether every batch of ``order`` has run out at the terminal step.

    True when an instance of the terminal active step is settled, nothing is
    pending, running or blocked, each shortfall is reworked or accepted, and
    no accepted output waits on a non-terminal step.
    """

    own = [i for i in ledger.instances() if i.order_id == order.id]
    if not own or any(i.status in OPEN_STATUSES for i in own):
        return False
    reached_end = False
    for instance in own:
        if ledger.undispositioned_shortfall(instance.id, workflow.measure) > WEIGHT_EPSILON:
            return False
        if workflow.is_terminal(instance.step_definition_id):
            reached_end = True
        elif workflow.measure is Measure.WEIGHT:
            if ledger.available_weight_for_next_step(instance.id) > WEIGHT_EPSILON:
                return False
        elif ledger.available_for_next_step(instance.id) > 0:
            return False
    return reached_end


class ProgressionEngine:
    """Entry point for callers driving orders through the workflow.

    Every operation loads what it needs for one order from the repository;
    the engine keeps no cache of orders or instances between calls.
    """

    def __init__(
        self,
        repository: EngineRepository | None = None,
        transport: BaseTransport | None = None,
        config: KarigarConfig | None = None,
    ) -> None:
        self._config = config or load_config()
        self._repository = repository or get_repository(config=self._config)
        self._transport = transport or get_transport(config=self._config)
        self._store = StepInstanceStore(self._repository)
        self._order_locks = KeyedLock()

    @property
    def repository(self) -> EngineRepository:
        return self._repository

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    # ------------------------------------------------------------------
    # Workflow definition
    async def workflow(self) -> WorkflowDefinition:
        workflow = await self._repository.get_workflow()
        if workflow is None and self._config.workflow_path:
            workflow = load_workflow_file(self._config.workflow_path)
            await self._repository.save_workflow(workflow)
            logger.info(f"Installed workflow from {self._config.workflow_path}")
        if workflow is None:
            raise NotFoundError("No workflow definition configured", entity_id="workflow")
        return workflow

    async def install_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        await self._repository.save_workflow(workflow)
        logger.info(
            f"Installed workflow v{workflow.version} with "
            f"{len(workflow.list_active_steps())} active steps"
        )
        return workflow

    async def deactivate_step(self, step_id: str) -> WorkflowDefinition:
        workflow = await self.workflow()
        workflow.deactivate_step(step_id)
        await self._repository.save_workflow(workflow)
        return workflow

    async def activate_step(self, step_id: str) -> WorkflowDefinition:
        workflow = await self.workflow()
        workflow.activate_step(step_id)
        await self._repository.save_workflow(workflow)
        return workflow

    async def remove_step(self, step_id: str) -> WorkflowDefinition:
        workflow = await self.workflow()
        workflow.remove_step(step_id, in_use=await self._repository.step_in_use(step_id))
        await self._repository.save_workflow(workflow)
        return workflow

    # ------------------------------------------------------------------
    # Orders
    async def create_order(
        self,
        quantity_required: int,
        product_name: str = "",
        priority: Priority = Priority.MEDIUM,
        due_date: Optional[date] = None,
        special_instructions: Optional[str] = None,
        **rework: Any,
    ) -> ManufacturingOrder:
        sequence = await self._repository.next_order_number()
        order = ManufacturingOrder(
            order_number=self._config.engine.format_order_number(sequence),
            product_name=product_name,
            quantity_required=quantity_required,
            priority=priority,
            due_date=due_date,
            special_instructions=special_instructions,
            **rework,
        )
        await self._repository.save_order(order)
        await self._log("Created", "Manufacturing Order", order.id, order.id,
                        f"Created manufacturing order {order.order_number}")
        return order

    async def get_order(self, order_id: str) -> ManufacturingOrder:
        return await self._store.get_order(order_id)

    async def get_instance(self, instance_id: str) -> OrderStepInstance:
        return await self._store.get_instance(instance_id)

    async def list_instances(self, order_id: str) -> List[OrderStepInstance]:
        await self.get_order(order_id)
        return await self._repository.list_instances(order_id)

    async def cancel_order(self, order_id: str) -> ManufacturingOrder:
        """Cancel a pending or running order.

        Cancelling a rework order hands its claim on the parent's shortfall
        back, so the parent is re-checked (and may drop back to in progress).
        The claim cannot be released once the parent is tagged in.
        """
        async with self._order_locks.hold(order_id):
            order = await self.get_order(order_id)
            if order.status not in (OrderStatus.PENDING, OrderStatus.IN_PROGRESS):
                raise InvalidTransitionError(
                    f"Order {order.order_number} is {OrderStatus(order.status).value}",
                    entity_id=order_id,
                )
            if order.parent_order_id:
                parent = await self.get_order(order.parent_order_id)
                if parent.status == OrderStatus.TAGGED_IN:
                    raise InvalidTransitionError(
                        f"Parent order {parent.order_number} is tagged in; "
                        f"rework order {order.order_number} must run to completion",
                        entity_id=order_id,
                    )
            order.status = OrderStatus.CANCELLED
            await self._repository.save_order(order)
        await self._log("Cancelled", "Manufacturing Order", order.id, order.id,
                        f"Cancelled manufacturing order {order.order_number}")
        if order.parent_order_id:
            await self._refresh_order(order.parent_order_id, await self.workflow())
        return order

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(
        self,
        order_id: str,
        step_definition_id: str,
        origin: Optional[Origin] = None,
        **assignment: Any,
    ) -> OrderStepInstance:
        workflow = await self.workflow()
        instance = await self._store.create_instance(
            workflow, order_id, step_definition_id, origin, **assignment
        )
        step = workflow.get_step(step_definition_id)
        await self._log("Created", "Manufacturing Step", instance.id, order_id,
                        f"Created {step.name} #{instance.instance_number}")
        return instance

    async def start_first_step(
        self,
        order_id: str,
        quantity_assigned: Optional[int] = None,
        weight_assigned: float = 0.0,
        assigned_worker_id: Optional[str] = None,
        field_values: Optional[Mapping[str, Any]] = None,
    ) -> OrderStepInstance:
        """Open a batch at the first active step.

        Without an explicit quantity the whole order is assigned. When a
        worker is given the batch starts straight away.
        """
        workflow = await self.workflow()
        first = workflow.first_step()
        if first is None:
            raise InvalidTransitionError("Workflow has no active steps", entity_id="workflow")
        if quantity_assigned is None:
            quantity_assigned = (await self.get_order(order_id)).quantity_required
        instance = await self.create_instance(
            order_id,
            first.id,
            Origin.none(),
            quantity_assigned=quantity_assigned,
            weight_assigned=weight_assigned,
            assigned_worker_id=assigned_worker_id,
            field_values=field_values,
        )
        return await self._maybe_start(instance)

    async def start_next_step(
        self,
        from_instance_id: str,
        quantity_assigned: Optional[int] = None,
        weight_assigned: Optional[float] = None,
        assigned_worker_id: Optional[str] = None,
        field_values: Optional[Mapping[str, Any]] = None,
    ) -> OrderStepInstance:
        """Hand accepted output of ``from_instance_id`` to the next active step.

        Defaults to everything still available from the source instance.
        """
        workflow = await self.workflow()
        source = await self.get_instance(from_instance_id)
        following = workflow.next_step(workflow.get_step(source.step_definition_id).step_order)
        if following is None:
            raise InvalidTransitionError(
                "Instance is at the terminal step; nothing follows", entity_id=from_instance_id
            )
        if quantity_assigned is None or weight_assigned is None:
            ledger = await self._store.load_graph(source.order_id)
            if quantity_assigned is None:
                quantity_assigned = ledger.available_for_next_step(source.id)
            if weight_assigned is None:
                weight_assigned = ledger.available_weight_for_next_step(source.id)
        instance = await self.create_instance(
            source.order_id,
            following.id,
            Origin.parent(source.id),
            quantity_assigned=quantity_assigned,
            weight_assigned=weight_assigned,
            assigned_worker_id=assigned_worker_id,
            field_values=field_values,
        )
        return await self._maybe_start(instance)

    async def open_rework_instance(
        self,
        origin_instance_id: str,
        step_definition_id: Optional[str] = None,
        quantity_assigned: Optional[int] = None,
        weight_assigned: Optional[float] = None,
        assigned_worker_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> OrderStepInstance:
        """Open a same-order rework batch for a partial instance's shortfall.

        The batch re-enters at ``step_definition_id`` (default: the step that
        fell short) and defaults to the whole unclaimed shortfall.
        """
        origin = await self.get_instance(origin_instance_id)
        quantity_assigned, weight_assigned = await self._rework_amounts(
            origin, quantity_assigned, weight_assigned
        )
        instance = await self.create_instance(
            origin.order_id,
            step_definition_id or origin.step_definition_id,
            Origin.rework(origin.id),
            quantity_assigned=quantity_assigned,
            weight_assigned=weight_assigned,
            assigned_worker_id=assigned_worker_id,
            notes=notes,
        )
        await self._log("Rework Opened", "Manufacturing Step", instance.id, origin.order_id,
                        f"Rework of {quantity_assigned} from instance {origin.id}")
        instance = await self._maybe_start(instance)
        await self._refresh_order(origin.order_id, await self.workflow())
        return instance

    async def open_rework_order(
        self,
        origin_instance_id: str,
        quantity: Optional[int] = None,
        weight: Optional[float] = None,
        step_definition_id: Optional[str] = None,
        reason: Optional[str] = None,
        priority: Optional[Priority] = None,
        due_date: Optional[date] = None,
        assigned_worker_id: Optional[str] = None,
    ) -> Tuple[ManufacturingOrder, OrderStepInstance]:
        """Track a partial instance's shortfall as an independent rework order."""

        workflow = await self.workflow()
        origin = await self.get_instance(origin_instance_id)
        parent = await self.get_order(origin.order_id)
        quantity, weight = await self._rework_amounts(origin, quantity, weight)
        ledger = await self._store.load_graph(origin.order_id)
        ledger.check_rework_claim(origin.id, quantity, weight)

        order = await self.create_order(
            quantity_required=quantity,
            product_name=parent.product_name,
            priority=priority or parent.priority,
            due_date=due_date or parent.due_date,
            parent_order_id=parent.id,
            origin_step_order=workflow.get_step(origin.step_definition_id).step_order,
            origin_instance_id=origin.id,
            rework_reason=reason,
        )
        try:
            instance = await self.create_instance(
                order.id,
                step_definition_id or origin.step_definition_id,
                Origin.rework(origin.id),
                quantity_assigned=quantity,
                weight_assigned=weight,
                assigned_worker_id=assigned_worker_id,
            )
        except Exception:
            await self.cancel_order(order.id)
            raise
        await self._log("Rework Opened", "Manufacturing Order", order.id, parent.id,
                        f"Rework order {order.order_number} for {quantity} from instance {origin.id}")
        instance = await self._maybe_start(instance)
        # the claim may have been all that kept the parent open
        await self._refresh_order(parent.id, workflow)
        return order, instance

    async def _rework_amounts(
        self,
        origin: OrderStepInstance,
        quantity: Optional[int],
        weight: Optional[float],
    ) -> Tuple[int, float]:
        if quantity is not None and weight is not None:
            return quantity, weight
        ledger = await self._store.load_graph(origin.order_id)
        remaining_qty, remaining_weight = ledger.remaining_shortfall(origin.id)
        return (
            remaining_qty if quantity is None else quantity,
            remaining_weight if weight is None else weight,
        )

    async def _maybe_start(self, instance: OrderStepInstance) -> OrderStepInstance:
        if instance.assigned_worker_id:
            return await self.update_status(instance.id, InstanceStatus.IN_PROGRESS)
        return instance

    async def assign(
        self,
        instance_id: str,
        assigned_worker_id: Optional[str] = None,
        quantity_assigned: Optional[int] = None,
        weight_assigned: Optional[float] = None,
    ) -> OrderStepInstance:
        workflow = await self.workflow()
        instance = await self._store.assign(
            workflow,
            instance_id,
            assigned_worker_id=assigned_worker_id,
            quantity_assigned=quantity_assigned,
            weight_assigned=weight_assigned,
        )
        if assigned_worker_id:
            await self._log("Assigned", "Manufacturing Step", instance.id, instance.order_id,
                            f"Assigned to worker {assigned_worker_id}")
        return instance

    async def update_status(
        self,
        instance_id: str,
        new_status: InstanceStatus,
        field_values: Optional[Mapping[str, Any]] = None,
        *,
        quantity_received: Optional[int] = None,
        weight_received: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> OrderStepInstance:
        workflow = await self.workflow()
        before = await self.get_instance(instance_id)
        await self._ensure_order_open(before.order_id)
        instance = await self._store.update_status(
            workflow,
            instance_id,
            new_status,
            field_values,
            quantity_received=quantity_received,
            weight_received=weight_received,
            notes=notes,
        )
        action = _STATUS_ACTIONS[InstanceStatus(instance.status)]
        if before.status == InstanceStatus.BLOCKED:
            action = "Unblocked"
        step = workflow.get_step(instance.step_definition_id)
        await self._log(action, "Manufacturing Step", instance.id, instance.order_id,
                        f"{action} {step.name} #{instance.instance_number}")
        await self._refresh_order(instance.order_id, workflow)
        return instance

    async def record_output(
        self,
        instance_id: str,
        quantity_received: int,
        weight_received: Optional[float] = None,
        field_values: Optional[Mapping[str, Any]] = None,
    ) -> OrderStepInstance:
        """Finish an in-progress instance, choosing full or partial completion.

        The authoritative measure of the workflow decides which status is
        written.
        """
        workflow = await self.workflow()
        instance = await self.get_instance(instance_id)
        probe = instance.model_copy(
            update={
                "quantity_received": quantity_received,
                "weight_received": instance.weight_received if weight_received is None else weight_received,
            }
        )
        assigned, received = measured(probe, workflow.measure)
        full = abs(assigned - received) <= WEIGHT_EPSILON
        status = InstanceStatus.COMPLETED if full else InstanceStatus.PARTIALLY_COMPLETED
        return await self.update_status(
            instance_id,
            status,
            field_values,
            quantity_received=quantity_received,
            weight_received=weight_received,
        )

    async def block(self, instance_id: str, notes: Optional[str] = None) -> OrderStepInstance:
        return await self.update_status(instance_id, InstanceStatus.BLOCKED, notes=notes)

    async def unblock(self, instance_id: str) -> OrderStepInstance:
        return await self.update_status(instance_id, InstanceStatus.IN_PROGRESS)

    async def update_fields(
        self, instance_id: str, field_values: Mapping[str, Any]
    ) -> OrderStepInstance:
        workflow = await self.workflow()
        return await self._store.update_fields(workflow, instance_id, field_values)

    async def accept_shortfall(
        self, instance_id: str, reason: Optional[str] = None
    ) -> OrderStepInstance:
        workflow = await self.workflow()
        instance = await self._store.accept_shortfall(instance_id, notes=reason)
        await self._log("Shortfall Accepted", "Manufacturing Step", instance.id, instance.order_id,
                        reason or f"Shortfall of instance {instance.id} accepted")
        await self._refresh_order(instance.order_id, workflow)
        return instance

    # ------------------------------------------------------------------
    # Order lifecycle
    async def _ensure_order_open(self, order_id: str) -> None:
        order = await self.get_order(order_id)
        if order.status in CLOSED_ORDER_STATUSES:
            raise InvalidTransitionError(
                f"Order {order.order_number} is {OrderStatus(order.status).value}",
                entity_id=order_id,
            )

    async def _refresh_order(self, order_id: str, workflow: WorkflowDefinition) -> None:
        async with self._order_locks.hold(order_id):
            order = await self.get_order(order_id)
            ledger = await self._store.load_graph(order_id)
            own = [i for i in ledger.instances() if i.order_id == order_id]
            changed = False
            if order.status == OrderStatus.PENDING and any(i.started_at for i in own):
                order.status = OrderStatus.IN_PROGRESS
                order.started_at = min(i.started_at for i in own if i.started_at)
                changed = True
            complete = is_order_complete(order, ledger, workflow)
            if order.status == OrderStatus.IN_PROGRESS and complete:
                order.status = OrderStatus.COMPLETED
                order.completed_at = utcnow()
                changed = True
            elif order.status == OrderStatus.COMPLETED and not complete:
                # a released rework claim reopened a shortfall
                order.status = OrderStatus.IN_PROGRESS
                order.completed_at = None
                changed = True
            if changed:
                await self._repository.save_order(order)
                logger.info(f"Order {order.order_number} is now {OrderStatus(order.status).value}")
        if changed and order.status == OrderStatus.COMPLETED:
            await self._log("Order Completed", "Manufacturing Order", order.id, order.id,
                            f"Manufacturing order {order.order_number} completed")

    async def tag_in(self, order_id: str, final_weight: Optional[float] = None) -> TagInEvent:
        """Reconcile a completed order into finished goods.

        Emits exactly one :class:`TagInEvent`; the order becomes ``tagged_in``
        and any further attempt fails. The event is published before the
        status is saved, so a failed publish leaves the order completed and
        the call can be retried; consumers dedupe on the idempotency key.
        """
        workflow = await self.workflow()
        async with self._order_locks.hold(order_id):
            order = await self.get_order(order_id)
            if order.status != OrderStatus.COMPLETED:
                raise InvalidTransitionError(
                    f"Order {order.order_number} is {OrderStatus(order.status).value}; "
                    "only completed orders can be tagged in",
                    entity_id=order_id,
                )
            finals = [
                i
                for i in await self._repository.list_instances(order_id)
                if i.is_settled and workflow.is_terminal(i.step_definition_id)
            ]
            if final_weight is None:
                weight = sum(i.weight_received for i in finals)
                final_weight = weight if weight > 0 else None
            event = TagInEvent(
                order_id=order.id,
                order_number=order.order_number,
                final_quantity=sum(i.quantity_received for i in finals),
                final_weight=final_weight,
            )
            await EngineEvent.tag_in(event).publish(
                self._transport, self._config.engine.inventory_topic
            )
            order.status = OrderStatus.TAGGED_IN
            await self._repository.save_order(order)

        await self._log("Tagged In", "Manufacturing Order", order.id, order.id,
                        f"Tagged in {event.final_quantity} pieces of {order.order_number}")
        return event

    # ------------------------------------------------------------------
    # Reads
    async def next_action(self, order_id: str) -> NextAction:
        workflow = await self.workflow()
        order = await self.get_order(order_id)
        instances = await self._repository.list_instances(order_id)
        return resolve_next_action(order, instances, workflow)

    async def ledger_for(self, instance_id: str) -> ConservationLedger:
        instance = await self.get_instance(instance_id)
        return await self._store.load_graph(instance.order_id)

    async def reconcile(self, instance_id: str) -> Reconciliation:
        return (await self.ledger_for(instance_id)).reconcile(instance_id)

    async def available_for_next_step(self, instance_id: str) -> int:
        return (await self.ledger_for(instance_id)).available_for_next_step(instance_id)

    async def outgoing_branches(self, instance_id: str) -> List[Branch]:
        ledger = await self.ledger_for(instance_id)
        return outgoing_branches(instance_id, ledger.instances())

    async def activity(self, order_id: str) -> List[ActivityEntry]:
        return await self._repository.list_activity(order_id)

    async def _log(
        self, action: str, entity_type: str, entity_id: str, order_id: str, description: str
    ) -> None:
        await self._repository.append_activity(
            ActivityEntry(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                order_id=order_id,
                description=description,
            )
        )
        logger.info(f"[{action}] {description}")


__all__ = ["ProgressionEngine", "is_order_complete"]
