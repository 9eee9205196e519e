"""Next-action resolution for an order.

Called on every render by UI consumers, so it must stay pure: no I/O, no
clock, no mutation of its inputs.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from .contracts import NextAction, NextActionKind
from .models import CLOSED_ORDER_STATUSES, ManufacturingOrder, OrderStepInstance
from .workflow import WorkflowDefinition

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _settled_newest_first(
    instances: Sequence[OrderStepInstance], workflow: WorkflowDefinition
) -> list[OrderStepInstance]:
    settled = [instance for instance in instances if instance.is_settled]

    def sort_key(instance: OrderStepInstance):
        return (
            instance.completed_at or _EPOCH,
            workflow.get_step(instance.step_definition_id).step_order,
            instance.instance_number,
            instance.id,
        )

    return sorted(settled, key=sort_key, reverse=True)


def resolve_next_action(
    order: ManufacturingOrder,
    instances: Sequence[OrderStepInstance],
    workflow: WorkflowDefinition,
) -> NextAction:
    """Compute the single action currently valid for ``order``.

    Rules, in priority order:

    1. An order with no instances may start the first active step.
    2. The most recently settled instance whose next active step has no
       instance yet may hand its output on to that step.
    3. Otherwise nothing is offered (work in flight, terminal step reached,
       or blocked).

    Closed orders (cancelled or tagged in) never get an action.
    """

    if order.status in CLOSED_ORDER_STATUSES:
        return NextAction.none()

    own = [instance for instance in instances if instance.order_id == order.id]
    if not own:
        first = workflow.first_step()
        if first is None:
            return NextAction.none()
        return NextAction(kind=NextActionKind.START_FIRST_STEP, step=first)

    started_steps = {instance.step_definition_id for instance in own}
    for instance in _settled_newest_first(own, workflow):
        current = workflow.get_step(instance.step_definition_id)
        following = workflow.next_step(current.step_order)
        if following is not None and following.id not in started_steps:
            return NextAction(
                kind=NextActionKind.START_STEP,
                step=following,
                from_instance_id=instance.id,
            )
    return NextAction.none()


__all__ = ["resolve_next_action"]
