"""Outgoing branches of an instance, for visualization consumers."""

from __future__ import annotations

from typing import Iterable, List

from .contracts import Branch, BranchType
from .models import OrderStepInstance


def outgoing_branches(
    instance_id: str, instances: Iterable[OrderStepInstance]
) -> List[Branch]:
    """List the progression and rework edges leaving ``instance_id``.

    Edges come from stored lineage only. A rework child living in another
    order is reported with its ``target_order_id`` so renderers can draw the
    cross-order edge.
    """

    source_order_id = None
    children: List[OrderStepInstance] = []
    for instance in instances:
        if instance.id == instance_id:
            source_order_id = instance.order_id
        elif instance_id in (instance.parent_instance_id, instance.origin_instance_id):
            children.append(instance)

    children.sort(key=lambda child: (child.is_rework, child.instance_number, child.id))
    branches: List[Branch] = []
    for child in children:
        branch_type = BranchType.REWORK if child.is_rework else BranchType.PROGRESSION
        branches.append(
            Branch(
                type=branch_type,
                target_instance_id=child.id,
                target_order_id=child.order_id if child.order_id != source_order_id else None,
                quantity=child.quantity_assigned,
                weight=child.weight_assigned,
            )
        )
    return branches


__all__ = ["outgoing_branches"]
