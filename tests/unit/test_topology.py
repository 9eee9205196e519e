"""Outgoing branch tests."""

from karigar.contracts import BranchType
from karigar.models import InstanceStatus, OrderStepInstance
from karigar.topology import outgoing_branches


def _instance(order_id="order", step="s1", number=1, **kwargs):
    data = dict(
        order_id=order_id,
        step_definition_id=step,
        instance_number=number,
        status=InstanceStatus.PENDING,
        quantity_assigned=10,
    )
    data.update(kwargs)
    return OrderStepInstance(**data)


def test_progression_and_rework_branches():
    source = _instance(
        status=InstanceStatus.PARTIALLY_COMPLETED, quantity_assigned=50, quantity_received=35
    )
    rework = _instance(number=2, quantity_assigned=15, origin_instance_id=source.id)
    onward = _instance(step="s2", quantity_assigned=35, parent_instance_id=source.id)
    unrelated = _instance(step="s2", number=2)

    branches = outgoing_branches(source.id, [source, rework, onward, unrelated])

    assert [b.type for b in branches] == [BranchType.PROGRESSION, BranchType.REWORK]
    assert branches[0].target_instance_id == onward.id
    assert branches[0].quantity == 35
    assert branches[1].target_instance_id == rework.id
    assert branches[1].quantity == 15
    assert all(b.target_order_id is None for b in branches)


def test_cross_order_rework_branch_names_target_order():
    source = _instance(
        status=InstanceStatus.PARTIALLY_COMPLETED, quantity_assigned=50, quantity_received=40
    )
    rework = _instance(order_id="rework-order", origin_instance_id=source.id)

    (branch,) = outgoing_branches(source.id, [source, rework])
    assert branch.type is BranchType.REWORK
    assert branch.target_order_id == "rework-order"


def test_leaf_has_no_branches():
    leaf = _instance()
    assert outgoing_branches(leaf.id, [leaf]) == []
