"""Transition table and guard tests."""

import pytest

from karigar.errors import InvalidTransitionError
from karigar.models import InstanceStatus, OrderStepInstance
from karigar.state_machine import ALLOWED_TRANSITIONS, check_transition, is_valid_transition
from karigar.workflow import Measure


def _instance(status=InstanceStatus.PENDING, **kwargs) -> OrderStepInstance:
    data = dict(
        order_id="order",
        step_definition_id="step",
        instance_number=1,
        status=status,
        quantity_assigned=50,
        weight_assigned=100.0,
        assigned_worker_id="w-1",
    )
    data.update(kwargs)
    return OrderStepInstance(**data)


@pytest.mark.parametrize("source", list(InstanceStatus))
@pytest.mark.parametrize("target", list(InstanceStatus))
def test_transition_table(source, target):
    expected = (source, target) in {
        (InstanceStatus.PENDING, InstanceStatus.IN_PROGRESS),
        (InstanceStatus.IN_PROGRESS, InstanceStatus.COMPLETED),
        (InstanceStatus.IN_PROGRESS, InstanceStatus.PARTIALLY_COMPLETED),
        (InstanceStatus.IN_PROGRESS, InstanceStatus.BLOCKED),
        (InstanceStatus.BLOCKED, InstanceStatus.IN_PROGRESS),
    }
    assert is_valid_transition(source, target) is expected
    assert len(ALLOWED_TRANSITIONS) == 5


def test_settled_instances_never_move():
    for status in (InstanceStatus.COMPLETED, InstanceStatus.PARTIALLY_COMPLETED):
        with pytest.raises(InvalidTransitionError):
            check_transition(_instance(status), InstanceStatus.IN_PROGRESS)


def test_start_requires_worker_and_assignment():
    with pytest.raises(InvalidTransitionError):
        check_transition(_instance(assigned_worker_id=None), InstanceStatus.IN_PROGRESS)
    with pytest.raises(InvalidTransitionError):
        check_transition(_instance(quantity_assigned=0), InstanceStatus.IN_PROGRESS)
    check_transition(_instance(), InstanceStatus.IN_PROGRESS)


def test_start_blocked_by_unsettled_parent():
    parent = _instance(InstanceStatus.PENDING)
    child = _instance(parent_instance_id=parent.id, step_definition_id="next")
    with pytest.raises(InvalidTransitionError) as exc:
        check_transition(child, InstanceStatus.IN_PROGRESS, ancestor=parent)
    assert exc.value.entity_id == child.id


def test_completed_needs_full_yield():
    running = _instance(InstanceStatus.IN_PROGRESS, quantity_received=50)
    check_transition(running, InstanceStatus.COMPLETED)

    short = _instance(InstanceStatus.IN_PROGRESS, quantity_received=35)
    with pytest.raises(InvalidTransitionError):
        check_transition(short, InstanceStatus.COMPLETED)
    check_transition(short, InstanceStatus.PARTIALLY_COMPLETED)


def test_partial_needs_some_but_not_all():
    for received in (0, 50):
        instance = _instance(InstanceStatus.IN_PROGRESS, quantity_received=received)
        with pytest.raises(InvalidTransitionError):
            check_transition(instance, InstanceStatus.PARTIALLY_COMPLETED)


def test_weight_measure_decides_yield():
    instance = _instance(
        InstanceStatus.IN_PROGRESS, quantity_received=50, weight_received=92.5
    )
    check_transition(instance, InstanceStatus.COMPLETED, Measure.QUANTITY)
    with pytest.raises(InvalidTransitionError):
        check_transition(instance, InstanceStatus.COMPLETED, Measure.WEIGHT)
    check_transition(instance, InstanceStatus.PARTIALLY_COMPLETED, Measure.WEIGHT)


def test_block_and_unblock():
    check_transition(_instance(InstanceStatus.IN_PROGRESS), InstanceStatus.BLOCKED)
    check_transition(_instance(InstanceStatus.BLOCKED), InstanceStatus.IN_PROGRESS)
    with pytest.raises(InvalidTransitionError):
        check_transition(_instance(InstanceStatus.BLOCKED), InstanceStatus.COMPLETED)
