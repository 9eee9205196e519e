"""Transition table and guards for step instances.

The functions here are pure: they inspect an instance (with its proposed
received figures already applied) and either return or raise. Writing is the
store's job.
"""

from __future__ import annotations

from typing import FrozenSet, Optional, Tuple

from .errors import InvalidTransitionError
from .models import InstanceStatus, OrderStepInstance
from .workflow import Measure

# Tolerance for weight comparisons (grams).
WEIGHT_EPSILON = 1e-9

ALLOWED_TRANSITIONS: FrozenSet[Tuple[InstanceStatus, InstanceStatus]] = frozenset(
    [
        (InstanceStatus.PENDING, InstanceStatus.IN_PROGRESS),
        (InstanceStatus.IN_PROGRESS, InstanceStatus.COMPLETED),
        (InstanceStatus.IN_PROGRESS, InstanceStatus.PARTIALLY_COMPLETED),
        (InstanceStatus.IN_PROGRESS, InstanceStatus.BLOCKED),
        # unblocking is the only re-entrant edge
        (InstanceStatus.BLOCKED, InstanceStatus.IN_PROGRESS),
    ]
)


def is_valid_transition(from_status: InstanceStatus, to_status: InstanceStatus) -> bool:
    return (from_status, to_status) in ALLOWED_TRANSITIONS


def measured(instance: OrderStepInstance, measure: Measure) -> Tuple[float, float]:
    """Return ``(assigned, received)`` for the authoritative measure."""
    if measure is Measure.WEIGHT:
        return instance.weight_assigned, instance.weight_received
    return instance.quantity_assigned, instance.quantity_received


def _tolerance(measure: Measure) -> float:
    return WEIGHT_EPSILON if measure is Measure.WEIGHT else 0


def check_transition(
    instance: OrderStepInstance,
    new_status: InstanceStatus,
    measure: Measure = Measure.QUANTITY,
    ancestor: Optional[OrderStepInstance] = None,
) -> None:
    """Raise :class:`InvalidTransitionError` unless the move is allowed.

    Args:
        instance: Instance carrying its current status and the received
            figures that will be written together with the new status.
        new_status: Requested status.
        measure: Measure that decides full versus partial yield.
        ancestor: The parent or origin instance, if any.
    """

    current = InstanceStatus(instance.status)
    if not is_valid_transition(current, new_status):
        raise InvalidTransitionError(
            f"Cannot move instance from {current.value} to {new_status.value}",
            entity_id=instance.id,
        )

    if ancestor is not None and not ancestor.is_settled:
        raise InvalidTransitionError(
            f"Upstream instance {ancestor.id} is still {InstanceStatus(ancestor.status).value}",
            entity_id=instance.id,
        )

    assigned, received = measured(instance, measure)
    eps = _tolerance(measure)

    if new_status is InstanceStatus.IN_PROGRESS and current is InstanceStatus.PENDING:
        if not instance.assigned_worker_id:
            raise InvalidTransitionError(
                "A worker must be assigned before the step starts", entity_id=instance.id
            )
        if assigned <= 0:
            raise InvalidTransitionError(
                f"Nothing assigned ({measure.value}) to start the step",
                entity_id=instance.id,
            )
    elif new_status is InstanceStatus.COMPLETED:
        if abs(received - assigned) > eps:
            raise InvalidTransitionError(
                f"Full completion needs {measure.value} received == assigned "
                f"({received} of {assigned}); use partially_completed",
                entity_id=instance.id,
            )
    elif new_status is InstanceStatus.PARTIALLY_COMPLETED:
        if not (eps < received < assigned - eps):
            raise InvalidTransitionError(
                f"Partial completion needs 0 < {measure.value} received < assigned "
                f"({received} of {assigned})",
                entity_id=instance.id,
            )


__all__ = [
    "ALLOWED_TRANSITIONS",
    "WEIGHT_EPSILON",
    "is_valid_transition",
    "measured",
    "check_transition",
]
