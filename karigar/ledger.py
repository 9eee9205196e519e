"""Quantity/weight conservation over a snapshot of the instance graph.

The ledger owns no state of its own. It is built from the instances of one
order (plus any rework instances in child orders that point back into it)
and answers how much output was accepted, how much fell short, and how much
is still free to hand downstream.

Accepted output (``*_received``) feeds progression children through
``parent_instance_id``. Shortfall (``*_assigned - *_received``) feeds rework
children through ``origin_instance_id``. The two pools are claimed
independently.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from .contracts import Reconciliation
from .errors import (
    ConservationViolationError,
    InvalidTransitionError,
    NotFoundError,
    OverAllocationError,
)
from .models import InstanceStatus, OrderStepInstance
from .state_machine import WEIGHT_EPSILON
from .workflow import Measure

logger = logging.getLogger(__name__)


def _clean_weight(value: float, instance_id: str, what: str) -> float:
    if value < -WEIGHT_EPSILON:
        raise OverAllocationError(
            f"{what} weight for instance {instance_id} would be negative ({value:g})",
            entity_id=instance_id,
        )
    return max(0.0, value)


class ConservationLedger:
    """Read-side accounting for one instance graph snapshot."""

    def __init__(self, instances: Iterable[OrderStepInstance]) -> None:
        self._by_id: Dict[str, OrderStepInstance] = {}
        self._progression: Dict[str, List[OrderStepInstance]] = defaultdict(list)
        self._rework: Dict[str, List[OrderStepInstance]] = defaultdict(list)
        for instance in instances:
            self._by_id[instance.id] = instance
            if instance.parent_instance_id:
                self._progression[instance.parent_instance_id].append(instance)
            if instance.origin_instance_id:
                self._rework[instance.origin_instance_id].append(instance)

    # ------------------------------------------------------------------
    # Graph access
    def get(self, instance_id: str) -> OrderStepInstance:
        try:
            return self._by_id[instance_id]
        except KeyError as exc:
            raise NotFoundError(
                f"Instance {instance_id!r} not found", entity_id=instance_id
            ) from exc

    def instances(self) -> List[OrderStepInstance]:
        return list(self._by_id.values())

    def progression_children(self, instance_id: str) -> List[OrderStepInstance]:
        return list(self._progression.get(instance_id, []))

    def rework_children(self, instance_id: str) -> List[OrderStepInstance]:
        return list(self._rework.get(instance_id, []))

    # ------------------------------------------------------------------
    # Figures
    def reconcile(self, instance_id: str) -> Reconciliation:
        instance = self.get(instance_id)
        return Reconciliation(
            instance_id=instance.id,
            accepted_quantity=instance.quantity_received,
            shortfall_quantity=instance.quantity_assigned - instance.quantity_received,
            accepted_weight=instance.weight_received,
            shortfall_weight=max(0.0, instance.weight_assigned - instance.weight_received),
        )

    def _children_claims(
        self, children: Iterable[OrderStepInstance], exclude_id: Optional[str]
    ) -> Tuple[int, float]:
        quantity = 0
        weight = 0.0
        for child in children:
            if child.id == exclude_id:
                continue
            quantity += child.quantity_assigned
            weight += child.weight_assigned
        return quantity, weight

    def available_for_next_step(
        self, instance_id: str, exclude_id: Optional[str] = None
    ) -> int:
        """Accepted quantity not yet assigned to a next-step batch.

        Raises:
            OverAllocationError: If children already claim more than was
                accepted. The figure is never clamped.
        """
        instance = self.get(instance_id)
        if not instance.is_settled:
            return 0
        claimed, _ = self._children_claims(self._progression.get(instance_id, []), exclude_id)
        available = instance.quantity_received - claimed
        if available < 0:
            logger.error(f"Instance {instance_id} over-allocated by {-available}")
            raise OverAllocationError(
                f"Instance {instance_id} has {claimed} assigned downstream but only "
                f"{instance.quantity_received} accepted",
                entity_id=instance_id,
            )
        return available

    def available_weight_for_next_step(
        self, instance_id: str, exclude_id: Optional[str] = None
    ) -> float:
        instance = self.get(instance_id)
        if not instance.is_settled:
            return 0.0
        _, claimed = self._children_claims(self._progression.get(instance_id, []), exclude_id)
        return _clean_weight(instance.weight_received - claimed, instance_id, "Available")

    def rework_claimed(
        self, instance_id: str, exclude_id: Optional[str] = None
    ) -> Tuple[int, float]:
        """Quantity and weight already reclaimed by rework children."""
        self.get(instance_id)
        return self._children_claims(self._rework.get(instance_id, []), exclude_id)

    def remaining_shortfall(
        self, instance_id: str, exclude_id: Optional[str] = None
    ) -> Tuple[int, float]:
        """Shortfall not yet reclaimed by rework."""
        rec = self.reconcile(instance_id)
        claimed_qty, claimed_weight = self.rework_claimed(instance_id, exclude_id)
        quantity = rec.shortfall_quantity - claimed_qty
        if quantity < 0:
            raise OverAllocationError(
                f"Rework claims {claimed_qty} against a shortfall of {rec.shortfall_quantity}",
                entity_id=instance_id,
            )
        weight = _clean_weight(rec.shortfall_weight - claimed_weight, instance_id, "Shortfall")
        return quantity, weight

    def undispositioned_shortfall(
        self, instance_id: str, measure: Measure = Measure.QUANTITY
    ) -> float:
        """Shortfall that is neither reclaimed by rework nor explicitly accepted."""
        instance = self.get(instance_id)
        if instance.status != InstanceStatus.PARTIALLY_COMPLETED or instance.shortfall_accepted:
            return 0
        quantity, weight = self.remaining_shortfall(instance_id)
        return weight if measure is Measure.WEIGHT else quantity

    # ------------------------------------------------------------------
    # Write-side checks
    @staticmethod
    def check_output(
        instance: OrderStepInstance, quantity_received: int, weight_received: float
    ) -> None:
        """Reject received figures that break ``received <= assigned``."""
        if quantity_received < 0 or quantity_received > instance.quantity_assigned:
            raise ConservationViolationError(
                f"Quantity received {quantity_received} outside 0..{instance.quantity_assigned}",
                entity_id=instance.id,
            )
        if (
            weight_received < 0
            or weight_received > instance.weight_assigned + WEIGHT_EPSILON
        ):
            raise ConservationViolationError(
                f"Weight received {weight_received:g} outside 0..{instance.weight_assigned:g}",
                entity_id=instance.id,
            )

    def check_progression_claim(
        self,
        parent_id: str,
        quantity: int,
        weight: float,
        exclude_id: Optional[str] = None,
    ) -> None:
        parent = self.get(parent_id)
        if not parent.is_settled:
            raise InvalidTransitionError(
                f"Instance {parent_id} has not finished; nothing to hand on",
                entity_id=parent_id,
            )
        available = self.available_for_next_step(parent_id, exclude_id)
        available_weight = self.available_weight_for_next_step(parent_id, exclude_id)
        if quantity > available:
            raise OverAllocationError(
                f"Cannot assign {quantity} from instance {parent_id}; only {available} available",
                entity_id=parent_id,
            )
        if weight > available_weight + WEIGHT_EPSILON:
            raise OverAllocationError(
                f"Cannot assign {weight:g} weight from instance {parent_id}; "
                f"only {available_weight:g} available",
                entity_id=parent_id,
            )

    def check_rework_claim(
        self,
        origin_id: str,
        quantity: int,
        weight: float,
        exclude_id: Optional[str] = None,
    ) -> None:
        origin = self.get(origin_id)
        if origin.status != InstanceStatus.PARTIALLY_COMPLETED:
            raise InvalidTransitionError(
                f"Only partially completed instances can be reworked "
                f"(instance {origin_id} is {InstanceStatus(origin.status).value})",
                entity_id=origin_id,
            )
        if origin.shortfall_accepted:
            raise InvalidTransitionError(
                f"Shortfall of instance {origin_id} was accepted; no rework allowed",
                entity_id=origin_id,
            )
        remaining_qty, remaining_weight = self.remaining_shortfall(origin_id, exclude_id)
        if quantity > remaining_qty:
            raise OverAllocationError(
                f"Cannot rework {quantity} from instance {origin_id}; "
                f"only {remaining_qty} of the shortfall is unclaimed",
                entity_id=origin_id,
            )
        if weight > remaining_weight + WEIGHT_EPSILON:
            raise OverAllocationError(
                f"Cannot rework {weight:g} weight from instance {origin_id}; "
                f"only {remaining_weight:g} unclaimed",
                entity_id=origin_id,
            )

    def check_invariants(self) -> None:
        """Validate every instance in the snapshot; raise on the first breach."""
        for instance in self._by_id.values():
            self.check_output(instance, instance.quantity_received, instance.weight_received)
            self.available_for_next_step(instance.id)
            self.available_weight_for_next_step(instance.id)
            if instance.status == InstanceStatus.PARTIALLY_COMPLETED:
                self.remaining_shortfall(instance.id)


__all__ = ["ConservationLedger"]
