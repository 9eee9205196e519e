"""Orders and step instances tracked by the engine."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator

from .fields import TypedValue


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class OrderStatus(str, Enum):
    """Lifecycle of a manufacturing order."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    TAGGED_IN = "tagged_in"
    CANCELLED = "cancelled"


class InstanceStatus(str, Enum):
    """Lifecycle of one batch of work against a step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    BLOCKED = "blocked"


# Statuses whose output is final and may feed downstream instances.
SETTLED_STATUSES = frozenset({InstanceStatus.COMPLETED, InstanceStatus.PARTIALLY_COMPLETED})
OPEN_STATUSES = frozenset(
    {InstanceStatus.PENDING, InstanceStatus.IN_PROGRESS, InstanceStatus.BLOCKED}
)
CLOSED_ORDER_STATUSES = frozenset({OrderStatus.TAGGED_IN, OrderStatus.CANCELLED})


class ManufacturingOrder(BaseModel):
    """A request to manufacture ``quantity_required`` pieces."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_number: str
    product_name: str = ""
    quantity_required: int = Field(gt=0)
    priority: Priority = Priority.MEDIUM
    status: OrderStatus = OrderStatus.PENDING
    due_date: Optional[date] = None
    special_instructions: Optional[str] = None
    parent_order_id: Optional[str] = None
    origin_step_order: Optional[int] = None
    origin_instance_id: Optional[str] = None
    rework_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_rework(self) -> bool:
        return self.parent_order_id is not None


class OrderStepInstance(BaseModel):
    """One concrete batch of work against a step definition for an order.

    ``parent_instance_id`` links a normal progression child to the instance
    whose accepted output it consumes. ``origin_instance_id`` links a rework
    child to the instance whose shortfall it reprocesses. An instance has at
    most one of the two.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    step_definition_id: str
    instance_number: int = Field(ge=1)
    status: InstanceStatus = InstanceStatus.PENDING
    quantity_assigned: int = Field(default=0, ge=0)
    quantity_received: int = Field(default=0, ge=0)
    weight_assigned: float = Field(default=0.0, ge=0)
    weight_received: float = Field(default=0.0, ge=0)
    assigned_worker_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    parent_instance_id: Optional[str] = None
    origin_instance_id: Optional[str] = None
    shortfall_accepted: bool = False
    notes: Optional[str] = None
    field_values: Dict[str, TypedValue] = Field(default_factory=dict)
    version: int = 0

    @model_validator(mode="after")
    def _check_lineage(self) -> "OrderStepInstance":
        if self.parent_instance_id and self.origin_instance_id:
            raise ValueError(
                "an instance is either a progression child or a rework child, not both"
            )
        return self

    @property
    def is_rework(self) -> bool:
        return self.origin_instance_id is not None

    @property
    def ancestor_id(self) -> Optional[str]:
        return self.parent_instance_id or self.origin_instance_id

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES


class ActivityEntry(BaseModel):
    """Audit trail record of a state-changing engine operation."""

    id: Optional[int] = None
    action: str
    entity_type: str
    entity_id: str
    order_id: str
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)


__all__ = [
    "Priority",
    "OrderStatus",
    "InstanceStatus",
    "SETTLED_STATUSES",
    "OPEN_STATUSES",
    "CLOSED_ORDER_STATUSES",
    "ManufacturingOrder",
    "OrderStepInstance",
    "ActivityEntry",
    "utcnow",
]
