"""Karigar: step progression engine for jewelry manufacturing orders."""

from .contracts import Branch, NextAction, NextActionKind, Origin, TagInEvent
from .engine import ProgressionEngine
from .errors import (
    ConcurrentModificationError,
    ConservationViolationError,
    EngineError,
    FieldValidationError,
    InvalidTransitionError,
    NotFoundError,
    OverAllocationError,
)
from .ledger import ConservationLedger
from .models import InstanceStatus, ManufacturingOrder, OrderStatus, OrderStepInstance
from .persistence import get_repository
from .resolver import resolve_next_action
from .transports import get_transport
from .workflow import Measure, WorkflowDefinition, load_workflow_file

__version__ = "0.1.0"
__all__ = [
    "ProgressionEngine",
    "WorkflowDefinition",
    "Measure",
    "load_workflow_file",
    "ManufacturingOrder",
    "OrderStepInstance",
    "OrderStatus",
    "InstanceStatus",
    "ConservationLedger",
    "resolve_next_action",
    "Origin",
    "NextAction",
    "NextActionKind",
    "Branch",
    "TagInEvent",
    "get_repository",
    "get_transport",
    "EngineError",
    "NotFoundError",
    "InvalidTransitionError",
    "ConservationViolationError",
    "OverAllocationError",
    "ConcurrentModificationError",
    "FieldValidationError",
]
