"""Workflow definition: the ordered, versionable list of production steps."""

from __future__ import annotations

import logging
import uuid
from enum import Enum
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from .errors import InvalidTransitionError, NotFoundError
from .fields import FieldType

logger = logging.getLogger(__name__)


class Measure(str, Enum):
    """Which assigned/received figure decides yield."""

    QUANTITY = "quantity"
    WEIGHT = "weight"


class WorkflowStepDefinition(BaseModel):
    """A named, ordered stage in the manufacturing workflow."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    step_order: int
    name: str
    is_active: bool = True
    qc_required: bool = False
    estimated_duration_hours: Optional[float] = None
    description: Optional[str] = None


class StepFieldDefinition(BaseModel):
    """Shape of one configurable value recorded against a step instance."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    step_definition_id: str
    key: str
    label: str = ""
    type: FieldType = FieldType.TEXT
    is_required: bool = False
    unit: Optional[str] = None
    options: Optional[List[str]] = None


class WorkflowDefinition(BaseModel):
    """Ordered step definitions plus the fields configured on each step."""

    version: int = 1
    measure: Measure = Measure.QUANTITY
    steps: List[WorkflowStepDefinition] = Field(default_factory=list)
    fields: List[StepFieldDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_step_orders(self) -> "WorkflowDefinition":
        orders = [step.step_order for step in self.steps]
        if len(orders) != len(set(orders)):
            raise ValueError("step_order values must be unique within a workflow")
        return self

    # ------------------------------------------------------------------
    # Queries
    def list_active_steps(self) -> List[WorkflowStepDefinition]:
        """Return active steps ordered by ``step_order`` ascending."""
        return sorted(
            (step for step in self.steps if step.is_active),
            key=lambda step: step.step_order,
        )

    def first_step(self) -> Optional[WorkflowStepDefinition]:
        active = self.list_active_steps()
        return active[0] if active else None

    def next_step(self, current_order: int) -> Optional[WorkflowStepDefinition]:
        """Return the next *active* step after ``current_order``.

        Inactive steps are skipped, so the result is the active step with the
        smallest ``step_order`` greater than ``current_order`` rather than
        ``current_order + 1``.
        """
        for step in self.list_active_steps():
            if step.step_order > current_order:
                return step
        return None

    def get_step(self, step_id: str) -> WorkflowStepDefinition:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise NotFoundError(f"Step definition {step_id!r} not found", entity_id=step_id)

    def fields_for(self, step_id: str) -> List[StepFieldDefinition]:
        self.get_step(step_id)
        return [field for field in self.fields if field.step_definition_id == step_id]

    def is_terminal(self, step_id: str) -> bool:
        """``True`` when no active step follows ``step_id``."""
        return self.next_step(self.get_step(step_id).step_order) is None

    # ------------------------------------------------------------------
    # Editing
    def add_step(self, name: str, step_order: int, **kwargs) -> WorkflowStepDefinition:
        if any(step.step_order == step_order for step in self.steps):
            raise InvalidTransitionError(
                f"A step with step_order {step_order} already exists", entity_id=name
            )
        step = WorkflowStepDefinition(name=name, step_order=step_order, **kwargs)
        self.steps.append(step)
        self.version += 1
        logger.info(f"Added step {name!r} at order {step_order} (workflow v{self.version})")
        return step

    def add_field(self, step_id: str, key: str, **kwargs) -> StepFieldDefinition:
        self.get_step(step_id)
        if any(f.step_definition_id == step_id and f.key == key for f in self.fields):
            raise InvalidTransitionError(
                f"Field {key!r} already defined for step {step_id!r}", entity_id=step_id
            )
        field = StepFieldDefinition(step_definition_id=step_id, key=key, **kwargs)
        self.fields.append(field)
        self.version += 1
        return field

    def deactivate_step(self, step_id: str) -> WorkflowStepDefinition:
        step = self.get_step(step_id)
        if step.is_active:
            step.is_active = False
            self.version += 1
            logger.info(f"Deactivated step {step.name!r} (workflow v{self.version})")
        return step

    def activate_step(self, step_id: str) -> WorkflowStepDefinition:
        step = self.get_step(step_id)
        if not step.is_active:
            step.is_active = True
            self.version += 1
            logger.info(f"Activated step {step.name!r} (workflow v{self.version})")
        return step

    def remove_step(self, step_id: str, in_use: bool) -> None:
        """Delete a step that no instance references.

        Steps with live instances can only be deactivated.
        """
        step = self.get_step(step_id)
        if in_use:
            raise InvalidTransitionError(
                f"Step {step.name!r} has instances; deactivate it instead",
                entity_id=step_id,
            )
        self.steps = [s for s in self.steps if s.id != step_id]
        self.fields = [f for f in self.fields if f.step_definition_id != step_id]
        self.version += 1


def load_workflow_file(path: str | Path) -> WorkflowDefinition:
    """Load a workflow definition from a YAML document.

    Fields may be nested under their step (``steps[].fields``) instead of
    listing ``step_definition_id`` explicitly.
    """

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    steps = []
    fields = list(data.get("fields", []))
    for raw_step in data.get("steps", []):
        raw_step = dict(raw_step)
        nested = raw_step.pop("fields", [])
        step = WorkflowStepDefinition(**raw_step)
        steps.append(step)
        for raw_field in nested:
            fields.append({**raw_field, "step_definition_id": step.id})

    return WorkflowDefinition(
        version=data.get("version", 1),
        measure=data.get("measure", Measure.QUANTITY),
        steps=steps,
        fields=[StepFieldDefinition(**f) for f in fields],
    )


__all__ = [
    "Measure",
    "WorkflowStepDefinition",
    "StepFieldDefinition",
    "WorkflowDefinition",
    "load_workflow_file",
]
