"""Value objects exchanged across the engine's boundaries."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from pydantic import BaseModel, Field

from .workflow import WorkflowStepDefinition

if TYPE_CHECKING:
    from .transports import BaseTransport

logger = logging.getLogger(__name__)


class OriginKind(str, Enum):
    NONE = "none"
    PARENT = "parent"
    REWORK = "rework"


class Origin(BaseModel):
    """Where a new instance's input comes from."""

    kind: OriginKind = OriginKind.NONE
    instance_id: Optional[str] = None

    @classmethod
    def none(cls) -> "Origin":
        return cls()

    @classmethod
    def parent(cls, instance_id: str) -> "Origin":
        return cls(kind=OriginKind.PARENT, instance_id=instance_id)

    @classmethod
    def rework(cls, instance_id: str) -> "Origin":
        return cls(kind=OriginKind.REWORK, instance_id=instance_id)


class NextActionKind(str, Enum):
    START_FIRST_STEP = "start_first_step"
    START_STEP = "start_step"
    NONE = "none"


class NextAction(BaseModel):
    """What the caller may do next for an order."""

    kind: NextActionKind = NextActionKind.NONE
    step: Optional[WorkflowStepDefinition] = None
    from_instance_id: Optional[str] = None

    @classmethod
    def none(cls) -> "NextAction":
        return cls()


class BranchType(str, Enum):
    PROGRESSION = "progression"
    REWORK = "rework"


class Branch(BaseModel):
    """One outgoing edge of an instance in the workflow graph."""

    type: BranchType
    target_instance_id: Optional[str] = None
    target_order_id: Optional[str] = None
    quantity: int = 0
    weight: float = 0.0


class Reconciliation(BaseModel):
    """Accepted versus shortfall figures for one instance."""

    instance_id: str
    accepted_quantity: int
    shortfall_quantity: int
    accepted_weight: float = 0.0
    shortfall_weight: float = 0.0

    @property
    def accepted(self) -> int:
        return self.accepted_quantity

    @property
    def shortfall(self) -> int:
        return self.shortfall_quantity


class TagInEvent(BaseModel):
    """Fact handed to the inventory subsystem when an order is tagged in."""

    order_id: str
    order_number: str
    final_quantity: int
    final_weight: Optional[float] = None


class EngineEvent(BaseModel):
    """Envelope published over a transport."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    idempotency_key: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = Field(default_factory=dict)
    spec_version: str = "1.0"

    @classmethod
    def tag_in(cls, event: TagInEvent) -> "EngineEvent":
        return cls(
            event_type="tag_in",
            idempotency_key=event.order_id,
            payload=event.model_dump(),
        )

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "EngineEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)

    async def publish(self, transport: "BaseTransport", topic: str) -> None:
        """Publish the event, logging and re-raising transport failures."""
        try:
            await transport.publish(topic, self)
        except Exception as e:
            logger.error(
                f"Failed to publish {self.event_type} event key={self.idempotency_key} "
                f"to {topic}: {e}"
            )
            raise
        logger.info(
            f"Published {self.event_type} event key={self.idempotency_key} to {topic}"
        )


__all__ = [
    "OriginKind",
    "Origin",
    "NextActionKind",
    "NextAction",
    "BranchType",
    "Branch",
    "Reconciliation",
    "TagInEvent",
    "EngineEvent",
]
