"""Error taxonomy raised by the progression engine."""

from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for engine errors. Always carries the offending entity id."""

    def __init__(self, message: str, entity_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.entity_id = entity_id


class NotFoundError(EngineError):
    """A referenced order, step definition or instance does not exist."""


class InvalidTransitionError(EngineError):
    """A state machine rule would be violated."""


class ConservationViolationError(EngineError):
    """Received quantity or weight would exceed what was assigned."""


class OverAllocationError(EngineError):
    """More output would be claimed downstream than is available."""


class ConcurrentModificationError(EngineError):
    """A concurrent writer won the race; safe to retry once from fresh state."""


class FieldValidationError(EngineError):
    """A step field value does not match its definition."""


__all__ = [
    "EngineError",
    "NotFoundError",
    "InvalidTransitionError",
    "ConservationViolationError",
    "OverAllocationError",
    "ConcurrentModificationError",
    "FieldValidationError",
]
