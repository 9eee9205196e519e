"""Typed values for configurable step fields.

Field values used to travel as loose ``key -> string`` maps. Here every value
is a tagged :data:`TypedValue` and is checked against its
:class:`~karigar.workflow.StepFieldDefinition` when it is written, so readers
never have to guess what a value means.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, Iterable, List, Literal, Mapping, Union

from pydantic import BaseModel, Field, ValidationError

from .errors import FieldValidationError

if TYPE_CHECKING:
    from .workflow import StepFieldDefinition


class FieldType(str, Enum):
    """Kinds of data a step field can hold."""

    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    WORKER_REFERENCE = "worker_reference"
    STATUS_ENUM = "status_enum"
    MULTISELECT = "multiselect"


class TextValue(BaseModel):
    kind: Literal["text"] = "text"
    value: str


class NumberValue(BaseModel):
    kind: Literal["number"] = "number"
    value: float


class DateValue(BaseModel):
    kind: Literal["date"] = "date"
    value: date


class WorkerRefValue(BaseModel):
    kind: Literal["worker_reference"] = "worker_reference"
    value: str


class EnumValue(BaseModel):
    kind: Literal["status_enum"] = "status_enum"
    value: str


class MultiSelectValue(BaseModel):
    kind: Literal["multiselect"] = "multiselect"
    value: List[str] = Field(default_factory=list)


TypedValue = Annotated[
    Union[TextValue, NumberValue, DateValue, WorkerRefValue, EnumValue, MultiSelectValue],
    Field(discriminator="kind"),
]

_VALUE_CLASSES = {
    FieldType.TEXT: TextValue,
    FieldType.NUMBER: NumberValue,
    FieldType.DATE: DateValue,
    FieldType.WORKER_REFERENCE: WorkerRefValue,
    FieldType.STATUS_ENUM: EnumValue,
    FieldType.MULTISELECT: MultiSelectValue,
}


def _split_multiselect(raw: Any) -> list[str]:
    if isinstance(raw, str):
        return [part.strip() for part in raw.split(",") if part.strip()]
    if isinstance(raw, Iterable):
        return [str(part) for part in raw]
    raise TypeError(f"cannot read {raw!r} as a list of options")


def coerce_field_value(definition: "StepFieldDefinition", raw: Any) -> TypedValue:
    """Convert ``raw`` into the typed value required by ``definition``.

    Raw input may already be a typed value, a plain Python value, or the
    string form older clients send (``"12.5"``, ``"2024-03-01"``, ``"a,b"``).

    Raises:
        FieldValidationError: If the value does not fit the field type or
            falls outside the configured options.
    """

    field_type = FieldType(definition.type)
    if isinstance(raw, BaseModel):
        if getattr(raw, "kind", None) != field_type.value:
            raise FieldValidationError(
                f"Field {definition.key!r} expects {field_type.value}, got {raw.kind}",
                entity_id=definition.id,
            )
        typed = raw
    else:
        value_cls = _VALUE_CLASSES[field_type]
        try:
            if field_type is FieldType.MULTISELECT:
                typed = value_cls(value=_split_multiselect(raw))
            else:
                typed = value_cls(value=raw)
        except (ValidationError, TypeError) as exc:
            raise FieldValidationError(
                f"Invalid {field_type.value} value for field {definition.key!r}: {raw!r}",
                entity_id=definition.id,
            ) from exc

    if field_type is FieldType.WORKER_REFERENCE and not typed.value:
        raise FieldValidationError(
            f"Field {definition.key!r} requires a worker id", entity_id=definition.id
        )
    if definition.options and field_type in (FieldType.STATUS_ENUM, FieldType.MULTISELECT):
        chosen = typed.value if field_type is FieldType.MULTISELECT else [typed.value]
        unknown = [item for item in chosen if item not in definition.options]
        if unknown:
            raise FieldValidationError(
                f"Field {definition.key!r} does not allow {unknown}",
                entity_id=definition.id,
            )
    return typed


def validate_field_values(
    definitions: Iterable["StepFieldDefinition"], values: Mapping[str, Any]
) -> dict[str, TypedValue]:
    """Validate a batch of raw values against the step's field definitions.

    Empty values (``None`` or ``""``) are dropped, matching how forms submit
    untouched inputs.
    """

    by_key = {definition.key: definition for definition in definitions}
    typed: dict[str, TypedValue] = {}
    for key, raw in values.items():
        definition = by_key.get(key)
        if definition is None:
            raise FieldValidationError(f"Unknown field {key!r}", entity_id=key)
        if raw is None or raw == "":
            continue
        typed[key] = coerce_field_value(definition, raw)
    return typed


def missing_required(
    definitions: Iterable["StepFieldDefinition"], values: Mapping[str, Any]
) -> list[str]:
    """Return keys of required fields that have no value."""
    return [
        definition.key
        for definition in definitions
        if definition.is_required and definition.key not in values
    ]


__all__ = [
    "FieldType",
    "TypedValue",
    "TextValue",
    "NumberValue",
    "DateValue",
    "WorkerRefValue",
    "EnumValue",
    "MultiSelectValue",
    "coerce_field_value",
    "validate_field_values",
    "missing_required",
]
