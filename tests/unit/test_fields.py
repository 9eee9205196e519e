"""Typed step field tests."""

from datetime import date

import pytest

from karigar.errors import FieldValidationError
from karigar.fields import (
    DateValue,
    EnumValue,
    FieldType,
    MultiSelectValue,
    NumberValue,
    TextValue,
    coerce_field_value,
    missing_required,
    validate_field_values,
)
from karigar.workflow import StepFieldDefinition


def _field(key: str, type: FieldType, **kwargs) -> StepFieldDefinition:
    return StepFieldDefinition(step_definition_id="step", key=key, type=type, **kwargs)


def test_string_inputs_are_coerced():
    assert coerce_field_value(_field("w", FieldType.NUMBER), "12.5") == NumberValue(value=12.5)
    assert coerce_field_value(_field("d", FieldType.DATE), "2024-03-01") == DateValue(
        value=date(2024, 3, 1)
    )
    assert coerce_field_value(_field("n", FieldType.TEXT), "rose gold") == TextValue(
        value="rose gold"
    )


def test_multiselect_splits_comma_string():
    field = _field("stones", FieldType.MULTISELECT, options=["ruby", "emerald", "pearl"])
    value = coerce_field_value(field, "ruby, pearl")
    assert value == MultiSelectValue(value=["ruby", "pearl"])

    with pytest.raises(FieldValidationError):
        coerce_field_value(field, ["ruby", "opal"])


def test_enum_options_enforced():
    field = _field("result", FieldType.STATUS_ENUM, options=["pass", "fail"])
    assert coerce_field_value(field, "pass") == EnumValue(value="pass")
    with pytest.raises(FieldValidationError) as exc:
        coerce_field_value(field, "maybe")
    assert exc.value.entity_id == field.id


def test_bad_number_rejected():
    with pytest.raises(FieldValidationError):
        coerce_field_value(_field("w", FieldType.NUMBER), "heavy")


def test_worker_reference_requires_id():
    field = _field("karigar", FieldType.WORKER_REFERENCE)
    assert coerce_field_value(field, "w-7").value == "w-7"
    with pytest.raises(FieldValidationError):
        coerce_field_value(field, "")


def test_typed_value_of_wrong_kind_rejected():
    with pytest.raises(FieldValidationError):
        coerce_field_value(_field("w", FieldType.NUMBER), TextValue(value="1"))


def test_validate_field_values_drops_empty_and_rejects_unknown():
    defs = [_field("note", FieldType.TEXT), _field("weight", FieldType.NUMBER)]
    typed = validate_field_values(defs, {"note": "", "weight": "3"})
    assert typed == {"weight": NumberValue(value=3)}

    with pytest.raises(FieldValidationError) as exc:
        validate_field_values(defs, {"colour": "red"})
    assert exc.value.entity_id == "colour"


def test_missing_required():
    defs = [
        _field("karigar", FieldType.WORKER_REFERENCE, is_required=True),
        _field("note", FieldType.TEXT),
    ]
    assert missing_required(defs, {}) == ["karigar"]
    assert missing_required(defs, {"karigar": "w-1"}) == []
