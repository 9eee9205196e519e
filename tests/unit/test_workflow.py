"""Workflow definition tests."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from karigar.errors import InvalidTransitionError, NotFoundError
from karigar.fields import FieldType
from karigar.workflow import (
    Measure,
    WorkflowDefinition,
    WorkflowStepDefinition,
    load_workflow_file,
)


def _workflow() -> WorkflowDefinition:
    wf = WorkflowDefinition()
    for order, name in [(1, "Jhalai"), (2, "Cutting"), (3, "Polish"), (5, "QC")]:
        wf.add_step(name, order)
    return wf


def _step(wf: WorkflowDefinition, name: str) -> WorkflowStepDefinition:
    return next(step for step in wf.steps if step.name == name)


def test_active_steps_sorted_by_order():
    wf = WorkflowDefinition(
        steps=[
            WorkflowStepDefinition(step_order=3, name="C"),
            WorkflowStepDefinition(step_order=1, name="A"),
            WorkflowStepDefinition(step_order=2, name="B", is_active=False),
        ]
    )
    assert [s.name for s in wf.list_active_steps()] == ["A", "C"]
    assert wf.first_step().name == "A"


def test_duplicate_step_order_rejected():
    with pytest.raises(ValidationError):
        WorkflowDefinition(
            steps=[
                WorkflowStepDefinition(step_order=1, name="A"),
                WorkflowStepDefinition(step_order=1, name="B"),
            ]
        )
    wf = _workflow()
    with pytest.raises(InvalidTransitionError):
        wf.add_step("Again", 2)


def test_next_step_skips_inactive_and_gaps():
    wf = _workflow()
    assert wf.next_step(1).name == "Cutting"
    assert wf.next_step(3).name == "QC"

    wf.deactivate_step(_step(wf, "Cutting").id)
    assert wf.next_step(1).name == "Polish"
    assert wf.next_step(5) is None


def test_is_terminal_follows_active_steps():
    wf = _workflow()
    assert wf.is_terminal(_step(wf, "QC").id)
    assert not wf.is_terminal(_step(wf, "Polish").id)

    wf.deactivate_step(_step(wf, "QC").id)
    assert wf.is_terminal(_step(wf, "Polish").id)


def test_toggle_bumps_version_once():
    wf = _workflow()
    version = wf.version
    cutting = _step(wf, "Cutting")

    wf.deactivate_step(cutting.id)
    wf.deactivate_step(cutting.id)
    assert wf.version == version + 1

    wf.activate_step(cutting.id)
    assert wf.version == version + 2
    assert cutting.is_active


def test_remove_step_refused_when_in_use():
    wf = _workflow()
    polish = _step(wf, "Polish")
    wf.add_field(polish.id, "finish", type=FieldType.TEXT)

    with pytest.raises(InvalidTransitionError):
        wf.remove_step(polish.id, in_use=True)
    assert polish in wf.steps

    wf.remove_step(polish.id, in_use=False)
    assert polish not in wf.steps
    assert wf.fields == []


def test_get_step_unknown():
    wf = _workflow()
    with pytest.raises(NotFoundError) as exc:
        wf.get_step("missing")
    assert exc.value.entity_id == "missing"


def test_add_field_rejects_duplicate_key():
    wf = _workflow()
    jhalai = _step(wf, "Jhalai")
    wf.add_field(jhalai.id, "karigar", type=FieldType.WORKER_REFERENCE)
    with pytest.raises(InvalidTransitionError):
        wf.add_field(jhalai.id, "karigar")
    assert [f.key for f in wf.fields_for(jhalai.id)] == ["karigar"]


def test_load_workflow_file_nests_fields():
    path = Path(__file__).parent.parent / "fixtures" / "workflow.yaml"
    wf = load_workflow_file(path)

    assert wf.version == 3
    assert wf.measure is Measure.QUANTITY
    assert [s.name for s in wf.list_active_steps()] == ["Jhalai", "Cutting", "QC"]

    jhalai = _step(wf, "Jhalai")
    keys = {f.key: f for f in wf.fields_for(jhalai.id)}
    assert keys["karigar"].type is FieldType.WORKER_REFERENCE
    assert keys["karigar"].is_required
    assert keys["gross_weight"].unit == "g"

    qc = _step(wf, "QC")
    assert qc.qc_required
    assert wf.fields_for(qc.id)[0].options == ["pass", "fail"]
