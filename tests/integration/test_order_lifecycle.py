"""End-to-end order lifecycle on the SQLite backend."""

from pathlib import Path

import pytest

from karigar.config import KarigarConfig
from karigar.contracts import BranchType, NextActionKind
from karigar.engine import ProgressionEngine
from karigar.errors import FieldValidationError
from karigar.models import InstanceStatus, OrderStatus
from karigar.persistence import SQLiteRepository
from karigar.transports.inmemory import InMemoryTransport

WORKFLOW_FILE = Path(__file__).parent.parent / "fixtures" / "workflow.yaml"


@pytest.mark.asyncio
async def test_order_with_rework_order_through_tag_in(tmp_path):
    db_path = tmp_path / "karigar.db"
    transport = InMemoryTransport()
    config = KarigarConfig(workflow_path=str(WORKFLOW_FILE))
    engine = ProgressionEngine(
        repository=SQLiteRepository(db_path), transport=transport, config=config
    )

    workflow = await engine.workflow()
    steps = {s.name: s for s in workflow.steps}
    assert [s.name for s in workflow.list_active_steps()] == ["Jhalai", "Cutting", "QC"]

    order = await engine.create_order(20, product_name="Kundan choker", special_instructions="22k")
    action = await engine.next_action(order.id)
    assert action.kind is NextActionKind.START_FIRST_STEP
    assert action.step.id == steps["Jhalai"].id

    jhalai = await engine.start_first_step(
        order.id, assigned_worker_id="w-1", field_values={"gross_weight": "41.5"}
    )
    with pytest.raises(FieldValidationError):
        await engine.record_output(jhalai.id, 18)
    jhalai = await engine.record_output(jhalai.id, 18, field_values={"karigar": "w-1"})
    assert jhalai.status is InstanceStatus.PARTIALLY_COMPLETED

    child, rework = await engine.open_rework_order(
        jhalai.id, reason="solder joints failed", assigned_worker_id="w-7"
    )
    assert child.quantity_required == 2

    action = await engine.next_action(order.id)
    assert action.kind is NextActionKind.START_STEP
    assert action.step.id == steps["Cutting"].id
    assert action.from_instance_id == jhalai.id

    cutting = await engine.start_next_step(jhalai.id, assigned_worker_id="w-2")
    await engine.record_output(cutting.id, 18)

    # Polish is inactive, so QC follows Cutting
    qc = await engine.start_next_step(cutting.id, assigned_worker_id="w-3")
    assert qc.step_definition_id == steps["QC"].id
    await engine.record_output(qc.id, 18, field_values={"result": "pass"})
    assert (await engine.get_order(order.id)).status is OrderStatus.COMPLETED

    # survives a restart
    engine = ProgressionEngine(
        repository=SQLiteRepository(db_path), transport=transport, config=config
    )
    branches = await engine.outgoing_branches(jhalai.id)
    assert {b.type for b in branches} == {BranchType.PROGRESSION, BranchType.REWORK}
    assert next(b for b in branches if b.type is BranchType.REWORK).target_order_id == child.id

    event = await engine.tag_in(order.id)
    assert event.final_quantity == 18

    # the rework order runs its own course
    await engine.record_output(rework.id, 2, field_values={"karigar": "w-7"})
    redo = await engine.start_next_step(rework.id, assigned_worker_id="w-2")
    await engine.record_output(redo.id, 2)
    redo_qc = await engine.start_next_step(redo.id, assigned_worker_id="w-3")
    await engine.record_output(redo_qc.id, 2, field_values={"result": "pass"})

    child_event = await engine.tag_in(child.id)
    assert child_event.final_quantity == 2
    assert [e.idempotency_key for e in transport.pending("inventory.tag_in")] == [
        order.id,
        child.id,
    ]

    activity = await engine.activity(order.id)
    assert activity[0].action == "Created"
    assert activity[-1].action == "Tagged In"
    assert any(e.action == "Rework Opened" for e in activity)
