"""Order closing: tag-in and cancellation."""

import pytest

from karigar.config import EngineConfig, KarigarConfig
from karigar.contracts import NextActionKind, TagInEvent
from karigar.engine import ProgressionEngine
from karigar.errors import InvalidTransitionError
from karigar.models import OrderStatus
from karigar.persistence import InMemoryRepository
from karigar.transports.inmemory import InMemoryTransport
from karigar.workflow import Measure, WorkflowDefinition


async def _engine(measure=Measure.QUANTITY, topic="inventory.tag_in"):
    transport = InMemoryTransport()
    engine = ProgressionEngine(
        repository=InMemoryRepository(),
        transport=transport,
        config=KarigarConfig(engine=EngineConfig(inventory_topic=topic)),
    )
    wf = WorkflowDefinition(measure=measure)
    wf.add_step("Jhalai", 1)
    wf.add_step("Finishing", 2)
    await engine.install_workflow(wf)
    return engine, transport


async def _finished_order(engine, quantity=10, received=10, weight=0.0):
    order = await engine.create_order(quantity)
    first = await engine.start_first_step(
        order.id, assigned_worker_id="w-1", weight_assigned=weight
    )
    await engine.record_output(first.id, quantity, weight_received=weight)
    last = await engine.start_next_step(first.id, assigned_worker_id="w-2")
    last = await engine.record_output(
        last.id, received, weight_received=weight * received / quantity
    )
    return order, last


@pytest.mark.asyncio
async def test_tag_in_publishes_once():
    engine, transport = await _engine()
    order, last = await _finished_order(engine, received=9)
    await engine.accept_shortfall(last.id, reason="one piece cracked")

    event = await engine.tag_in(order.id)
    assert event == TagInEvent(
        order_id=order.id, order_number="MO000001", final_quantity=9, final_weight=None
    )
    assert (await engine.get_order(order.id)).status is OrderStatus.TAGGED_IN

    (published,) = transport.pending("inventory.tag_in")
    assert published.event_type == "tag_in"
    assert published.idempotency_key == order.id
    assert published.payload["final_quantity"] == 9

    with pytest.raises(InvalidTransitionError):
        await engine.tag_in(order.id)
    assert len(transport.pending("inventory.tag_in")) == 1
    assert (await engine.next_action(order.id)).kind is NextActionKind.NONE


@pytest.mark.asyncio
async def test_tag_in_requires_completed_order():
    engine, transport = await _engine()
    order = await engine.create_order(5)
    with pytest.raises(InvalidTransitionError):
        await engine.tag_in(order.id)

    await engine.start_first_step(order.id, assigned_worker_id="w-1")
    with pytest.raises(InvalidTransitionError):
        await engine.tag_in(order.id)
    assert transport.pending("inventory.tag_in") == []


@pytest.mark.asyncio
async def test_tag_in_weight():
    engine, transport = await _engine(measure=Measure.WEIGHT, topic="stock.finished")
    order, _ = await _finished_order(engine, quantity=4, received=4, weight=30.0)

    event = await engine.tag_in(order.id, final_weight=29.75)
    assert event.final_weight == 29.75
    assert transport.pending("stock.finished")[0].payload["final_weight"] == 29.75

    other, _ = await _finished_order(engine, quantity=2, received=2, weight=8.0)
    assert (await engine.tag_in(other.id)).final_weight == pytest.approx(8.0)


class FlakyTransport(InMemoryTransport):
    """Rejects the first ``failures`` publishes."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    async def publish(self, topic, event):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("broker unavailable")
        await super().publish(topic, event)


@pytest.mark.asyncio
async def test_default_engine_publishes_on_configured_transport(monkeypatch):
    monkeypatch.delenv("KARIGAR_TRANSPORT", raising=False)
    engine = ProgressionEngine(repository=InMemoryRepository(), config=KarigarConfig())
    assert isinstance(engine.transport, InMemoryTransport)
    wf = WorkflowDefinition()
    wf.add_step("Jhalai", 1)
    await engine.install_workflow(wf)
    order = await engine.create_order(1)
    only = await engine.start_first_step(order.id, assigned_worker_id="w-1")
    await engine.record_output(only.id, 1)

    event = await engine.tag_in(order.id)
    assert event.final_quantity == 1
    (published,) = engine.transport.pending("inventory.tag_in")
    assert published.idempotency_key == order.id
    assert [e.action for e in await engine.activity(order.id)][-1] == "Tagged In"


@pytest.mark.asyncio
async def test_failed_publish_leaves_order_completed_for_retry():
    transport = FlakyTransport(failures=1)
    engine = ProgressionEngine(
        repository=InMemoryRepository(), transport=transport, config=KarigarConfig()
    )
    wf = WorkflowDefinition()
    wf.add_step("Jhalai", 1)
    await engine.install_workflow(wf)
    order = await engine.create_order(2)
    only = await engine.start_first_step(order.id, assigned_worker_id="w-1")
    await engine.record_output(only.id, 2)

    with pytest.raises(ConnectionError):
        await engine.tag_in(order.id)
    assert (await engine.get_order(order.id)).status is OrderStatus.COMPLETED
    assert transport.pending("inventory.tag_in") == []
    assert "Tagged In" not in [e.action for e in await engine.activity(order.id)]

    event = await engine.tag_in(order.id)
    assert event.final_quantity == 2
    assert (await engine.get_order(order.id)).status is OrderStatus.TAGGED_IN
    assert [e.idempotency_key for e in transport.pending("inventory.tag_in")] == [order.id]


@pytest.mark.asyncio
async def test_cancelled_order_is_closed():
    engine, _ = await _engine()
    order = await engine.create_order(3)
    first = await engine.start_first_step(order.id, assigned_worker_id="w-1")

    cancelled = await engine.cancel_order(order.id)
    assert cancelled.status is OrderStatus.CANCELLED
    assert (await engine.next_action(order.id)).kind is NextActionKind.NONE

    with pytest.raises(InvalidTransitionError):
        await engine.record_output(first.id, 3)
    with pytest.raises(InvalidTransitionError):
        await engine.start_first_step(order.id, quantity_assigned=1)
    with pytest.raises(InvalidTransitionError):
        await engine.cancel_order(order.id)
    with pytest.raises(InvalidTransitionError):
        await engine.tag_in(order.id)
