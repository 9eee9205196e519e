"""Command line interface for inspecting manufacturing orders."""

from __future__ import annotations

import asyncio

import typer

from karigar.engine import ProgressionEngine
from karigar.errors import EngineError, NotFoundError
from karigar.persistence import get_repository

app = typer.Typer(help="CLI for Karigar manufacturing orders")

workflow_app = typer.Typer(help="Commands for the workflow definition")
order_app = typer.Typer(help="Commands for manufacturing orders")
instance_app = typer.Typer(help="Commands for step instances")

app.add_typer(workflow_app, name="workflow")
app.add_typer(order_app, name="order")
app.add_typer(instance_app, name="instance")


def _engine() -> ProgressionEngine:
    return ProgressionEngine(repository=get_repository())


@app.callback()
def main() -> None:
    """Karigar CLI entry point."""
    pass


@workflow_app.command("steps")
def workflow_steps(
    all_steps: bool = typer.Option(False, "--all", help="Include inactive steps"),
) -> None:
    """
    List the workflow's steps in order.

    Example:
        karigar workflow steps
        # Output: 1    Jhalai      active
        #         2    Cutting     active
    """
    engine = _engine()
    try:
        workflow = asyncio.run(engine.workflow())
    except NotFoundError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    steps = workflow.steps if all_steps else workflow.list_active_steps()
    if not steps:
        typer.echo("No steps defined")
        return
    for step in sorted(steps, key=lambda s: s.step_order):
        state = "active" if step.is_active else "inactive"
        qc = "\tqc" if step.qc_required else ""
        typer.echo(f"{step.step_order}\t{step.name}\t{state}{qc}")


@order_app.command("list")
def order_list() -> None:
    """List manufacturing orders with their status."""
    repo = get_repository()
    orders = asyncio.run(repo.list_orders())
    if not orders:
        typer.echo("No orders found")
        return
    for order in orders:
        typer.echo(
            f"{order.order_number}\t{order.id}\t{order.status.value}\t"
            f"{order.quantity_required}\t{order.product_name}"
        )


@order_app.command("show")
def order_show(order_id: str) -> None:
    """
    Show an order and its step instances.

    Example:
        karigar order show 5b0c...
        # Output: Order MO000001: in_progress (required 10)
        #         - Jhalai #1: completed 10/10
        #         - Cutting #1: partially_completed 8/10
    """
    engine = _engine()
    try:
        order = asyncio.run(engine.get_order(order_id))
        instances = asyncio.run(engine.list_instances(order_id))
        workflow = asyncio.run(engine.workflow())
        rework_orders = asyncio.run(engine.repository.list_child_orders(order_id))
    except NotFoundError:
        typer.echo("Order not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Order {order.order_number}: {order.status.value} "
        f"(required {order.quantity_required})"
    )
    if order.parent_order_id:
        typer.echo(f"Rework of order {order.parent_order_id}: {order.rework_reason or ''}")
    steps = {step.id: step for step in workflow.steps}
    for instance in sorted(
        instances,
        key=lambda i: (steps[i.step_definition_id].step_order, i.instance_number),
    ):
        step = steps[instance.step_definition_id]
        typer.echo(
            f"- {step.name} #{instance.instance_number}: {instance.status.value} "
            f"{instance.quantity_received}/{instance.quantity_assigned}"
            + (f" [{instance.assigned_worker_id}]" if instance.assigned_worker_id else "")
        )
    for child in rework_orders:
        typer.echo(
            f"Rework order {child.order_number}: {child.status.value} "
            f"(required {child.quantity_required})"
        )


@order_app.command("next")
def order_next(order_id: str) -> None:
    """Show the action currently allowed for an order."""
    engine = _engine()
    try:
        action = asyncio.run(engine.next_action(order_id))
    except NotFoundError:
        typer.echo("Order not found")
        raise typer.Exit(code=1)
    if action.step is None:
        typer.echo(action.kind.value)
        return
    source = f" from {action.from_instance_id}" if action.from_instance_id else ""
    typer.echo(f"{action.kind.value}: {action.step.name}{source}")


@instance_app.command("ledger")
def instance_ledger(instance_id: str) -> None:
    """Show accepted, shortfall and available figures for an instance."""
    engine = _engine()
    try:
        ledger = asyncio.run(engine.ledger_for(instance_id))
        rec = ledger.reconcile(instance_id)
        remaining, _ = ledger.remaining_shortfall(instance_id)
        available = ledger.available_for_next_step(instance_id)
    except NotFoundError:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    except EngineError as e:
        typer.echo(f"Ledger inconsistent: {e}")
        raise typer.Exit(code=1)
    typer.echo(f"Accepted: {rec.accepted_quantity} ({rec.accepted_weight:g})")
    typer.echo(f"Shortfall: {rec.shortfall_quantity} ({rec.shortfall_weight:g})")
    typer.echo(f"Unclaimed shortfall: {remaining}")
    typer.echo(f"Available for next step: {available}")


@instance_app.command("branches")
def instance_branches(instance_id: str) -> None:
    """List the outgoing branches of an instance."""
    engine = _engine()
    try:
        branches = asyncio.run(engine.outgoing_branches(instance_id))
    except NotFoundError:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    if not branches:
        typer.echo("No branches")
        return
    for branch in branches:
        target = branch.target_instance_id or ""
        if branch.target_order_id:
            target += f" (order {branch.target_order_id})"
        typer.echo(f"{branch.type.value}\t{branch.quantity}\t{target}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
