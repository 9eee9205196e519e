"""PostgreSQL implementation of the engine repository."""

from __future__ import annotations

from typing import Iterable

import asyncpg

from ..models import ActivityEntry, ManufacturingOrder, OrderStepInstance
from ..workflow import WorkflowDefinition
from .repository import DuplicateInstanceError, EngineRepository, StaleWriteError


class PostgresRepository(EngineRepository):
    """Persist engine state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                order_number TEXT NOT NULL UNIQUE,
                parent_order_id TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_instances (
                id TEXT PRIMARY KEY,
                order_id TEXT NOT NULL,
                step_definition_id TEXT NOT NULL,
                instance_number INTEGER NOT NULL,
                origin_instance_id TEXT,
                version INTEGER NOT NULL,
                seq BIGSERIAL,
                data JSONB NOT NULL,
                UNIQUE (order_id, step_definition_id, instance_number)
            )
            """
        )
        await conn.execute("CREATE SEQUENCE IF NOT EXISTS order_number_seq")
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS activity_log (
                id SERIAL PRIMARY KEY,
                order_id TEXT NOT NULL,
                data JSONB NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def get_order(self, order_id: str) -> ManufacturingOrder | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT data FROM orders WHERE id = $1", order_id)
        finally:
            await conn.close()
        return ManufacturingOrder.model_validate_json(row["data"]) if row else None

    async def list_orders(self) -> list[ManufacturingOrder]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT data FROM orders ORDER BY created_at, order_number")
        finally:
            await conn.close()
        return [ManufacturingOrder.model_validate_json(r["data"]) for r in rows]

    async def list_child_orders(self, order_id: str) -> list[ManufacturingOrder]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT data FROM orders WHERE parent_order_id = $1 ORDER BY created_at, order_number",
                order_id,
            )
        finally:
            await conn.close()
        return [ManufacturingOrder.model_validate_json(r["data"]) for r in rows]

    async def save_order(self, order: ManufacturingOrder) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO orders (id, order_number, parent_order_id, created_at, data)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE SET data = EXCLUDED.data
                """,
                order.id,
                order.order_number,
                order.parent_order_id,
                order.created_at,
                order.model_dump_json(),
            )
        finally:
            await conn.close()

    async def next_order_number(self) -> int:
        conn = await self._connect()
        try:
            return int(await conn.fetchval("SELECT nextval('order_number_seq')"))
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def get_instance(self, instance_id: str) -> OrderStepInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM step_instances WHERE id = $1", instance_id
            )
        finally:
            await conn.close()
        return OrderStepInstance.model_validate_json(row["data"]) if row else None

    async def list_instances(self, order_id: str) -> list[OrderStepInstance]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT data FROM step_instances WHERE order_id = $1 ORDER BY seq",
                order_id,
            )
        finally:
            await conn.close()
        return [OrderStepInstance.model_validate_json(r["data"]) for r in rows]

    async def list_instances_by_origin(
        self, origin_ids: Iterable[str]
    ) -> list[OrderStepInstance]:
        ids = list(origin_ids)
        if not ids:
            return []
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT data FROM step_instances WHERE origin_instance_id = ANY($1::text[]) ORDER BY seq",
                ids,
            )
        finally:
            await conn.close()
        return [OrderStepInstance.model_validate_json(r["data"]) for r in rows]

    async def insert_instance(self, instance: OrderStepInstance) -> OrderStepInstance:
        stored = instance.model_copy(update={"version": 1})
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO step_instances
                    (id, order_id, step_definition_id, instance_number, origin_instance_id, version, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                stored.id,
                stored.order_id,
                stored.step_definition_id,
                stored.instance_number,
                stored.origin_instance_id,
                stored.version,
                stored.model_dump_json(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateInstanceError(
                f"Instance #{instance.instance_number} already exists for "
                f"order {instance.order_id} step {instance.step_definition_id}"
            ) from exc
        finally:
            await conn.close()
        return stored

    async def save_instance(
        self, instance: OrderStepInstance, expected_version: int
    ) -> OrderStepInstance:
        stored = instance.model_copy(update={"version": expected_version + 1})
        conn = await self._connect()
        try:
            status = await conn.execute(
                "UPDATE step_instances SET data = $1, version = $2 WHERE id = $3 AND version = $4",
                stored.model_dump_json(),
                stored.version,
                stored.id,
                expected_version,
            )
        finally:
            await conn.close()
        if status != "UPDATE 1":
            raise StaleWriteError(
                f"Instance {instance.id} changed since version {expected_version}"
            )
        return stored

    # ------------------------------------------------------------------
    async def get_workflow(self) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT data FROM workflow WHERE id = 1")
        finally:
            await conn.close()
        return WorkflowDefinition.model_validate_json(row["data"]) if row else None

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow (id, data) VALUES (1, $1)
                ON CONFLICT (id) DO UPDATE SET data = EXCLUDED.data
                """,
                workflow.model_dump_json(),
            )
        finally:
            await conn.close()

    async def step_in_use(self, step_definition_id: str) -> bool:
        conn = await self._connect()
        try:
            found = await conn.fetchval(
                "SELECT 1 FROM step_instances WHERE step_definition_id = $1 LIMIT 1",
                step_definition_id,
            )
        finally:
            await conn.close()
        return found is not None

    async def append_activity(self, entry: ActivityEntry) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO activity_log (order_id, data) VALUES ($1, $2)",
                entry.order_id,
                entry.model_dump_json(exclude={"id"}),
            )
        finally:
            await conn.close()

    async def list_activity(self, order_id: str) -> list[ActivityEntry]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT id, data FROM activity_log WHERE order_id = $1 ORDER BY id",
                order_id,
            )
        finally:
            await conn.close()
        return [
            ActivityEntry.model_validate_json(r["data"]).model_copy(update={"id": r["id"]})
            for r in rows
        ]
