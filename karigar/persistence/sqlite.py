"""SQLite implementation of the engine repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable

from ..models import ActivityEntry, ManufacturingOrder, OrderStepInstance
from ..workflow import WorkflowDefinition
from .repository import DuplicateInstanceError, EngineRepository, StaleWriteError


class SQLiteRepository(EngineRepository):
    """Persist engine state using SQLite.

    Entities are stored as JSON documents next to the columns needed for
    lookups and constraints.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                order_number TEXT NOT NULL UNIQUE,
                parent_order_id TEXT,
                created_at TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_instances (
                id TEXT PRIMARY KEY,
                order_id TEXT NOT NULL,
                step_definition_id TEXT NOT NULL,
                instance_number INTEGER NOT NULL,
                origin_instance_id TEXT,
                version INTEGER NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (order_id, step_definition_id, instance_number)
            )
            """
        )
        cur.execute(
            "CREATE TABLE IF NOT EXISTS order_sequence (id INTEGER PRIMARY KEY AUTOINCREMENT)"
        )
        cur.execute(
            "CREATE TABLE IF NOT EXISTS workflow (id INTEGER PRIMARY KEY CHECK (id = 1), data TEXT NOT NULL)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS activity_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> sqlite3.Cursor:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
            except sqlite3.Error:
                self._conn.rollback()
                raise
            self._conn.commit()
            return cur

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Orders
    async def get_order(self, order_id: str) -> ManufacturingOrder | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM orders WHERE id = ?", order_id
        )
        return ManufacturingOrder.model_validate_json(row["data"]) if row else None

    async def list_orders(self) -> list[ManufacturingOrder]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT data FROM orders ORDER BY created_at, order_number"
        )
        return [ManufacturingOrder.model_validate_json(r["data"]) for r in rows]

    async def list_child_orders(self, order_id: str) -> list[ManufacturingOrder]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM orders WHERE parent_order_id = ? ORDER BY created_at, order_number",
            order_id,
        )
        return [ManufacturingOrder.model_validate_json(r["data"]) for r in rows]

    async def save_order(self, order: ManufacturingOrder) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO orders (id, order_number, parent_order_id, created_at, data)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET data = excluded.data
            """,
            order.id,
            order.order_number,
            order.parent_order_id,
            order.created_at.isoformat(),
            order.model_dump_json(),
        )

    async def next_order_number(self) -> int:
        cur = await asyncio.to_thread(
            self._execute, "INSERT INTO order_sequence DEFAULT VALUES"
        )
        return int(cur.lastrowid)

    # ------------------------------------------------------------------
    # Instances
    async def get_instance(self, instance_id: str) -> OrderStepInstance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM step_instances WHERE id = ?", instance_id
        )
        return OrderStepInstance.model_validate_json(row["data"]) if row else None

    async def list_instances(self, order_id: str) -> list[OrderStepInstance]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM step_instances WHERE order_id = ? ORDER BY rowid",
            order_id,
        )
        return [OrderStepInstance.model_validate_json(r["data"]) for r in rows]

    async def list_instances_by_origin(
        self, origin_ids: Iterable[str]
    ) -> list[OrderStepInstance]:
        ids = list(origin_ids)
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT data FROM step_instances WHERE origin_instance_id IN ({placeholders}) ORDER BY rowid",
            *ids,
        )
        return [OrderStepInstance.model_validate_json(r["data"]) for r in rows]

    async def insert_instance(self, instance: OrderStepInstance) -> OrderStepInstance:
        stored = instance.model_copy(update={"version": 1})
        try:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT INTO step_instances
                    (id, order_id, step_definition_id, instance_number, origin_instance_id, version, data)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                stored.id,
                stored.order_id,
                stored.step_definition_id,
                stored.instance_number,
                stored.origin_instance_id,
                stored.version,
                stored.model_dump_json(),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateInstanceError(
                f"Instance #{instance.instance_number} already exists for "
                f"order {instance.order_id} step {instance.step_definition_id}"
            ) from exc
        return stored

    async def save_instance(
        self, instance: OrderStepInstance, expected_version: int
    ) -> OrderStepInstance:
        stored = instance.model_copy(update={"version": expected_version + 1})
        cur = await asyncio.to_thread(
            self._execute,
            "UPDATE step_instances SET data = ?, version = ? WHERE id = ? AND version = ?",
            stored.model_dump_json(),
            stored.version,
            stored.id,
            expected_version,
        )
        if cur.rowcount != 1:
            raise StaleWriteError(
                f"Instance {instance.id} changed since version {expected_version}"
            )
        return stored

    # ------------------------------------------------------------------
    # Workflow and audit trail
    async def get_workflow(self) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM workflow WHERE id = 1"
        )
        return WorkflowDefinition.model_validate_json(row["data"]) if row else None

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflow (id, data) VALUES (1, ?) ON CONFLICT(id) DO UPDATE SET data = excluded.data",
            workflow.model_dump_json(),
        )

    async def step_in_use(self, step_definition_id: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT 1 FROM step_instances WHERE step_definition_id = ? LIMIT 1",
            step_definition_id,
        )
        return row is not None

    async def append_activity(self, entry: ActivityEntry) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO activity_log (order_id, data) VALUES (?, ?)",
            entry.order_id,
            entry.model_dump_json(exclude={"id"}),
        )

    async def list_activity(self, order_id: str) -> list[ActivityEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, data FROM activity_log WHERE order_id = ? ORDER BY id",
            order_id,
        )
        return [
            ActivityEntry.model_validate_json(r["data"]).model_copy(update={"id": r["id"]})
            for r in rows
        ]
