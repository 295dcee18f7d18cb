"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

from .models import ExecutionInstance, ExecutionLogEntry, StepRecord, utcnow
from .repository import RunRepository


def _load(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``INSERT 0 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresRunRepository(RunRepository):
    """Persist run state using PostgreSQL."""

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
            CREATE TABLE IF NOT EXISTS execution_instances (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                event_name TEXT NOT NULL,
                event JSONB,
                tenant_id TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('pending', 'succeeded', 'failed')),
                result JSONB,
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 1,
                claimed_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                PRIMARY KEY (run_id, step_name)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS function_logs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                tenant_id TEXT,
                status TEXT NOT NULL CHECK (status IN ('started', 'completed', 'failed')),
                started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                completed_at TIMESTAMPTZ,
                duration_ms INTEGER,
                input_params JSONB,
                result_data JSONB,
                error_message TEXT,
                error_stack TEXT
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_function_logs_tenant_id ON function_logs(tenant_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_function_logs_started_at ON function_logs(started_at DESC)"
        )

    @staticmethod
    def _step_from_row(row: asyncpg.Record) -> StepRecord:
        return StepRecord(
            run_id=row["run_id"],
            step_name=row["step_name"],
            status=row["status"],
            result=_load(row["result"]),
            error=row["error"],
            attempts=row["attempts"],
            claimed_at=row["claimed_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _log_from_row(row: asyncpg.Record) -> ExecutionLogEntry:
        return ExecutionLogEntry(
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            workflow_id=row["workflow_id"],
            tenant_id=row["tenant_id"],
            status=row["status"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            duration_ms=row["duration_ms"],
            input_params=_load(row["input_params"]),
            result_data=_load(row["result_data"]),
            error_message=row["error_message"],
            error_stack=row["error_stack"],
        )

    # ------------------------------------------------------------------
    async def create_instance(self, instance: ExecutionInstance) -> ExecutionInstance:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO execution_instances
                    (run_id, workflow_name, workflow_id, event_name, event, tenant_id, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (run_id) DO NOTHING
                """,
                instance.run_id,
                instance.workflow_name,
                instance.workflow_id,
                instance.event_name,
                json.dumps(instance.event, default=str),
                instance.tenant_id,
                instance.created_at,
            )
        finally:
            await conn.close()
        stored = await self.get_instance(instance.run_id)
        return stored or instance

    async def get_instance(self, run_id: str) -> ExecutionInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM execution_instances WHERE run_id = $1", run_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return ExecutionInstance(
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            workflow_id=row["workflow_id"],
            event_name=row["event_name"],
            event=_load(row["event"]) or {},
            tenant_id=row["tenant_id"],
            created_at=row["created_at"],
        )

    async def load_steps(self, run_id: str) -> dict[str, StepRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM step_records WHERE run_id = $1 ORDER BY claimed_at",
                run_id,
            )
        finally:
            await conn.close()
        return {row["step_name"]: self._step_from_row(row) for row in rows}

    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM step_records WHERE run_id = $1 AND step_name = $2",
                run_id,
                step_name,
            )
        finally:
            await conn.close()
        return self._step_from_row(row) if row else None

    async def claim_step(
        self, run_id: str, step_name: str, stale_before: datetime
    ) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                INSERT INTO step_records (run_id, step_name, status, attempts, claimed_at)
                VALUES ($1, $2, 'pending', 1, $3)
                ON CONFLICT (run_id, step_name) DO UPDATE SET
                    status = 'pending',
                    error = NULL,
                    attempts = step_records.attempts + 1,
                    claimed_at = EXCLUDED.claimed_at
                WHERE step_records.status = 'failed'
                   OR (step_records.status = 'pending' AND step_records.claimed_at < $4)
                """,
                run_id,
                step_name,
                utcnow(),
                stale_before,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def complete_step(self, run_id: str, step_name: str, result: Any) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE step_records
                SET status = 'succeeded', result = $1, completed_at = $2
                WHERE run_id = $3 AND step_name = $4 AND status = 'pending'
                """,
                json.dumps(result),
                utcnow(),
                run_id,
                step_name,
            )
        finally:
            await conn.close()

    async def fail_step(self, run_id: str, step_name: str, error: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE step_records
                SET status = 'failed', error = $1, completed_at = $2
                WHERE run_id = $3 AND step_name = $4 AND status = 'pending'
                """,
                error,
                utcnow(),
                run_id,
                step_name,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def find_or_create_log(
        self, entry: ExecutionLogEntry
    ) -> tuple[ExecutionLogEntry, bool]:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                INSERT INTO function_logs
                    (run_id, workflow_name, workflow_id, tenant_id, status, started_at, input_params)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (run_id) DO NOTHING
                """,
                entry.run_id,
                entry.workflow_name,
                entry.workflow_id,
                entry.tenant_id,
                entry.status,
                entry.started_at,
                json.dumps(entry.input_params, default=str),
            )
        finally:
            await conn.close()
        stored = await self.get_log(entry.run_id)
        return stored or entry, _affected(status) == 1

    async def get_log(self, run_id: str) -> ExecutionLogEntry | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM function_logs WHERE run_id = $1", run_id
            )
        finally:
            await conn.close()
        return self._log_from_row(row) if row else None

    async def update_log_result(self, run_id: str, result_data: Any) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE function_logs SET result_data = $1
                WHERE run_id = $2 AND status = 'started'
                """,
                json.dumps(result_data, default=str),
                run_id,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def finalize_log(
        self,
        run_id: str,
        status: str,
        completed_at: datetime,
        duration_ms: Optional[int],
        result_data: Any = None,
        error_message: Optional[str] = None,
        error_stack: Optional[str] = None,
    ) -> bool:
        conn = await self._connect()
        try:
            tag = await conn.execute(
                """
                UPDATE function_logs
                SET status = $1, completed_at = $2, duration_ms = $3, result_data = $4,
                    error_message = $5, error_stack = $6
                WHERE run_id = $7 AND status = 'started'
                """,
                status,
                completed_at,
                duration_ms,
                json.dumps(result_data, default=str),
                error_message,
                error_stack,
                run_id,
            )
        finally:
            await conn.close()
        return _affected(tag) == 1

    async def list_logs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        workflow_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExecutionLogEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("tenant_id", tenant_id),
            ("status", status),
            ("workflow_name", workflow_name),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT * FROM function_logs {where} ORDER BY started_at DESC "
                f"LIMIT ${len(params) - 1} OFFSET ${len(params)}",
                *params,
            )
        finally:
            await conn.close()
        return [self._log_from_row(r) for r in rows]
