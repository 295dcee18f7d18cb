"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .models import ExecutionInstance, ExecutionLogEntry, StepRecord, utcnow
from .repository import RunRepository


def _ts(value: datetime | None) -> str | None:
    return value.isoformat(timespec="microseconds") if value else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _load(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


class SQLiteRunRepository(RunRepository):
    """Persist run state using SQLite."""

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
            CREATE TABLE IF NOT EXISTS execution_instances (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                event_name TEXT NOT NULL,
                event TEXT,
                tenant_id TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT NOT NULL,
                result TEXT,
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 1,
                claimed_at TEXT,
                completed_at TEXT,
                UNIQUE (run_id, step_name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS function_logs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                tenant_id TEXT,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                duration_ms INTEGER,
                input_params TEXT,
                result_data TEXT,
                error_message TEXT,
                error_stack TEXT
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

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

    @staticmethod
    def _step_from_row(row: sqlite3.Row) -> StepRecord:
        return StepRecord(
            run_id=row["run_id"],
            step_name=row["step_name"],
            status=row["status"],
            result=_load(row["result"]),
            error=row["error"],
            attempts=row["attempts"],
            claimed_at=_dt(row["claimed_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    @staticmethod
    def _log_from_row(row: sqlite3.Row) -> ExecutionLogEntry:
        return ExecutionLogEntry(
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            workflow_id=row["workflow_id"],
            tenant_id=row["tenant_id"],
            status=row["status"],
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            duration_ms=row["duration_ms"],
            input_params=_load(row["input_params"]),
            result_data=_load(row["result_data"]),
            error_message=row["error_message"],
            error_stack=row["error_stack"],
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_instance(self, instance: ExecutionInstance) -> ExecutionInstance:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO execution_instances
                (run_id, workflow_name, workflow_id, event_name, event, tenant_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id) DO NOTHING
            """,
            instance.run_id,
            instance.workflow_name,
            instance.workflow_id,
            instance.event_name,
            json.dumps(instance.event, default=str),
            instance.tenant_id,
            _ts(instance.created_at),
        )
        stored = await self.get_instance(instance.run_id)
        return stored or instance

    async def get_instance(self, run_id: str) -> ExecutionInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM execution_instances WHERE run_id = ?",
            run_id,
        )
        if not row:
            return None
        return ExecutionInstance(
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            workflow_id=row["workflow_id"],
            event_name=row["event_name"],
            event=_load(row["event"]) or {},
            tenant_id=row["tenant_id"],
            created_at=_dt(row["created_at"]),
        )

    async def load_steps(self, run_id: str) -> dict[str, StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM step_records WHERE run_id = ? ORDER BY rowid",
            run_id,
        )
        return {row["step_name"]: self._step_from_row(row) for row in rows}

    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM step_records WHERE run_id = ? AND step_name = ?",
            run_id,
            step_name,
        )
        return self._step_from_row(row) if row else None

    async def claim_step(
        self, run_id: str, step_name: str, stale_before: datetime
    ) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO step_records (run_id, step_name, status, attempts, claimed_at)
            VALUES (?, ?, 'pending', 1, ?)
            ON CONFLICT(run_id, step_name) DO UPDATE SET
                status = 'pending',
                error = NULL,
                attempts = step_records.attempts + 1,
                claimed_at = excluded.claimed_at
            WHERE step_records.status = 'failed'
               OR (step_records.status = 'pending' AND step_records.claimed_at < ?)
            """,
            run_id,
            step_name,
            _ts(utcnow()),
            _ts(stale_before),
        )
        return changed == 1

    async def complete_step(self, run_id: str, step_name: str, result: Any) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_records
            SET status = 'succeeded', result = ?, completed_at = ?
            WHERE run_id = ? AND step_name = ? AND status = 'pending'
            """,
            json.dumps(result),
            _ts(utcnow()),
            run_id,
            step_name,
        )

    async def fail_step(self, run_id: str, step_name: str, error: str) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_records
            SET status = 'failed', error = ?, completed_at = ?
            WHERE run_id = ? AND step_name = ? AND status = 'pending'
            """,
            error,
            _ts(utcnow()),
            run_id,
            step_name,
        )

    async def find_or_create_log(
        self, entry: ExecutionLogEntry
    ) -> tuple[ExecutionLogEntry, bool]:
        created = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO function_logs
                (run_id, workflow_name, workflow_id, tenant_id, status, started_at, input_params)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id) DO NOTHING
            """,
            entry.run_id,
            entry.workflow_name,
            entry.workflow_id,
            entry.tenant_id,
            entry.status,
            _ts(entry.started_at),
            json.dumps(entry.input_params, default=str),
        )
        stored = await self.get_log(entry.run_id)
        return stored or entry, created == 1

    async def get_log(self, run_id: str) -> ExecutionLogEntry | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM function_logs WHERE run_id = ?", run_id
        )
        return self._log_from_row(row) if row else None

    async def update_log_result(self, run_id: str, result_data: Any) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE function_logs SET result_data = ? WHERE run_id = ? AND status = 'started'",
            json.dumps(result_data, default=str),
            run_id,
        )
        return changed == 1

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
        changed = await asyncio.to_thread(
            self._execute,
            """
            UPDATE function_logs
            SET status = ?, completed_at = ?, duration_ms = ?, result_data = ?,
                error_message = ?, error_stack = ?
            WHERE run_id = ? AND status = 'started'
            """,
            status,
            _ts(completed_at),
            duration_ms,
            json.dumps(result_data, default=str),
            error_message,
            error_stack,
            run_id,
        )
        return changed == 1

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
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT * FROM function_logs {where} ORDER BY started_at DESC LIMIT ? OFFSET ?",
            *params,
            limit,
            offset,
        )
        return [self._log_from_row(r) for r in rows]
