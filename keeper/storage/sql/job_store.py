"""SQLAlchemy-backed job store.

The worker shares the `jobs` table with the API process; both point at the
same DATABASE_URL. Times are stored as unix milliseconds. SQLAlchemy calls
are blocking, so the async store methods run them in the loop's default
executor.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from keeper.persistence.interfaces import AuditEventStore, JobStore
from keeper.storage.sql.config import SqlConfig
from keeper.types import DCAParams, Job, JobParams, LimitOrderParams, utc_now


logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id              TEXT PRIMARY KEY,
        owner           TEXT NOT NULL,
        type            TEXT NOT NULL CHECK (type IN ('limit_order', 'dca')),
        status          TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'active', 'executed', 'cancelled', 'failed', 'paused')),
        params_json     TEXT NOT NULL,
        on_chain_job_id TEXT,
        created_at      BIGINT NOT NULL,
        updated_at      BIGINT NOT NULL,
        expires_at      BIGINT,
        retries         INTEGER NOT NULL DEFAULT 0,
        max_retries     INTEGER NOT NULL DEFAULT 5,
        last_error      TEXT,
        tx_hash         TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs (status)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs (owner)",
    """
    CREATE TABLE IF NOT EXISTS executions (
        id         {serial_pk},
        job_id     TEXT NOT NULL REFERENCES jobs (id),
        tx_hash    TEXT NOT NULL,
        timestamp  BIGINT NOT NULL,
        amount_out TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS worker_heartbeat (
        id           INTEGER PRIMARY KEY,
        last_seen_at BIGINT NOT NULL,
        worker_pid   INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS settings (
        key   TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        id           {serial_pk},
        event_type   TEXT NOT NULL,
        message      TEXT NOT NULL,
        severity     TEXT NOT NULL DEFAULT 'info',
        job_id       TEXT,
        actor        TEXT NOT NULL DEFAULT 'system',
        event_time   BIGINT NOT NULL,
        context_json TEXT
    )
    """,
)

_JOB_COLUMNS = (
    "id, owner, type, status, params_json, on_chain_job_id, created_at, updated_at, "
    "expires_at, retries, max_retries, last_error"
)

# updated_at never moves backwards, even if the clock does.
_TOUCH = "updated_at = CASE WHEN :now > updated_at THEN :now ELSE updated_at END"


def to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def params_to_json(params: JobParams) -> str:
    if isinstance(params, LimitOrderParams):
        payload: dict[str, Any] = {
            "tokenIn": params.token_in,
            "tokenOut": params.token_out,
            "amountIn": str(params.amount_in),
            "minAmountOut": str(params.min_amount_out),
            "targetPrice": str(params.target_price),
            "direction": params.direction,
        }
        if params.slippage_bps is not None:
            payload["slippageBps"] = params.slippage_bps
    else:
        payload = {
            "tokenIn": params.token_in,
            "tokenOut": params.token_out,
            "amountPerSwap": str(params.amount_per_swap),
            "intervalSeconds": params.interval_seconds,
            "totalSwaps": params.total_swaps,
            "swapsCompleted": params.swaps_completed,
            "nextExecution": to_ms(params.next_execution),
        }
    return json.dumps(payload)


def params_from_json(job_type: str, raw: str) -> JobParams:
    data = json.loads(raw)
    if job_type == "limit_order":
        return LimitOrderParams(
            token_in=data["tokenIn"],
            token_out=data["tokenOut"],
            amount_in=int(data["amountIn"]),
            min_amount_out=int(data["minAmountOut"]),
            target_price=int(data["targetPrice"]),
            direction=data["direction"],
            slippage_bps=data.get("slippageBps"),
        )
    if job_type == "dca":
        return DCAParams(
            token_in=data["tokenIn"],
            token_out=data["tokenOut"],
            amount_per_swap=int(data["amountPerSwap"]),
            interval_seconds=int(data["intervalSeconds"]),
            total_swaps=int(data["totalSwaps"]),
            swaps_completed=int(data["swapsCompleted"]),
            next_execution=from_ms(int(data["nextExecution"])),
        )
    raise ValueError(f"Unknown job type: {job_type!r}")


def row_to_job(row: Any) -> Job:
    m = row._mapping
    return Job(
        id=m["id"],
        owner=m["owner"],
        type=m["type"],
        status=m["status"],
        params=params_from_json(m["type"], m["params_json"]),
        on_chain_job_id=m["on_chain_job_id"],
        created_at=from_ms(m["created_at"]),
        updated_at=from_ms(m["updated_at"]),
        expires_at=from_ms(m["expires_at"]) if m["expires_at"] is not None else None,
        retries=m["retries"],
        max_retries=m["max_retries"],
        last_error=m["last_error"],
    )


class SqlJobStore(JobStore, AuditEventStore):
    """Single entrypoint for the SQL persistence layer of the worker."""

    def __init__(self, *, config: SqlConfig, clock: Callable[[], datetime] = utc_now) -> None:
        self._config = config
        self._engine: Engine | None = None
        self._clock = clock

    def _get_engine(self) -> Engine:
        if self._engine is None:
            # Do not log the URL (it may contain secrets).
            self._engine = create_engine(self._config.database_url, echo=self._config.echo, pool_pre_ping=True)
        return self._engine

    def _now_ms(self) -> int:
        return to_ms(self._clock())

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args))

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    # ---- schema / admin helpers (sync)

    def ensure_schema(self) -> None:
        """Create tables if missing. Idempotent."""
        engine = self._get_engine()
        serial_pk = "BIGSERIAL PRIMARY KEY" if engine.dialect.name == "postgresql" else "INTEGER PRIMARY KEY"
        with engine.begin() as conn:
            for ddl in _SCHEMA:
                conn.execute(text(ddl.format(serial_pk=serial_pk)))
        logger.info("Job store schema ready")

    def add_job(self, job: Job) -> None:
        stmt = text(
            f"""
            INSERT INTO jobs ({_JOB_COLUMNS})
            VALUES (
                :id, :owner, :type, :status, :params_json, :on_chain_job_id, :created_at, :updated_at,
                :expires_at, :retries, :max_retries, :last_error
            )
            """
        )
        with self._get_engine().begin() as conn:
            conn.execute(
                stmt,
                {
                    "id": job.id,
                    "owner": job.owner,
                    "type": job.type,
                    "status": job.status,
                    "params_json": params_to_json(job.params),
                    "on_chain_job_id": job.on_chain_job_id,
                    "created_at": to_ms(job.created_at),
                    "updated_at": to_ms(job.updated_at),
                    "expires_at": to_ms(job.expires_at) if job.expires_at is not None else None,
                    "retries": job.retries,
                    "max_retries": job.max_retries,
                    "last_error": job.last_error,
                },
            )

    def get_job(self, job_id: str) -> Optional[Job]:
        stmt = text(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = :id")
        with self._get_engine().begin() as conn:
            row = conn.execute(stmt, {"id": job_id}).fetchone()
        return None if row is None else row_to_job(row)

    def get_tx_hash(self, job_id: str) -> Optional[str]:
        with self._get_engine().begin() as conn:
            row = conn.execute(text("SELECT tx_hash FROM jobs WHERE id = :id"), {"id": job_id}).fetchone()
        return None if row is None else row[0]

    def set_paused(self, paused: bool) -> None:
        stmt = text(
            """
            INSERT INTO settings (key, value) VALUES ('paused', :value)
            ON CONFLICT (key) DO UPDATE SET value = excluded.value
            """
        )
        with self._get_engine().begin() as conn:
            conn.execute(stmt, {"value": "1" if paused else "0"})

    # ---- JobStore

    async def get_active_jobs(self) -> Sequence[Job]:
        return await self._run(self._get_active_jobs)

    def _get_active_jobs(self) -> list[Job]:
        stmt = text(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE status IN ('pending', 'active') ORDER BY created_at"
        )
        with self._get_engine().begin() as conn:
            rows = conn.execute(stmt).fetchall()

        jobs = []
        for row in rows:
            try:
                jobs.append(row_to_job(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Skipping malformed job row {row._mapping['id']}: {e}")
        return jobs

    async def activate_job(self, job_id: str) -> None:
        await self._run(self._set, job_id, "status = 'active'", {})
        logger.info(f"Job {job_id} marked active")

    async def mark_executed(self, job_id: str, tx_hash: str, amount_out: Optional[int] = None) -> None:
        await self._run(self._mark_executed, job_id, tx_hash, amount_out)
        logger.info(f"Job {job_id} marked executed (tx {tx_hash})")

    def _mark_executed(self, job_id: str, tx_hash: str, amount_out: Optional[int]) -> None:
        now = self._now_ms()
        with self._get_engine().begin() as conn:
            conn.execute(
                text(
                    f"UPDATE jobs SET status = 'executed', tx_hash = :tx_hash, last_error = NULL, {_TOUCH} "
                    "WHERE id = :id"
                ),
                {"id": job_id, "tx_hash": tx_hash, "now": now},
            )
            self._insert_execution(conn, job_id, tx_hash, now, amount_out)

    async def mark_dca_tick(
        self,
        job_id: str,
        tx_hash: str,
        swaps_completed: int,
        next_execution: datetime,
        amount_out: Optional[int] = None,
    ) -> None:
        await self._run(self._mark_dca_tick, job_id, tx_hash, swaps_completed, next_execution, amount_out)

    def _mark_dca_tick(
        self,
        job_id: str,
        tx_hash: str,
        swaps_completed: int,
        next_execution: datetime,
        amount_out: Optional[int],
    ) -> None:
        now = self._now_ms()
        with self._get_engine().begin() as conn:
            row = conn.execute(
                text("SELECT type, params_json FROM jobs WHERE id = :id"), {"id": job_id}
            ).fetchone()
            if row is None:
                logger.warning(f"mark_dca_tick: job {job_id} not found")
                return

            params = json.loads(row.params_json)
            params["swapsCompleted"] = swaps_completed
            params["nextExecution"] = to_ms(next_execution)
            status = "executed" if swaps_completed >= int(params["totalSwaps"]) else "active"

            conn.execute(
                text(
                    "UPDATE jobs SET status = :status, params_json = :params_json, tx_hash = :tx_hash, "
                    f"last_error = NULL, {_TOUCH} WHERE id = :id"
                ),
                {
                    "id": job_id,
                    "status": status,
                    "params_json": json.dumps(params),
                    "tx_hash": tx_hash,
                    "now": now,
                },
            )
            self._insert_execution(conn, job_id, tx_hash, now, amount_out)

        logger.info(f"DCA job {job_id} tick recorded: {swaps_completed}/{params['totalSwaps']} ({status})")

    async def mark_failed(self, job_id: str, reason: str) -> None:
        await self._run(self._set, job_id, "status = 'failed', last_error = :reason", {"reason": reason})
        logger.warning(f"Job {job_id} marked failed: {reason}")

    async def increment_retry(self, job_id: str) -> None:
        await self._run(self._increment_retry, job_id)

    def _increment_retry(self, job_id: str) -> None:
        with self._get_engine().begin() as conn:
            conn.execute(
                text(f"UPDATE jobs SET retries = retries + 1, {_TOUCH} WHERE id = :id AND retries < max_retries"),
                {"id": job_id, "now": self._now_ms()},
            )

    async def update_last_error(self, job_id: str, error: str) -> None:
        await self._run(self._set, job_id, "last_error = :error", {"error": error})

    async def get_paused(self) -> bool:
        return await self._run(self._get_paused)

    def _get_paused(self) -> bool:
        with self._get_engine().begin() as conn:
            row = conn.execute(text("SELECT value FROM settings WHERE key = 'paused'")).fetchone()
        return row is not None and row[0] == "1"

    async def update_heartbeat(self) -> None:
        await self._run(self._update_heartbeat)

    def _update_heartbeat(self) -> None:
        stmt = text(
            """
            INSERT INTO worker_heartbeat (id, last_seen_at, worker_pid)
            VALUES (1, :now, :pid)
            ON CONFLICT (id) DO UPDATE SET
                last_seen_at = excluded.last_seen_at,
                worker_pid = excluded.worker_pid
            """
        )
        with self._get_engine().begin() as conn:
            conn.execute(stmt, {"now": self._now_ms(), "pid": os.getpid()})

    def get_heartbeat(self) -> Optional[datetime]:
        with self._get_engine().begin() as conn:
            row = conn.execute(text("SELECT last_seen_at FROM worker_heartbeat WHERE id = 1")).fetchone()
        return None if row is None else from_ms(row[0])

    # ---- AuditEventStore

    def log_event(
        self,
        *,
        event_type: str,
        message: str,
        severity: str = "info",
        job_id: str | None = None,
        actor: str = "system",
        event_time: datetime | None = None,
        context_json: str | None = None,
    ) -> None:
        stmt = text(
            """
            INSERT INTO audit_events (event_type, message, severity, job_id, actor, event_time, context_json)
            VALUES (:event_type, :message, :severity, :job_id, :actor, :event_time, :context_json)
            """
        )
        with self._get_engine().begin() as conn:
            conn.execute(
                stmt,
                {
                    "event_type": event_type,
                    "message": message,
                    "severity": severity,
                    "job_id": job_id,
                    "actor": actor,
                    "event_time": to_ms(event_time or self._clock()),
                    "context_json": context_json,
                },
            )

    def count_audit_events(self, *, event_type: str | None = None) -> int:
        with self._get_engine().begin() as conn:
            if event_type is None:
                row = conn.execute(text("SELECT COUNT(*) FROM audit_events")).fetchone()
            else:
                row = conn.execute(
                    text("SELECT COUNT(*) FROM audit_events WHERE event_type = :event_type"),
                    {"event_type": event_type},
                ).fetchone()
        return int(row[0])

    # ---- internals

    def _set(self, job_id: str, assignments: str, params: dict[str, Any]) -> None:
        with self._get_engine().begin() as conn:
            conn.execute(
                text(f"UPDATE jobs SET {assignments}, {_TOUCH} WHERE id = :id"),
                {"id": job_id, "now": self._now_ms(), **params},
            )

    @staticmethod
    def _insert_execution(conn: Any, job_id: str, tx_hash: str, now: int, amount_out: Optional[int]) -> None:
        conn.execute(
            text(
                "INSERT INTO executions (job_id, tx_hash, timestamp, amount_out) "
                "VALUES (:job_id, :tx_hash, :timestamp, :amount_out)"
            ),
            {
                "job_id": job_id,
                "tx_hash": tx_hash,
                "timestamp": now,
                "amount_out": str(amount_out) if amount_out is not None else None,
            },
        )
