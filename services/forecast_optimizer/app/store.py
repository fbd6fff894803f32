"""Job record store backed by SQLAlchemy Core.

The table is the single source of truth for job state. Every state change is a
conditional UPDATE so concurrent writers cannot move a job backwards: claiming
only succeeds from ``pending`` and completion/failure only from ``running``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from .config import get_db_dsn

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
MERGED = "merged"
STATUSES = (PENDING, RUNNING, COMPLETED, FAILED, CANCELLED, MERGED)
ACTIVE_STATUSES = (PENDING, RUNNING)

JSON_TYPE = JSON().with_variant(JSONB(astext_type=Text()), "postgresql")

_METADATA = MetaData()
_JOBS_TABLE = Table(
    "optimization_jobs",
    _METADATA,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("optimization_id", String, nullable=False),
    Column("optimization_hash", String(64), nullable=False),
    Column("owner_id", String, nullable=False),
    Column("sku", String, nullable=False),
    Column("model_id", String, nullable=False),
    Column("method", String, nullable=False),
    Column("dataset_identifier", String),
    Column("batch_id", String),
    Column("reason", String),
    Column("priority", Integer, nullable=False),
    Column("status", String, nullable=False),
    Column("progress", Integer, nullable=False, default=0),
    Column("payload", JSON_TYPE),
    Column("result", JSON_TYPE),
    Column("error", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("started_at", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),
    Index("ix_optimization_jobs_hash", "optimization_hash"),
    Index("ix_optimization_jobs_status", "status"),
    Index("ix_optimization_jobs_owner_status", "owner_id", "status"),
)

_COLUMN_KEYS = {
    "id": "id",
    "optimization_id": "optimizationId",
    "optimization_hash": "optimizationHash",
    "owner_id": "ownerId",
    "sku": "sku",
    "model_id": "modelId",
    "method": "method",
    "dataset_identifier": "datasetIdentifier",
    "batch_id": "batchId",
    "reason": "reason",
    "priority": "priority",
    "status": "status",
    "progress": "progress",
    "payload": "payload",
    "result": "result",
    "error": "error",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "started_at": "startedAt",
    "completed_at": "completedAt",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _row_to_dict(row: Any) -> Dict[str, Any]:
    mapping = row._mapping
    payload = {}
    for column, key in _COLUMN_KEYS.items():
        value = mapping[column]
        if isinstance(value, datetime):
            value = _to_iso(value)
        payload[key] = value
    return payload


def _scheduler_order():
    c = _JOBS_TABLE.c
    return (c.method.desc(), c.priority.asc(), c.sku.asc(), c.created_at.asc(), c.id.asc())


class JobStore:
    """CRUD and ordered queries over ``optimization_jobs``."""

    def __init__(self, dsn: Optional[str] = None) -> None:
        self.dsn = (dsn or get_db_dsn()).strip()
        self._lock = RLock()
        self._engine: Engine = self._create_engine(self.dsn)
        _METADATA.create_all(self._engine)

    @staticmethod
    def _create_engine(dsn: str) -> Engine:
        if dsn.lower().startswith("sqlite"):
            kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if dsn in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            return create_engine(dsn, future=True, **kwargs)
        return create_engine(dsn, future=True)

    # ---- writes ----

    def insert_job(self, values: Dict[str, Any]) -> Dict[str, Any]:
        now = utc_now()
        row = {
            "optimization_id": values["optimization_id"],
            "optimization_hash": values["optimization_hash"],
            "owner_id": values["owner_id"],
            "sku": values["sku"],
            "model_id": values["model_id"],
            "method": values["method"],
            "dataset_identifier": values.get("dataset_identifier"),
            "batch_id": values.get("batch_id"),
            "reason": values.get("reason"),
            "priority": int(values["priority"]),
            "status": values.get("status", PENDING),
            "progress": int(values.get("progress", 0)),
            "payload": values.get("payload"),
            "result": values.get("result"),
            "error": values.get("error"),
            "created_at": values.get("created_at") or now,
            "updated_at": now,
        }
        if row["status"] not in STATUSES:
            raise ValueError(f"unknown status: {row['status']}")
        with self._lock, self._engine.begin() as conn:
            result = conn.execute(insert(_JOBS_TABLE).values(**row))
            job_id = result.inserted_primary_key[0]
            stored = conn.execute(select(_JOBS_TABLE).where(_JOBS_TABLE.c.id == job_id)).one()
        return _row_to_dict(stored)

    def claim(self, job_id: int) -> bool:
        """Move a job from pending to running; False if it is no longer pending."""

        now = utc_now()
        return self._transition(job_id, PENDING, status=RUNNING, progress=0, started_at=now, updated_at=now)

    def update_progress(self, job_id: int, progress: int) -> bool:
        value = max(0, min(100, int(progress)))
        c = _JOBS_TABLE.c
        with self._lock, self._engine.begin() as conn:
            result = conn.execute(
                update(_JOBS_TABLE)
                .where(c.id == job_id, c.status == RUNNING, c.progress < value)
                .values(progress=value, updated_at=utc_now())
            )
        return result.rowcount > 0

    def complete(self, job_id: int, result: Dict[str, Any]) -> bool:
        now = utc_now()
        return self._transition(
            job_id,
            RUNNING,
            status=COMPLETED,
            progress=100,
            result=result,
            error=None,
            completed_at=now,
            updated_at=now,
        )

    def fail(self, job_id: int, error: str) -> bool:
        now = utc_now()
        return self._transition(job_id, RUNNING, status=FAILED, error=error, completed_at=now, updated_at=now)

    def cancel(
        self,
        owner_id: str,
        *,
        optimization_id: Optional[str] = None,
        sku: Optional[str] = None,
        model_id: Optional[str] = None,
        statuses: Sequence[str] = (PENDING,),
    ) -> List[Dict[str, Any]]:
        """Cancel matching jobs and return the rows that changed."""

        c = _JOBS_TABLE.c
        clauses = [c.owner_id == owner_id, c.status.in_(list(statuses))]
        if optimization_id is not None:
            clauses.append(c.optimization_id == optimization_id)
        if sku is not None:
            clauses.append(c.sku == sku)
        if model_id is not None:
            clauses.append(c.model_id == model_id)
        with self._lock, self._engine.begin() as conn:
            rows = conn.execute(select(_JOBS_TABLE).where(*clauses).order_by(c.id)).all()
            ids = [row._mapping["id"] for row in rows]
            if not ids:
                return []
            conn.execute(
                update(_JOBS_TABLE)
                .where(c.id.in_(ids), c.status.in_(list(statuses)))
                .values(status=CANCELLED, updated_at=utc_now())
            )
            changed = conn.execute(select(_JOBS_TABLE).where(c.id.in_(ids)).order_by(c.id)).all()
        return [_row_to_dict(row) for row in changed]

    def delete_jobs(self, owner_id: str, status: Optional[str] = None) -> int:
        c = _JOBS_TABLE.c
        stmt = delete(_JOBS_TABLE).where(c.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(c.status == status)
        with self._lock, self._engine.begin() as conn:
            result = conn.execute(stmt)
        return int(result.rowcount or 0)

    def fail_running(self, error: str) -> int:
        """Fail every running row; returns how many were changed."""

        now = utc_now()
        with self._lock, self._engine.begin() as conn:
            result = conn.execute(
                update(_JOBS_TABLE)
                .where(_JOBS_TABLE.c.status == RUNNING)
                .values(status=FAILED, error=error, completed_at=now, updated_at=now)
            )
        return result.rowcount

    def _transition(self, job_id: int, expected: str, **values: Any) -> bool:
        c = _JOBS_TABLE.c
        with self._lock, self._engine.begin() as conn:
            result = conn.execute(
                update(_JOBS_TABLE).where(c.id == job_id, c.status == expected).values(**values)
            )
        return result.rowcount > 0

    # ---- reads ----

    def get_job(self, job_id: int, owner_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        c = _JOBS_TABLE.c
        stmt = select(_JOBS_TABLE).where(c.id == job_id)
        if owner_id is not None:
            stmt = stmt.where(c.owner_id == owner_id)
        with self._lock, self._engine.connect() as conn:
            row = conn.execute(stmt).first()
        return _row_to_dict(row) if row is not None else None

    def latest_by_hash(self, optimization_hash: str, owner_id: str) -> Optional[Dict[str, Any]]:
        """Most recent non-merged job carrying the fingerprint."""

        c = _JOBS_TABLE.c
        stmt = (
            select(_JOBS_TABLE)
            .where(c.optimization_hash == optimization_hash, c.owner_id == owner_id, c.status != MERGED)
            .order_by(c.created_at.desc(), c.id.desc())
            .limit(1)
        )
        with self._lock, self._engine.connect() as conn:
            row = conn.execute(stmt).first()
        return _row_to_dict(row) if row is not None else None

    def fetch_pending(self, limit: int) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        stmt = (
            select(_JOBS_TABLE)
            .where(_JOBS_TABLE.c.status == PENDING)
            .order_by(*_scheduler_order())
            .limit(limit)
        )
        with self._lock, self._engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [_row_to_dict(row) for row in rows]

    def list_jobs(
        self,
        owner_id: str,
        *,
        statuses: Optional[Iterable[str]] = None,
        method: Optional[str] = None,
        sku: Optional[str] = None,
        dataset_identifier: Optional[str] = None,
        optimization_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        c = _JOBS_TABLE.c
        stmt = select(_JOBS_TABLE).where(c.owner_id == owner_id)
        if statuses is not None:
            stmt = stmt.where(c.status.in_(list(statuses)))
        if method is not None:
            stmt = stmt.where(c.method == method)
        if sku is not None:
            stmt = stmt.where(c.sku == sku)
        if dataset_identifier is not None:
            stmt = stmt.where(c.dataset_identifier == dataset_identifier)
        if optimization_id is not None:
            stmt = stmt.where(c.optimization_id == optimization_id)
        with self._lock, self._engine.connect() as conn:
            rows = conn.execute(stmt.order_by(*_scheduler_order())).all()
        return [_row_to_dict(row) for row in rows]

    def completed_jobs(
        self,
        owner_id: str,
        *,
        method: Optional[str] = None,
        sku: Optional[str] = None,
        dataset_identifier: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        rows = self.list_jobs(
            owner_id,
            statuses=[COMPLETED],
            method=method,
            sku=sku,
            dataset_identifier=dataset_identifier,
        )
        return [row for row in rows if row.get("result") is not None]

    def status_counts(self, owner_id: str) -> Dict[str, int]:
        c = _JOBS_TABLE.c
        stmt = select(c.status, func.count()).where(c.owner_id == owner_id).group_by(c.status)
        counts = {status: 0 for status in STATUSES}
        with self._lock, self._engine.connect() as conn:
            for status, count in conn.execute(stmt).all():
                counts[status] = int(count)
        return counts

    def count_running(self) -> int:
        c = _JOBS_TABLE.c
        with self._lock, self._engine.connect() as conn:
            value = conn.execute(
                select(func.count()).select_from(_JOBS_TABLE).where(c.status == RUNNING)
            ).scalar_one()
        return int(value)


_STORE: Optional[JobStore] = None
_STORE_LOCK = RLock()


def get_store() -> JobStore:
    global _STORE
    with _STORE_LOCK:
        if _STORE is None:
            _STORE = JobStore()
        return _STORE


def configure_store(dsn: Optional[str]) -> JobStore:
    """Switch the record store (tests use a fresh in-memory database)."""

    global _STORE
    with _STORE_LOCK:
        _STORE = JobStore(dsn)
        return _STORE
