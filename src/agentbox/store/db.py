"""Durable state store for environments, executions and lifecycle events."""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Generator, List, Optional, Sequence, TypeVar

import structlog
from sqlalchemy import create_engine, delete, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..models import (
    Environment,
    EnvironmentEvent,
    EnvironmentStatus,
    Execution,
    ExecutionStatus,
    utcnow,
)
from .models import Base, EnvironmentEventRow, EnvironmentRow, ExecutionRow

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Columns a spec patch may change
_ENV_SPEC_FIELDS = (
    "name",
    "image",
    "timeout",
    "resources",
    "env",
    "command",
    "labels",
    "node_selector",
    "tolerations",
    "isolation",
    "pool",
)

# JSON-blob columns on the environments table
_ENV_JSON_FIELDS = (
    "resources",
    "env",
    "command",
    "labels",
    "node_selector",
    "tolerations",
    "isolation",
    "pool",
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _environment_from_row(row: EnvironmentRow) -> Environment:
    return Environment(
        id=row.id,
        name=row.name,
        image=row.image,
        status=EnvironmentStatus(row.status),
        namespace=row.namespace,
        resources=row.resources or {},
        env=row.env or {},
        command=row.command or [],
        labels=row.labels or {},
        timeout=row.timeout or 0,
        user_id=row.user_id or "",
        node_selector=row.node_selector or {},
        tolerations=row.tolerations or [],
        isolation=row.isolation,
        pool=row.pool,
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
        reconciliation_retry_count=row.reconciliation_retry_count or 0,
        last_reconciliation_error=row.last_reconciliation_error,
        last_reconciliation_at=_aware(row.last_reconciliation_at),
    )


def _environment_values(env: Environment) -> dict[str, Any]:
    data = env.model_dump(mode="json", exclude={"reconciliation_retries_left"})
    values: dict[str, Any] = {k: data[k] for k in _ENV_JSON_FIELDS}
    values.update(
        id=env.id,
        name=env.name,
        image=env.image,
        status=env.status.value,
        namespace=env.namespace,
        user_id=env.user_id,
        timeout=env.timeout,
        created_at=env.created_at,
        started_at=env.started_at,
        reconciliation_retry_count=env.reconciliation_retry_count,
        last_reconciliation_error=env.last_reconciliation_error,
        last_reconciliation_at=env.last_reconciliation_at,
    )
    return values


def _execution_from_row(row: ExecutionRow) -> Execution:
    return Execution(
        id=row.id,
        environment_id=row.environment_id,
        command=row.command or [],
        env=row.env or {},
        status=ExecutionStatus(row.status),
        user_id=row.user_id or "",
        pod_name=row.pod_name or "",
        namespace=row.namespace or "",
        created_at=_aware(row.created_at),
        queued_at=_aware(row.queued_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        exit_code=row.exit_code,
        stdout=row.stdout or "",
        stderr=row.stderr or "",
        error=row.error or "",
        duration_ms=row.duration_ms,
    )


def _execution_values(execution: Execution) -> dict[str, Any]:
    return {
        "id": execution.id,
        "environment_id": execution.environment_id,
        "command": list(execution.command),
        "env": dict(execution.env),
        "status": execution.status.value,
        "user_id": execution.user_id,
        "pod_name": execution.pod_name,
        "namespace": execution.namespace,
        "created_at": execution.created_at,
        "queued_at": execution.queued_at,
        "started_at": execution.started_at,
        "completed_at": execution.completed_at,
        "exit_code": execution.exit_code,
        "stdout": execution.stdout,
        "stderr": execution.stderr,
        "error": execution.error,
        "duration_ms": execution.duration_ms,
    }


class StateStore:
    """
    SQLAlchemy-backed store.

    Each public coroutine runs its blocking session work in a worker thread and
    honors a deadline (seconds); exceeding it raises asyncio.TimeoutError.
    """

    def __init__(
        self,
        db_url: str,
        default_timeout: float = 10.0,
        auto_create_tables: bool = True,
    ):
        connect_args = {}
        engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
        if (db_url or "").strip().lower().startswith("sqlite"):
            # Session work runs on worker threads.
            connect_args = {"check_same_thread": False}
            if ":memory:" in db_url or db_url.rstrip("/") == "sqlite:":
                engine_kwargs["poolclass"] = StaticPool
        self._engine: Engine = create_engine(
            db_url, connect_args=connect_args, **engine_kwargs
        )
        self._session_factory = sessionmaker(
            bind=self._engine, autocommit=False, autoflush=False, expire_on_commit=False
        )
        self.default_timeout = default_timeout
        if auto_create_tables:
            Base.metadata.create_all(bind=self._engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        s: Session = self._session_factory()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    def close(self) -> None:
        self._engine.dispose()

    async def _run(self, fn: Callable[..., T], *args: Any, timeout: Optional[float]) -> T:
        deadline = self.default_timeout if timeout is None else timeout
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=deadline)

    # -------------------------------------------------------------------------
    # Environments
    # -------------------------------------------------------------------------

    async def save_environment(
        self, env: Environment, timeout: Optional[float] = None
    ) -> None:
        """Insert or replace the full environment record."""
        await self._run(self._save_environment, env, timeout=timeout)

    def _save_environment(self, env: Environment) -> None:
        with self.session() as s:
            s.merge(EnvironmentRow(**_environment_values(env)))

    async def get_environment(
        self, env_id: str, timeout: Optional[float] = None
    ) -> Optional[Environment]:
        return await self._run(self._get_environment, env_id, timeout=timeout)

    def _get_environment(self, env_id: str) -> Optional[Environment]:
        with self.session() as s:
            row = s.get(EnvironmentRow, env_id)
            return _environment_from_row(row) if row is not None else None

    async def list_environments(
        self, limit: int = 1000, offset: int = 0, timeout: Optional[float] = None
    ) -> List[Environment]:
        return await self._run(self._list_environments, limit, offset, timeout=timeout)

    def _list_environments(self, limit: int, offset: int) -> List[Environment]:
        with self.session() as s:
            rows = s.execute(
                select(EnvironmentRow)
                .order_by(EnvironmentRow.created_at, EnvironmentRow.id)
                .limit(limit)
                .offset(offset)
            ).scalars()
            return [_environment_from_row(r) for r in rows]

    async def count_environments_for_user(
        self, user_id: str, timeout: Optional[float] = None
    ) -> int:
        return await self._run(self._count_for_user, user_id, timeout=timeout)

    def _count_for_user(self, user_id: str) -> int:
        with self.session() as s:
            rows = s.execute(
                select(EnvironmentRow.id).where(
                    EnvironmentRow.user_id == user_id,
                    EnvironmentRow.status != EnvironmentStatus.TERMINATED.value,
                )
            ).all()
            return len(rows)

    async def delete_environment(
        self, env_id: str, timeout: Optional[float] = None
    ) -> bool:
        """Hard-delete the record. Returns False if it was already gone."""
        return await self._run(self._delete_environment, env_id, timeout=timeout)

    def _delete_environment(self, env_id: str) -> bool:
        with self.session() as s:
            result = s.execute(delete(EnvironmentRow).where(EnvironmentRow.id == env_id))
            return (result.rowcount or 0) > 0

    async def update_reconciliation_state(
        self,
        env_id: str,
        retry_count: int,
        last_error: Optional[str],
        last_at: Optional[datetime],
        timeout: Optional[float] = None,
    ) -> None:
        await self._run(
            self._update_reconciliation_state,
            env_id,
            retry_count,
            last_error,
            last_at,
            timeout=timeout,
        )

    def _update_reconciliation_state(
        self,
        env_id: str,
        retry_count: int,
        last_error: Optional[str],
        last_at: Optional[datetime],
    ) -> None:
        with self.session() as s:
            s.execute(
                update(EnvironmentRow)
                .where(EnvironmentRow.id == env_id)
                .values(
                    reconciliation_retry_count=retry_count,
                    last_reconciliation_error=last_error,
                    last_reconciliation_at=last_at,
                )
            )

    async def update_environment_spec(
        self, env_id: str, values: dict[str, Any], timeout: Optional[float] = None
    ) -> bool:
        """
        Write only the given spec columns, leaving status and bookkeeping alone.

        Environments that are terminating or gone are not touched; returns
        False in that case.
        """
        unknown = set(values) - set(_ENV_SPEC_FIELDS)
        if unknown:
            raise ValueError(f"not environment spec fields: {sorted(unknown)}")
        return await self._run(self._update_environment_spec, env_id, values, timeout=timeout)

    def _update_environment_spec(self, env_id: str, values: dict[str, Any]) -> bool:
        if not values:
            return True
        closed = [EnvironmentStatus.TERMINATING.value, EnvironmentStatus.TERMINATED.value]
        with self.session() as s:
            result = s.execute(
                update(EnvironmentRow)
                .where(EnvironmentRow.id == env_id, EnvironmentRow.status.not_in(closed))
                .values(**values)
            )
            return (result.rowcount or 0) > 0

    async def set_environment_status(
        self,
        env_id: str,
        status: EnvironmentStatus,
        from_statuses: Optional[Sequence[EnvironmentStatus]] = None,
        started_at: Optional[datetime] = None,
        reset_reconciliation: bool = False,
        timeout: Optional[float] = None,
    ) -> bool:
        """
        Move an environment to status, only if it is currently in from_statuses
        (any status when None). Returns False when nothing was changed.
        """
        return await self._run(
            self._set_environment_status,
            env_id,
            status,
            from_statuses,
            started_at,
            reset_reconciliation,
            timeout=timeout,
        )

    def _set_environment_status(
        self,
        env_id: str,
        status: EnvironmentStatus,
        from_statuses: Optional[Sequence[EnvironmentStatus]],
        started_at: Optional[datetime],
        reset_reconciliation: bool,
    ) -> bool:
        values: dict[str, Any] = {"status": status.value}
        if started_at is not None:
            values["started_at"] = started_at
        if reset_reconciliation:
            values.update(
                reconciliation_retry_count=0,
                last_reconciliation_error=None,
                last_reconciliation_at=None,
            )
        stmt = update(EnvironmentRow).where(EnvironmentRow.id == env_id)
        if from_statuses is not None:
            stmt = stmt.where(EnvironmentRow.status.in_([s.value for s in from_statuses]))
        with self.session() as s:
            result = s.execute(stmt.values(**values))
            return (result.rowcount or 0) > 0

    # -------------------------------------------------------------------------
    # Executions
    # -------------------------------------------------------------------------

    async def save_execution(
        self, execution: Execution, timeout: Optional[float] = None
    ) -> None:
        await self._run(self._save_execution, execution, timeout=timeout)

    def _save_execution(self, execution: Execution) -> None:
        with self.session() as s:
            s.merge(ExecutionRow(**_execution_values(execution)))

    async def interrupt_executions(
        self, error: str, timeout: Optional[float] = None
    ) -> List[Execution]:
        """Fail every execution that is not terminal; returns them as updated."""
        return await self._run(self._interrupt_executions, error, timeout=timeout)

    def _interrupt_executions(self, error: str) -> List[Execution]:
        active = [s.value for s in ExecutionStatus if not s.is_terminal]
        now = utcnow()
        with self.session() as s:
            rows = list(
                s.execute(
                    select(ExecutionRow).where(ExecutionRow.status.in_(active))
                ).scalars()
            )
            for row in rows:
                row.status = ExecutionStatus.FAILED.value
                row.completed_at = now
                row.error = error
            return [_execution_from_row(r) for r in rows]

    async def get_execution(
        self, exec_id: str, timeout: Optional[float] = None
    ) -> Optional[Execution]:
        return await self._run(self._get_execution, exec_id, timeout=timeout)

    def _get_execution(self, exec_id: str) -> Optional[Execution]:
        with self.session() as s:
            row = s.get(ExecutionRow, exec_id)
            return _execution_from_row(row) if row is not None else None

    async def list_executions(
        self,
        environment_id: Optional[str] = None,
        limit: int = 100,
        timeout: Optional[float] = None,
    ) -> List[Execution]:
        """Newest first; all environments when environment_id is empty."""
        return await self._run(
            self._list_executions, environment_id, limit, timeout=timeout
        )

    def _list_executions(self, environment_id: Optional[str], limit: int) -> List[Execution]:
        with self.session() as s:
            stmt = select(ExecutionRow)
            if environment_id:
                stmt = stmt.where(ExecutionRow.environment_id == environment_id)
            stmt = stmt.order_by(ExecutionRow.created_at.desc(), ExecutionRow.id.desc())
            rows = s.execute(stmt.limit(limit)).scalars()
            return [_execution_from_row(r) for r in rows]

    # -------------------------------------------------------------------------
    # Environment events
    # -------------------------------------------------------------------------

    async def append_event(
        self,
        environment_id: str,
        event_type: str,
        message: str,
        details: str = "",
        timeout: Optional[float] = None,
    ) -> EnvironmentEvent:
        event = EnvironmentEvent(
            environment_id=environment_id,
            event_type=event_type,
            message=message,
            details=details,
            created_at=utcnow(),
        )
        event.id = await self._run(self._append_event, event, timeout=timeout)
        return event

    def _append_event(self, event: EnvironmentEvent) -> int:
        with self.session() as s:
            row = EnvironmentEventRow(
                environment_id=event.environment_id,
                event_type=event.event_type,
                message=event.message,
                details=event.details,
                created_at=event.created_at,
            )
            s.add(row)
            s.flush()
            return row.id

    async def list_events(
        self, environment_id: str, limit: int = 500, timeout: Optional[float] = None
    ) -> List[EnvironmentEvent]:
        """Oldest first, bounded to the most recent `limit` events."""
        return await self._run(self._list_events, environment_id, limit, timeout=timeout)

    def _list_events(self, environment_id: str, limit: int) -> List[EnvironmentEvent]:
        with self.session() as s:
            rows = list(
                s.execute(
                    select(EnvironmentEventRow)
                    .where(EnvironmentEventRow.environment_id == environment_id)
                    .order_by(EnvironmentEventRow.id.desc())
                    .limit(limit)
                ).scalars()
            )
            rows.reverse()
            return [
                EnvironmentEvent(
                    id=r.id,
                    environment_id=r.environment_id,
                    event_type=r.event_type,
                    message=r.message,
                    details=r.details or "",
                    created_at=_aware(r.created_at),
                )
                for r in rows
            ]
