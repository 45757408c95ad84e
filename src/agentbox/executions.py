"""
Asynchronous execution engine.

Submissions are persisted as pending and pushed onto a bounded FIFO queue; a
fixed pool of worker tasks drains it. Each run borrows a pod (a standby pod
when the environment's pool has one, otherwise a fresh ephemeral pod), runs
the command to completion or timeout, records the result and destroys the
pod. Terminal executions are never written again.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional

import structlog

from .cluster import BytePipe, ClusterGateway
from .core import metrics
from .core.config import Config
from .core.errors import (
    CapacityError,
    ClusterError,
    ExecutionError,
    NotFoundError,
    PreconditionError,
)
from .models import (
    CANCELABLE_EXECUTION_STATUSES,
    EnvironmentStatus,
    Execution,
    ExecutionStatus,
    utcnow,
)
from .pods import MAIN_POD_NAME, ephemeral_pod_spec, is_quota_rejection, new_id
from .pool import StandbyPod, StandbyPoolManager
from .store import StateStore

logger = structlog.get_logger(__name__)

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 1000
CANCELED_MESSAGE = "canceled by user"
INTERRUPTED_MESSAGE = "interrupted by restart"


class ExecResult(NamedTuple):
    stdout: str
    stderr: str
    exit_code: int


def with_env(command: List[str], env: Dict[str, str]) -> List[str]:
    """Prefix a command with `env K=V ...` so extra variables reach exec'd processes."""
    if not env:
        return list(command)
    return ["env"] + [f"{k}={v}" for k, v in sorted(env.items())] + list(command)


async def _collect(pipe: BytePipe, sink: bytearray) -> None:
    while True:
        chunk = await pipe.read()
        if not chunk:
            return
        sink.extend(chunk)


async def run_in_pod(
    gateway: ClusterGateway,
    namespace: str,
    pod: str,
    command: List[str],
) -> ExecResult:
    """Exec a command in a running pod and capture its output."""
    stdout, stderr = BytePipe(), BytePipe()
    out_buf, err_buf = bytearray(), bytearray()
    readers = [
        asyncio.create_task(_collect(stdout, out_buf)),
        asyncio.create_task(_collect(stderr, err_buf)),
    ]
    try:
        exit_code = await gateway.exec_in_pod(
            namespace, pod, command, stdout=stdout, stderr=stderr
        )
        stdout.close()
        stderr.close()
        await asyncio.gather(*readers)
    finally:
        for task in readers:
            task.cancel()
    return ExecResult(
        stdout=out_buf.decode("utf-8", errors="replace"),
        stderr=err_buf.decode("utf-8", errors="replace"),
        exit_code=exit_code,
    )


@dataclass
class _Lease:
    """The pod an execution is running in."""

    namespace: str
    pod_name: str
    source: str  # standby, ephemeral, main
    standby: Optional[StandbyPod] = None


class ExecutionEngine:
    def __init__(
        self,
        store: StateStore,
        gateway: ClusterGateway,
        config: Config,
        pool: Optional[StandbyPoolManager] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config
        self.pool = pool
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=config.executions.queue_size)
        self._workers: List[asyncio.Task] = []
        self._running: Dict[str, asyncio.Task] = {}
        self._leases: Dict[str, _Lease] = {}
        # Guards read-modify-write of execution records.
        self._lock = asyncio.Lock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._workers:
            return
        for n in range(self.config.executions.workers):
            self._workers.append(asyncio.create_task(self._worker(n)))
        logger.info("execution_workers_started", workers=len(self._workers))

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("execution_workers_stopped")

    async def recover(self) -> List[Execution]:
        """Fail executions a previous process left unfinished and remove their pods.

        Call before start(); nothing from this process is in flight yet.
        """
        interrupted = await self.store.interrupt_executions(INTERRUPTED_MESSAGE)
        for execution in interrupted:
            metrics.executions_total.labels(status=ExecutionStatus.FAILED.value).inc()
            if execution.namespace and execution.pod_name == execution.id:
                await self._release(
                    execution.id, _Lease(execution.namespace, execution.pod_name, "ephemeral")
                )
        if interrupted:
            logger.warning(
                "executions_interrupted",
                count=len(interrupted),
                exec_ids=[e.id for e in interrupted],
            )
        return interrupted

    # =========================================================================
    # Public operations
    # =========================================================================

    def resolve_timeout(self, timeout: int) -> int:
        cfg = self.config.timeouts
        if timeout <= 0:
            return cfg.execution_default_timeout
        return min(timeout, cfg.execution_max_timeout)

    async def submit(
        self,
        environment_id: str,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        timeout: int = 0,
        user_id: str = "",
    ) -> Execution:
        """Persist a pending execution and queue it; never waits for a pod."""
        environment = await self.store.get_environment(environment_id)
        if environment is None:
            raise NotFoundError("environment", environment_id)
        if environment.status != EnvironmentStatus.RUNNING:
            raise PreconditionError(
                f"environment {environment_id} is not running (status: {environment.status.value})"
            )
        if self._queue.full():
            raise CapacityError("execution queue is full; retry later")

        exec_id = new_id("exec")
        execution = Execution(
            id=exec_id,
            environment_id=environment_id,
            command=list(command),
            env=dict(env or {}),
            status=ExecutionStatus.PENDING,
            user_id=user_id,
            pod_name=exec_id,
            namespace=environment.namespace,
        )
        await self.store.save_execution(execution)
        try:
            self._queue.put_nowait((exec_id, self.resolve_timeout(timeout)))
        except asyncio.QueueFull:
            await self._finish(exec_id, ExecutionStatus.FAILED, error="execution queue is full")
            raise CapacityError("execution queue is full; retry later")

        logger.info(
            "execution_submitted",
            exec_id=exec_id,
            environment_id=environment_id,
            command=command,
            user_id=user_id,
        )
        return execution

    async def get(self, exec_id: str) -> Execution:
        execution = await self.store.get_execution(exec_id)
        if execution is None:
            raise NotFoundError("execution", exec_id)
        return execution

    async def list(
        self, environment_id: Optional[str] = None, limit: int = DEFAULT_LIST_LIMIT
    ) -> List[Execution]:
        if limit <= 0:
            limit = DEFAULT_LIST_LIMIT
        return await self.store.list_executions(environment_id, min(limit, MAX_LIST_LIMIT))

    async def cancel(self, exec_id: str) -> Execution:
        """Cancel a pending/queued/running execution and destroy its pod."""
        async with self._lock:
            execution = await self.store.get_execution(exec_id)
            if execution is None:
                raise NotFoundError("execution", exec_id)
            if execution.status not in CANCELABLE_EXECUTION_STATUSES:
                raise PreconditionError(
                    f"execution {exec_id} cannot be canceled (status: {execution.status.value})"
                )
            execution.status = ExecutionStatus.CANCELED
            execution.completed_at = utcnow()
            execution.error = CANCELED_MESSAGE
            await self.store.save_execution(execution)
        metrics.executions_total.labels(status=ExecutionStatus.CANCELED.value).inc()

        task = self._running.get(exec_id)
        if task is not None:
            task.cancel()
        lease = self._leases.pop(exec_id, None)
        if lease is not None:
            await self._release(exec_id, lease)
        logger.info("execution_canceled", exec_id=exec_id)
        return execution

    # =========================================================================
    # Workers
    # =========================================================================

    async def _worker(self, n: int) -> None:
        while True:
            exec_id, timeout = await self._queue.get()
            task = asyncio.create_task(self._run(exec_id, timeout))
            self._running[exec_id] = task
            try:
                # wait() keeps a canceled run from taking the worker down with it.
                await asyncio.wait({task})
            except asyncio.CancelledError:
                task.cancel()
                raise
            finally:
                self._running.pop(exec_id, None)
                self._queue.task_done()
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "execution_worker_error",
                    worker=n,
                    exec_id=exec_id,
                    error=str(task.exception()),
                )

    async def _run(self, exec_id: str, timeout: int) -> None:
        execution = await self.store.get_execution(exec_id)
        if execution is None or execution.status.is_terminal:
            return
        environment = await self.store.get_environment(execution.environment_id)
        if environment is None or environment.status != EnvironmentStatus.RUNNING:
            await self._finish(
                exec_id,
                ExecutionStatus.FAILED,
                error=f"environment {execution.environment_id} is not running",
            )
            return
        if not await self._update(exec_id, status=ExecutionStatus.QUEUED, queued_at=utcnow()):
            return

        started = time.monotonic()
        try:
            await asyncio.wait_for(
                self._execute(execution, environment, timeout), timeout=timeout
            )
        except asyncio.TimeoutError:
            await self._finish(
                exec_id,
                ExecutionStatus.FAILED,
                error=f"execution timed out after {timeout}s",
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        except (ClusterError, ExecutionError) as e:
            await self._finish(
                exec_id,
                ExecutionStatus.FAILED,
                error=str(e),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        except Exception as e:
            logger.error("execution_crashed", exec_id=exec_id, error=str(e), exc_info=True)
            await self._finish(exec_id, ExecutionStatus.FAILED, error=f"internal error: {e}")
        finally:
            lease = self._leases.pop(exec_id, None)
            if lease is not None:
                await self._release(exec_id, lease)

    async def _execute(self, execution, environment, timeout: int) -> None:
        standby = await self.pool.claim(environment) if self.pool is not None else None
        if standby is not None:
            lease = _Lease(standby.namespace, standby.name, "standby", standby)
            self._leases[execution.id] = lease
            if not await self._mark_running(execution.id, lease):
                return
            await self._exec_and_record(
                execution, lease, with_env(execution.command, execution.env)
            )
            return

        spec = ephemeral_pod_spec(environment, execution, self.config.kubernetes.runtime_class)
        spec.cpu = spec.cpu or self.config.resources.default_cpu_limit
        spec.memory = spec.memory or self.config.resources.default_memory_limit
        lease = _Lease(spec.namespace, spec.name, "ephemeral")
        # Registered before the pod exists so a cancel always knows what to remove.
        self._leases[execution.id] = lease
        create = asyncio.ensure_future(self.gateway.create_pod(spec))
        try:
            await asyncio.shield(create)
        except asyncio.CancelledError:
            # The API call carries on regardless; let it land, then remove the pod.
            await asyncio.wait({create})
            if not create.cancelled() and create.exception() is not None:
                logger.debug(
                    "canceled_pod_create_failed",
                    exec_id=execution.id,
                    error=str(create.exception()),
                )
            self._leases.pop(execution.id, None)
            await self._release(execution.id, lease)
            raise
        except ClusterError as e:
            if not is_quota_rejection(e):
                raise ExecutionError(execution.id, f"failed to create pod: {e}", cause=e) from e
            logger.warning(
                "ephemeral_pod_rejected_running_in_main_pod",
                exec_id=execution.id,
                namespace=environment.namespace,
                error=str(e),
            )
            lease = _Lease(environment.namespace, MAIN_POD_NAME, "main")
            self._leases[execution.id] = lease
            if not await self._mark_running(execution.id, lease):
                return
            merged = dict(environment.env)
            merged.update(execution.env)
            await self._exec_and_record(execution, lease, with_env(execution.command, merged))
            return

        if not await self._mark_running(execution.id, lease):
            return
        started = time.monotonic()
        completion = await self.gateway.wait_for_pod_completion(
            lease.namespace, lease.pod_name, timeout=timeout
        )
        duration = time.monotonic() - started
        await self._record_result(
            execution.id,
            lease,
            ExecResult(stdout=completion.logs, stderr="", exit_code=completion.exit_code),
            duration,
        )

    async def _exec_and_record(self, execution, lease: _Lease, command: List[str]) -> None:
        started = time.monotonic()
        try:
            result = await run_in_pod(self.gateway, lease.namespace, lease.pod_name, command)
        except ClusterError as e:
            raise ExecutionError(execution.id, str(e), cause=e) from e
        await self._record_result(execution.id, lease, result, time.monotonic() - started)

    async def _record_result(
        self, exec_id: str, lease: _Lease, result: ExecResult, duration: float
    ) -> None:
        status = ExecutionStatus.COMPLETED if result.exit_code == 0 else ExecutionStatus.FAILED
        metrics.execution_duration_seconds.labels(pod_source=lease.source).observe(duration)
        await self._finish(
            exec_id,
            status,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            error="" if result.exit_code == 0 else f"command exited with code {result.exit_code}",
            duration_ms=int(duration * 1000),
        )
        logger.info(
            "execution_finished",
            exec_id=exec_id,
            pod=lease.pod_name,
            pod_source=lease.source,
            exit_code=result.exit_code,
            duration_ms=int(duration * 1000),
        )

    # =========================================================================
    # Record updates
    # =========================================================================

    async def _mark_running(self, exec_id: str, lease: _Lease) -> bool:
        return await self._update(
            exec_id,
            status=ExecutionStatus.RUNNING,
            started_at=utcnow(),
            pod_name=lease.pod_name,
            namespace=lease.namespace,
        )

    async def _update(self, exec_id: str, **fields) -> bool:
        """Apply fields unless the execution is already terminal."""
        async with self._lock:
            execution = await self.store.get_execution(exec_id)
            if execution is None or execution.status.is_terminal:
                return False
            for name, value in fields.items():
                setattr(execution, name, value)
            await self.store.save_execution(execution)
            return True

    async def _finish(self, exec_id: str, status: ExecutionStatus, **fields) -> bool:
        updated = await self._update(
            exec_id, status=status, completed_at=utcnow(), **fields
        )
        if updated:
            metrics.executions_total.labels(status=status.value).inc()
        return updated

    async def _release(self, exec_id: str, lease: _Lease) -> None:
        if lease.source == "main":
            return
        if lease.source == "standby" and lease.standby is not None and self.pool is not None:
            await self.pool.release(lease.standby)
            return
        try:
            await self.gateway.delete_pod(
                lease.namespace,
                lease.pod_name,
                force=True,
                timeout=self.config.timeouts.cleanup_timeout,
            )
        except ClusterError as e:
            logger.warning(
                "ephemeral_pod_cleanup_failed", exec_id=exec_id, pod=lease.pod_name, error=str(e)
            )
