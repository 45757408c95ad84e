"""
Orchestrator facade.

Wires the state store, cluster gateway, reconciler, standby pool, execution
engine and session proxy together and exposes the operations the API layer
calls.
"""

import asyncio
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional, Set, Tuple

import structlog

from . import __version__
from .cluster import ClusterGateway
from .core.config import Config
from .core.errors import (
    CapacityError,
    ClusterError,
    ExecutionError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from .executions import ExecutionEngine, run_in_pod
from .models import (
    LIVE_ENVIRONMENT_STATUSES,
    ClusterCapacity,
    CreateEnvironmentRequest,
    Environment,
    EnvironmentStatus,
    ExecResponse,
    Execution,
    ExecutionListResponse,
    HealthResponse,
    KubernetesHealthStatus,
    ListEnvironmentsResponse,
    LogEntry,
    LogsResponse,
    PoolStatusEntry,
    SubmitExecutionRequest,
    UpdateEnvironmentRequest,
    utcnow,
)
from .pods import MAIN_POD_NAME, namespace_for, new_id
from .pool import StandbyPoolManager
from .reconciler import Reconciler
from .sessions import ClientConnection, Session, SessionProxy, SessionRegistry
from .store import StateStore
from .validator import Validator

logger = structlog.get_logger(__name__)

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 1000
EVENT_LOG_LIMIT = 500
# How often a log follower checks that its environment still exists
LOG_FOLLOW_CHECK_SECONDS = 5.0


# =============================================================================
# Label selectors
# =============================================================================


def parse_label_selector(selector: str) -> List[Tuple[str, str, str]]:
    """
    Parse an equality-based selector: `k=v`, `k==v`, `k!=v` or bare `k`,
    comma-joined (all must match).

    Returns (key, op, value) triples with op one of "=", "!=", "exists".
    """
    requirements = []
    for part in (p.strip() for p in selector.split(",")):
        if not part:
            continue
        if "!=" in part:
            key, value = part.split("!=", 1)
            op = "!="
        elif "==" in part:
            key, value = part.split("==", 1)
            op = "="
        elif "=" in part:
            key, value = part.split("=", 1)
            op = "="
        else:
            key, value, op = part, "", "exists"
        key = key.strip()
        if not key:
            raise ValidationError(f"invalid label selector: {selector!r}")
        requirements.append((key, op, value.strip()))
    return requirements


def matches_label_selector(labels: dict, requirements: List[Tuple[str, str, str]]) -> bool:
    for key, op, value in requirements:
        if op == "exists":
            if key not in labels:
                return False
        elif op == "=":
            if labels.get(key) != value:
                return False
        elif labels.get(key) == value:
            return False
    return True


def _split_timestamp(line: str) -> Tuple[Optional[datetime], str]:
    """Split a `<RFC3339 timestamp> <message>` pod log line."""
    stamp, sep, rest = line.partition(" ")
    if not sep:
        return None, line
    text = stamp.rstrip("Z")
    if "." in text:
        head, frac = text.split(".", 1)
        text = f"{head}.{frac[:6]}"
    try:
        ts = datetime.fromisoformat(text)
    except ValueError:
        return None, line
    return ts.replace(tzinfo=timezone.utc), rest


class Orchestrator:
    """Entry point for every environment, execution, log, pool and session operation."""

    def __init__(
        self,
        config: Config,
        store: StateStore,
        gateway: ClusterGateway,
        registry: Optional[SessionRegistry] = None,
    ):
        self.config = config
        self.store = store
        self.gateway = gateway
        self.validator = Validator.from_config(config)
        self.pool = StandbyPoolManager(gateway, config)
        self.reconciler = Reconciler(store, gateway, config, self.pool)
        self.executions = ExecutionEngine(store, gateway, config, self.pool)
        self.sessions = registry or SessionRegistry(config.proxy.max_sessions)
        self.proxy = SessionProxy(store, gateway, self.sessions, config.proxy)

        self._shutdown = asyncio.Event()
        self._loops: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Reload persisted state and start the background loops and workers."""
        self._shutdown.clear()
        envs = await self.reconciler.load_all()
        logger.info(
            "environments_loaded",
            count=len(envs),
            awaiting_retry=sum(1 for e in envs if e.reconciliation_retry_count > 0),
        )
        await self.pool.sync(envs)
        await self.executions.recover()
        await self.executions.start()
        self._loops = [
            asyncio.create_task(self.reconciler.run(self._shutdown)),
            asyncio.create_task(self.pool.run(self._shutdown)),
        ]
        logger.info("orchestrator_started")

    async def stop(self) -> None:
        self._shutdown.set()
        if self._loops:
            _, pending = await asyncio.wait(
                self._loops, timeout=self.config.timeouts.cleanup_timeout
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        await self.executions.stop()
        await self.sessions.close_all()
        await self.pool.stop()
        logger.info("orchestrator_stopped")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background_task_failed", error=str(task.exception()))

    # =========================================================================
    # Environments
    # =========================================================================

    def _with_retries_left(self, env: Environment) -> Environment:
        env.reconciliation_retries_left = max(
            0, self.reconciler.max_retries - env.reconciliation_retry_count
        )
        return env

    async def create_environment(
        self, req: CreateEnvironmentRequest, user_id: str = ""
    ) -> Environment:
        """Accept a declaration; provisioning happens in the background."""
        self.validator.validate_create_request(req)

        limit = self.config.resources.max_environments_per_user
        if user_id and limit > 0:
            owned = await self.store.count_environments_for_user(user_id)
            if owned >= limit:
                raise CapacityError(f"environment limit reached ({limit}) for user {user_id}")

        env_id = new_id("env")
        env = Environment(
            id=env_id,
            namespace=namespace_for(self.config.kubernetes.namespace_prefix, env_id),
            user_id=user_id,
            status=EnvironmentStatus.PENDING,
            **req.model_dump(),
        )
        await self.store.save_environment(env)
        await self.reconciler.event(env_id, "created", "Environment created", f"image: {env.image}")
        logger.info(
            "environment_created",
            environment_id=env_id,
            namespace=env.namespace,
            image=env.image,
            user_id=user_id,
        )

        self._spawn(self.reconciler.reconcile_pending(env.model_copy(deep=True)))
        return self._with_retries_left(env)

    async def get_environment(self, env_id: str) -> Environment:
        env = await self.store.get_environment(env_id)
        if env is None:
            raise NotFoundError("environment", env_id)
        return self._with_retries_left(env)

    async def list_environments(
        self,
        status: Optional[EnvironmentStatus] = None,
        label_selector: str = "",
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> ListEnvironmentsResponse:
        if limit <= 0:
            limit = DEFAULT_LIST_LIMIT
        limit = min(limit, MAX_LIST_LIMIT)
        offset = max(0, offset)
        requirements = parse_label_selector(label_selector) if label_selector else []

        matched = [
            env
            for env in await self.reconciler.load_all()
            if (status is None or env.status == status)
            and matches_label_selector(env.labels, requirements)
        ]
        page = [self._with_retries_left(e) for e in matched[offset : offset + limit]]
        return ListEnvironmentsResponse(
            environments=page, total=len(matched), limit=limit, offset=offset
        )

    async def update_environment(
        self, env_id: str, patch: UpdateEnvironmentRequest
    ) -> Environment:
        """Apply the fields present in patch; the merged spec must still be valid."""
        env = await self.get_environment(env_id)
        changes = patch.model_dump(exclude_unset=True, exclude_none=True)
        merged = Environment.model_validate({**env.model_dump(), **changes})

        spec_fields = CreateEnvironmentRequest.model_fields.keys()
        self.validator.validate_create_request(
            CreateEnvironmentRequest.model_validate(merged.model_dump(include=set(spec_fields)))
        )
        if changes:
            # Only the patched columns are written; status and reconciliation
            # bookkeeping may have moved on since the read above.
            values = merged.model_dump(mode="json", include=set(changes))
            if not await self.store.update_environment_spec(env_id, values):
                current = await self.get_environment(env_id)
                raise PreconditionError(
                    f"environment {env_id} is {current.status.value} and cannot be updated"
                )
            await self.reconciler.event(
                env_id, "updated", "Environment updated", ", ".join(sorted(changes))
            )
        updated = await self.get_environment(env_id)
        await self.pool.track(updated)
        return updated

    async def delete_environment(self, env_id: str, force: bool = False) -> None:
        """Tear down cluster resources, sessions and standby pods, then remove the record."""
        env = await self.get_environment(env_id)
        await self.store.set_environment_status(
            env_id, EnvironmentStatus.TERMINATING, from_statuses=LIVE_ENVIRONMENT_STATUSES
        )
        env.status = EnvironmentStatus.TERMINATING
        await self.reconciler.event(env_id, "terminating", "Environment deletion requested")

        for session in await self.sessions.for_environment(env_id):
            await session.close()
        await self.pool.drain(env_id)
        await self.reconciler.teardown(env, force=force)
        await self.store.delete_environment(env_id)
        logger.info("environment_deleted", environment_id=env_id, namespace=env.namespace)

    async def retry_reconciliation(self, env_id: str) -> Environment:
        env = await self.reconciler.retry(env_id)
        self._spawn(self.reconciler.reconcile_pending(env.model_copy(deep=True)))
        return self._with_retries_left(env)

    # =========================================================================
    # Commands
    # =========================================================================

    async def exec_sync(
        self, env_id: str, command: List[str], timeout: int = 0
    ) -> ExecResponse:
        """Run a command in the environment's primary pod and wait for it."""
        cfg = self.config.timeouts
        timeout = cfg.default_timeout if timeout <= 0 else min(timeout, cfg.max_timeout)
        self.validator.validate_exec_request(command, timeout)

        env = await self.get_environment(env_id)
        if env.status != EnvironmentStatus.RUNNING:
            raise PreconditionError(
                f"environment {env_id} is not running (status: {env.status.value})"
            )

        started = asyncio.get_running_loop().time()
        try:
            result = await asyncio.wait_for(
                run_in_pod(self.gateway, env.namespace, MAIN_POD_NAME, command),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExecutionError(env_id, f"command timed out after {timeout}s") from e
        duration_ms = int((asyncio.get_running_loop().time() - started) * 1000)
        return ExecResponse(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            duration_ms=duration_ms,
        )

    async def submit_execution(
        self, req: SubmitExecutionRequest, user_id: str = ""
    ) -> Execution:
        cap = self.config.timeouts.execution_max_timeout
        self.validator.validate_exec_request(req.command, min(req.timeout, cap), max_timeout=cap)
        return await self.executions.submit(
            req.environment_id, req.command, req.env, req.timeout, user_id
        )

    async def get_execution(self, exec_id: str) -> Execution:
        return await self.executions.get(exec_id)

    async def list_executions(
        self, environment_id: Optional[str] = None, limit: int = DEFAULT_LIST_LIMIT
    ) -> ExecutionListResponse:
        executions = await self.executions.list(environment_id, limit)
        return ExecutionListResponse(executions=executions, total=len(executions))

    async def cancel_execution(self, exec_id: str) -> Execution:
        return await self.executions.cancel(exec_id)

    # =========================================================================
    # Logs
    # =========================================================================

    async def get_logs(
        self,
        env_id: str,
        tail_lines: Optional[int] = None,
        include_timestamps: bool = False,
    ) -> LogsResponse:
        """Lifecycle events merged with the primary pod's log, oldest first."""
        env = await self.get_environment(env_id)

        entries: List[LogEntry] = []
        for event in await self.store.list_events(env_id, limit=EVENT_LOG_LIMIT):
            message = f"[{event.event_type}] {event.message}"
            if event.details:
                message = f"{message} - {event.details}"
            entries.append(
                LogEntry(timestamp=event.created_at, stream="reconciliation", message=message)
            )

        try:
            pod_logs = await self.gateway.get_pod_logs(
                env.namespace, MAIN_POD_NAME, tail_lines=tail_lines, timestamps=include_timestamps
            )
        except ClusterError as e:
            # Pending and failed environments have no pod yet.
            logger.debug("pod_logs_unavailable", environment_id=env_id, error=str(e))
            pod_logs = ""

        now = utcnow()
        for line in pod_logs.splitlines():
            if not line:
                continue
            ts = None
            if include_timestamps:
                ts, line = _split_timestamp(line)
            entries.append(LogEntry(timestamp=ts or now, stream="stdout", message=line))

        entries.sort(key=lambda e: e.timestamp)
        return LogsResponse(logs=entries)

    async def follow_logs(
        self,
        env_id: str,
        tail_lines: Optional[int] = None,
        include_timestamps: bool = False,
    ) -> AsyncIterator[str]:
        """Yield pod log lines until the caller stops or the environment is deleted."""
        env = await self.get_environment(env_id)
        iterator = self.gateway.stream_pod_logs(
            env.namespace,
            MAIN_POD_NAME,
            tail_lines=tail_lines,
            follow=True,
            timestamps=include_timestamps,
        ).__aiter__()

        next_line = asyncio.ensure_future(iterator.__anext__())
        try:
            while True:
                done, _ = await asyncio.wait({next_line}, timeout=LOG_FOLLOW_CHECK_SECONDS)
                if not done:
                    if await self.store.get_environment(env_id) is None:
                        logger.info("log_follow_environment_deleted", environment_id=env_id)
                        return
                    continue
                try:
                    line = next_line.result()
                except StopAsyncIteration:
                    return
                yield line.decode("utf-8", errors="replace").rstrip("\n")
                next_line = asyncio.ensure_future(iterator.__anext__())
        finally:
            next_line.cancel()
            await asyncio.gather(next_line, return_exceptions=True)
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    # =========================================================================
    # Sessions
    # =========================================================================

    async def open_session(self, env_id: str, connection: ClientConnection) -> Session:
        return await self.proxy.open(env_id, connection)

    async def run_session(self, session: Session) -> None:
        await self.proxy.run(session)

    async def list_sessions(self) -> List[str]:
        return await self.sessions.list_ids()

    async def close_session(self, session_id: str) -> None:
        if not await self.sessions.close_session(session_id):
            raise NotFoundError("session", session_id)

    # =========================================================================
    # Pool / health
    # =========================================================================

    def get_pool_status(self) -> List[PoolStatusEntry]:
        return self.pool.status()

    async def get_health_info(self) -> HealthResponse:
        connected = True
        version = ""
        capacity = ClusterCapacity()
        try:
            await self.gateway.health_check()
        except ClusterError as e:
            logger.warning("kubernetes_health_check_failed", error=str(e))
            connected = False

        if connected:
            try:
                version = await self.gateway.get_server_version()
            except ClusterError as e:
                logger.warning("kubernetes_version_lookup_failed", error=str(e))
            try:
                capacity = await self.gateway.get_cluster_capacity()
            except ClusterError as e:
                logger.warning("cluster_capacity_lookup_failed", error=str(e))

        return HealthResponse(
            status="healthy" if connected else "unhealthy",
            version=__version__,
            kubernetes=KubernetesHealthStatus(connected=connected, version=version),
            capacity=capacity,
        )
