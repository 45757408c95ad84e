"""
Sandbox reconciler.

A single periodic loop that drives each environment toward its desired state:
pending (or failed with retries left) environments get provisioned, running
environments get their primary pod recreated if it disappeared or are torn
down once their timeout elapses, and terminating environments get torn down.
Retry bookkeeping lives on the persisted environment record so it survives
restarts.
"""

import asyncio
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

import structlog

from .cluster import ClusterGateway
from .core import metrics
from .core.config import Config
from .core.errors import ClusterError, NotFoundError, PreconditionError
from .models import LIVE_ENVIRONMENT_STATUSES, Environment, EnvironmentStatus, utcnow
from .pods import MAIN_POD_NAME, environment_labels, main_pod_spec
from .pool import StandbyPoolManager
from .store import StateStore
from .validator import multiply_quantity

logger = structlog.get_logger(__name__)

# Main pod plus one ephemeral execution pod
QUOTA_MULTIPLIER = 2
LIST_PAGE_SIZE = 500

PERMANENT_ERROR_MARKERS = ("exceeded quota", "forbidden", "runtimeclass")


def is_permanent(err: Exception) -> bool:
    """Errors that will fail the same way on every retry."""
    if isinstance(err, ClusterError) and err.permanent:
        return True
    text = str(err).lower()
    return any(marker in text for marker in PERMANENT_ERROR_MARKERS)


def is_expired(env: Environment, now: datetime) -> bool:
    """A running environment outlives its timeout (seconds since it started)."""
    if env.timeout <= 0 or env.started_at is None:
        return False
    return now - env.started_at >= timedelta(seconds=env.timeout)


class Reconciler:
    """Provisions, repairs and tears down environments."""

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
        # One in-flight provisioning attempt per environment.
        self._in_flight: set = set()

    @property
    def max_retries(self) -> int:
        return max(0, self.config.reconciliation.max_retries)

    # =========================================================================
    # Loop
    # =========================================================================

    async def run(self, shutdown: asyncio.Event) -> None:
        """Tick every interval until shutdown is set. Ticks never overlap."""
        interval = self.config.reconciliation.interval_seconds
        logger.info("reconciler_started", interval_seconds=interval)
        while not shutdown.is_set():
            # Each step of a tick carries its own deadline, so a slow tick is
            # never cut short between an attempt and its outcome.
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("reconciliation_tick_failed", error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("reconciler_stopped")

    async def load_all(self) -> List[Environment]:
        envs: List[Environment] = []
        offset = 0
        while True:
            page = await self.store.list_environments(limit=LIST_PAGE_SIZE, offset=offset)
            envs.extend(page)
            if len(page) < LIST_PAGE_SIZE:
                return envs
            offset += LIST_PAGE_SIZE

    async def tick(self) -> None:
        envs = await self.load_all()

        counts = {s: 0 for s in EnvironmentStatus}
        for env in envs:
            counts[env.status] += 1
        for status, n in counts.items():
            metrics.environments_by_status.labels(status=status.value).set(n)

        now = utcnow()
        for env in envs:
            if env.status in (EnvironmentStatus.PENDING, EnvironmentStatus.FAILED):
                if env.reconciliation_retry_count >= self.max_retries:
                    continue  # needs an explicit retry
                await self.reconcile_pending(env)
            elif env.status == EnvironmentStatus.RUNNING:
                if is_expired(env, now):
                    await self.expire(env)
                else:
                    await self.reconcile_running(env)
            elif env.status == EnvironmentStatus.TERMINATING:
                # Left over from an interrupted delete.
                await self._terminate(env)

        if self.pool is not None:
            running = [e for e in await self.load_all() if e.status == EnvironmentStatus.RUNNING]
            await self.pool.sync(running)
            await self.pool.replenish()

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def reconcile_pending(self, env: Environment) -> Environment:
        """One provisioning attempt with retry bookkeeping and events."""
        if env.id in self._in_flight:
            return env
        self._in_flight.add(env.id)
        try:
            return await self._reconcile_pending(env)
        finally:
            self._in_flight.discard(env.id)

    async def _reconcile_pending(self, env: Environment) -> Environment:
        attempt = env.reconciliation_retry_count + 1
        await self.event(
            env.id,
            "reconciliation_start",
            "Reconciliation attempt started",
            f"attempt {attempt} of {self.max_retries}",
        )

        # Clear a stuck main pod so it can be recreated from the current spec.
        try:
            await self.gateway.delete_pod(env.namespace, MAIN_POD_NAME, force=True)
        except ClusterError as e:
            logger.debug("pre_reconcile_pod_delete_failed", environment_id=env.id, error=str(e))

        try:
            await asyncio.wait_for(
                self.provision(env), timeout=self.config.timeouts.startup_timeout
            )
        except asyncio.CancelledError:
            # Shutdown mid-attempt still counts against the retry budget.
            await asyncio.shield(
                self._record_failure(
                    env, ClusterError("provision", "interrupted before the environment started")
                )
            )
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                e = ClusterError("provision", "timed out waiting for environment to start")
            return await self._record_failure(env, e)

        # Another caller may have deleted the environment while it was provisioning;
        # the status guard keeps a terminating record from being revived.
        promoted = await self.store.set_environment_status(
            env.id,
            EnvironmentStatus.RUNNING,
            from_statuses=(EnvironmentStatus.PENDING, EnvironmentStatus.FAILED),
            started_at=utcnow(),
            reset_reconciliation=True,
        )
        current = await self.store.get_environment(env.id)
        if not promoted or current is None:
            return current or env

        env = current
        metrics.reconciliation_attempts_total.labels(outcome="success").inc()
        await self.event(env.id, "reconciliation_success", "Environment provisioned successfully")
        logger.info("environment_provisioned", environment_id=env.id, namespace=env.namespace)

        if self.pool is not None:
            await self.pool.track(env)
            self.pool.kick()
        return env

    async def _record_failure(self, env: Environment, err: Exception) -> Environment:
        now = utcnow()
        message = str(err)
        count = env.reconciliation_retry_count + 1
        fast_fail = self.config.reconciliation.fast_fail_permanent and is_permanent(err)
        if fast_fail:
            count = max(count, self.max_retries)
        count = min(count, self.max_retries)

        env.reconciliation_retry_count = count
        env.last_reconciliation_error = message
        env.last_reconciliation_at = now
        await self.store.update_reconciliation_state(env.id, count, message, now)
        metrics.reconciliation_attempts_total.labels(outcome="failure").inc()
        await self.event(env.id, "reconciliation_failure", "Reconciliation failed", message)
        logger.warning(
            "environment_provision_failed",
            environment_id=env.id,
            attempt=count,
            permanent=fast_fail,
            error=message,
        )

        if count >= self.max_retries:
            await self._set_status(
                env, EnvironmentStatus.FAILED, from_statuses=LIVE_ENVIRONMENT_STATUSES
            )
            metrics.reconciliation_attempts_total.labels(outcome="max_retries").inc()
            message = (
                "Permanent error; use retry after fixing the cause"
                if fast_fail
                else "Max reconciliation retries exceeded; use retry to try again"
            )
            await self.event(
                env.id, "reconciliation_max_retries", message, f"attempts: {count}"
            )
        return env

    async def provision(self, env: Environment) -> None:
        """Create namespace, quota, network policy and main pod; wait for running.

        Every step tolerates the resource already existing, so this is safe to
        re-run against a partly provisioned environment.
        """
        cfg = self.config
        await self.gateway.create_namespace(env.namespace, environment_labels(env))

        multiplier = QUOTA_MULTIPLIER
        if self.pool is not None:
            multiplier += self.pool.pool_size(env)
        cpu = env.resources.cpu or cfg.resources.default_cpu_limit
        memory = env.resources.memory or cfg.resources.default_memory_limit
        storage = env.resources.storage or cfg.resources.default_storage_limit
        await self.gateway.apply_resource_quota(
            env.namespace,
            multiply_quantity(cpu, multiplier),
            multiply_quantity(memory, multiplier),
            storage,
        )

        network_policy = env.isolation.network_policy if env.isolation else None
        await self.gateway.apply_network_policy(env.namespace, network_policy)

        await self.ensure_main_pod(env)

    async def ensure_main_pod(self, env: Environment) -> None:
        spec = main_pod_spec(env, self.config.kubernetes.runtime_class)
        if not spec.cpu:
            spec.cpu = self.config.resources.default_cpu_limit
        if not spec.memory:
            spec.memory = self.config.resources.default_memory_limit
        await self.gateway.create_pod(spec)
        await self.gateway.wait_for_pod_running(
            env.namespace, MAIN_POD_NAME, timeout=self.config.timeouts.startup_timeout
        )

    async def reconcile_running(self, env: Environment) -> None:
        """Recreate the main pod of a running environment if it vanished."""
        try:
            pod = await self.gateway.get_pod(env.namespace, MAIN_POD_NAME)
        except ClusterError as e:
            logger.warning("main_pod_check_failed", environment_id=env.id, error=str(e))
            return
        if pod is not None:
            return

        await self.event(env.id, "reconciliation_pod_missing", "Main pod not found; recreating")
        try:
            await self.ensure_main_pod(env)
        except (ClusterError, asyncio.TimeoutError) as e:
            metrics.reconciliation_attempts_total.labels(outcome="failure").inc()
            await self.event(
                env.id, "reconciliation_failure", "Failed to recreate main pod", str(e)
            )
            return
        metrics.reconciliation_attempts_total.labels(outcome="pod_recreated").inc()
        await self.event(env.id, "reconciliation_success", "Main pod recreated successfully")

    # =========================================================================
    # Retry / teardown
    # =========================================================================

    async def retry(self, env_id: str) -> Environment:
        """Reset retry state, put the environment back in pending and try once."""
        env = await self.store.get_environment(env_id)
        if env is None:
            raise NotFoundError("environment", env_id)
        if env.status in (EnvironmentStatus.TERMINATING, EnvironmentStatus.TERMINATED):
            raise PreconditionError(
                f"environment {env_id} is {env.status.value} and cannot be retried"
            )

        await self.store.update_reconciliation_state(env_id, 0, None, None)
        if env.status == EnvironmentStatus.FAILED:
            await self.store.set_environment_status(
                env_id, EnvironmentStatus.PENDING, from_statuses=(EnvironmentStatus.FAILED,)
            )
        env = await self.store.get_environment(env_id)
        if env is None:
            raise NotFoundError("environment", env_id)
        await self.event(env_id, "reconciliation_retry", "Manual retry requested")
        logger.info("reconciliation_retry_requested", environment_id=env_id)
        return env

    async def expire(self, env: Environment) -> None:
        """Tear down a running environment whose timeout has elapsed."""
        logger.info("environment_expired", environment_id=env.id, timeout=env.timeout)
        await self.event(
            env.id, "expired", "Environment timeout reached", f"timeout: {env.timeout}s"
        )
        await self._set_status(
            env, EnvironmentStatus.TERMINATING, from_statuses=LIVE_ENVIRONMENT_STATUSES
        )
        await self._terminate(env)

    async def _terminate(self, env: Environment) -> None:
        await self.teardown(env)
        if self.pool is not None:
            await self.pool.drain(env.id)
        await self._set_status(
            env, EnvironmentStatus.TERMINATED, from_statuses=(EnvironmentStatus.TERMINATING,)
        )

    async def teardown(self, env: Environment, force: bool = False) -> None:
        """Delete pod, network policy, quota and namespace. Missing pieces are fine."""
        timeout = self.config.timeouts.cleanup_timeout
        steps = (
            ("delete_pod", lambda: self.gateway.delete_pod(
                env.namespace, MAIN_POD_NAME, force=force, timeout=timeout
            )),
            ("delete_network_policy", lambda: self.gateway.delete_network_policy(
                env.namespace, timeout=timeout
            )),
            ("delete_resource_quota", lambda: self.gateway.delete_resource_quota(
                env.namespace, timeout=timeout
            )),
            ("delete_namespace", lambda: self.gateway.delete_namespace(
                env.namespace, timeout=timeout
            )),
        )
        for name, step in steps:
            try:
                await step()
            except ClusterError as e:
                logger.warning(
                    "teardown_step_failed", environment_id=env.id, step=name, error=str(e)
                )
        logger.info("environment_torn_down", environment_id=env.id, namespace=env.namespace)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _set_status(
        self,
        env: Environment,
        status: EnvironmentStatus,
        from_statuses: Optional[Sequence[EnvironmentStatus]] = None,
    ) -> bool:
        """Status-only write, so a stale copy never rolls back other fields."""
        changed = await self.store.set_environment_status(
            env.id, status, from_statuses=from_statuses
        )
        if changed:
            env.status = status
        return changed

    async def event(
        self, env_id: str, event_type: str, message: str, details: str = ""
    ) -> None:
        """Persist a lifecycle event; failures are logged, never raised."""
        try:
            await self.store.append_event(env_id, event_type, message, details)
        except Exception as e:
            logger.warning(
                "environment_event_save_failed",
                environment_id=env_id,
                event_type=event_type,
                error=str(e),
            )
