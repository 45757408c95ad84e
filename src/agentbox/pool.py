"""
Standby pod pool.

Keeps a warm set of idle pods per (environment, image, cpu, memory) key so
commands can start without waiting for scheduling and image pulls. Standby
pods are single-use: a claimed pod is deleted after the run and the pool is
topped up again.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, Iterable, List, NamedTuple, Optional, Set

import structlog

from .cluster import ClusterGateway
from .cluster.gateway import POD_RUNNING
from .core import metrics
from .core.config import Config
from .core.errors import ClusterError
from .models import Environment, EnvironmentStatus, PoolPolicy, PoolStatusEntry, utcnow
from .pods import new_id, standby_pod_spec

logger = structlog.get_logger(__name__)


class PoolKey(NamedTuple):
    environment_id: str
    image: str
    cpu: str
    memory: str


@dataclass
class StandbyPod:
    namespace: str
    name: str
    key: PoolKey
    ready_since: datetime = field(default_factory=utcnow)


@dataclass
class _Pool:
    key: PoolKey
    environment: Environment
    size: int
    min_ready: Optional[int] = None
    ready: Deque[StandbyPod] = field(default_factory=deque)
    pending: int = 0

    def wanted(self) -> int:
        """How many pods to start now to get back to the configured size."""
        have = len(self.ready) + self.pending
        if self.min_ready is not None and have >= self.min_ready:
            return 0
        return max(0, self.size - have)


class StandbyPoolManager:
    """Owns every standby pool; claim is atomic under the pool lock."""

    def __init__(self, gateway: ClusterGateway, config: Config):
        self.gateway = gateway
        self.config = config
        self._pools: Dict[PoolKey, _Pool] = {}
        self._lock = asyncio.Lock()
        # Serializes replenish passes so two triggers never double-create.
        self._replenish_lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    def effective_policy(self, env: Environment) -> Optional[PoolPolicy]:
        """The environment's pool policy, or the global default when enabled."""
        if env.pool is not None:
            return env.pool if env.pool.enabled else None
        if self.config.pool.enabled:
            return PoolPolicy(enabled=True, size=self.config.pool.size)
        return None

    def pool_size(self, env: Environment) -> int:
        policy = self.effective_policy(env)
        if policy is None:
            return 0
        return policy.size if policy.size > 0 else self.config.pool.size

    def key_for(self, env: Environment) -> PoolKey:
        return PoolKey(
            environment_id=env.id,
            image=env.image,
            cpu=env.resources.cpu or self.config.pool.default_cpu,
            memory=env.resources.memory or self.config.pool.default_memory,
        )

    # -------------------------------------------------------------------------
    # Pool membership
    # -------------------------------------------------------------------------

    async def track(self, env: Environment) -> None:
        """Add or refresh the pool for a running environment."""
        if env.status != EnvironmentStatus.RUNNING:
            return
        size = self.pool_size(env)
        key = self.key_for(env)
        stale: List[StandbyPod] = []
        async with self._lock:
            # A spec change (image, resources) retires the old key's pods.
            for other in [k for k in self._pools if k.environment_id == env.id and k != key]:
                stale.extend(self._pools.pop(other).ready)
                metrics.standby_pods_ready.labels(
                    environment_id=other.environment_id, image=other.image
                ).set(0)
            if size <= 0:
                pool = self._pools.pop(key, None)
                if pool is not None:
                    stale.extend(pool.ready)
            else:
                policy = self.effective_policy(env)
                pool = self._pools.get(key)
                if pool is None:
                    self._pools[key] = _Pool(
                        key=key,
                        environment=env,
                        size=size,
                        min_ready=policy.min_ready if policy else None,
                    )
                else:
                    pool.environment = env
                    pool.size = size
                    pool.min_ready = policy.min_ready if policy else None
                    while len(pool.ready) > size:
                        stale.append(pool.ready.pop())
        await self._delete_pods(stale)

    async def sync(self, environments: Iterable[Environment]) -> None:
        """Track every running environment and drop pools for the rest."""
        running = {e.id: e for e in environments if e.status == EnvironmentStatus.RUNNING}
        async with self._lock:
            gone = {k.environment_id for k in self._pools if k.environment_id not in running}
        for env_id in gone:
            await self.drain(env_id)
        for env in running.values():
            await self.track(env)

    async def drain(self, environment_id: str) -> int:
        """Forget an environment's pools and delete their idle pods."""
        async with self._lock:
            keys = [k for k in self._pools if k.environment_id == environment_id]
            pods: List[StandbyPod] = []
            for key in keys:
                pods.extend(self._pools.pop(key).ready)
                metrics.standby_pods_ready.labels(
                    environment_id=key.environment_id, image=key.image
                ).set(0)
        await self._delete_pods(pods)
        if pods:
            logger.info("standby_pool_drained", environment_id=environment_id, pods=len(pods))
        return len(pods)

    async def drain_all(self) -> None:
        async with self._lock:
            env_ids = {k.environment_id for k in self._pools}
        for env_id in env_ids:
            await self.drain(env_id)

    # -------------------------------------------------------------------------
    # Claim / release
    # -------------------------------------------------------------------------

    async def claim(self, env: Environment) -> Optional[StandbyPod]:
        """Atomically take one idle pod for the environment, or None."""
        key = self.key_for(env)
        async with self._lock:
            pool = self._pools.get(key)
            if pool is None or not pool.ready:
                return None
            pod = pool.ready.popleft()
            self._set_ready_gauge(pool)
        logger.info(
            "standby_pod_claimed",
            environment_id=env.id,
            pod=pod.name,
            remaining=len(pool.ready),
        )
        self.kick()
        return pod

    async def release(self, pod: StandbyPod) -> None:
        """Destroy a used standby pod and top its pool up again."""
        await self._delete_pods([pod])
        self.kick()

    def kick(self) -> None:
        """Schedule a replenish pass without waiting for it."""
        task = asyncio.create_task(self.replenish())
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("standby_replenish_failed", error=str(task.exception()))

    # -------------------------------------------------------------------------
    # Replenish / prune
    # -------------------------------------------------------------------------

    async def replenish(self) -> None:
        async with self._replenish_lock:
            plans = []
            async with self._lock:
                for pool in self._pools.values():
                    n = pool.wanted()
                    if n > 0:
                        pool.pending += n
                        plans.append((pool.key, pool.environment, n))
            creations = [
                self._create_standby(key, env)
                for key, env, n in plans
                for _ in range(n)
            ]
            if creations:
                await asyncio.gather(*creations)

    async def _create_standby(self, key: PoolKey, env: Environment) -> None:
        name = new_id("standby")
        spec = standby_pod_spec(
            env, name, key.cpu, key.memory, self.config.kubernetes.runtime_class
        )
        try:
            await self.gateway.create_pod(spec)
            await self.gateway.wait_for_pod_running(
                env.namespace, name, timeout=self.config.timeouts.startup_timeout
            )
        except (ClusterError, asyncio.TimeoutError) as e:
            logger.warning(
                "standby_pod_create_failed",
                environment_id=env.id,
                pod=name,
                error=str(e),
            )
            async with self._lock:
                pool = self._pools.get(key)
                if pool is not None:
                    pool.pending = max(0, pool.pending - 1)
            await self._delete_pods([StandbyPod(namespace=env.namespace, name=name, key=key)])
            return

        pod = StandbyPod(namespace=env.namespace, name=name, key=key)
        orphan = False
        async with self._lock:
            pool = self._pools.get(key)
            if pool is None:
                orphan = True
            else:
                pool.pending = max(0, pool.pending - 1)
                pool.ready.append(pod)
                self._set_ready_gauge(pool)
        if orphan:
            # Pool was drained while this pod was starting.
            await self._delete_pods([pod])
        else:
            logger.info("standby_pod_ready", environment_id=env.id, pod=name)

    async def prune(self) -> None:
        """Delete idle pods that are gone or no longer running."""
        async with self._lock:
            candidates = [p for pool in self._pools.values() for p in pool.ready]

        dead: List[StandbyPod] = []
        for pod in candidates:
            try:
                info = await self.gateway.get_pod(pod.namespace, pod.name)
            except ClusterError as e:
                logger.warning("standby_liveness_check_failed", pod=pod.name, error=str(e))
                continue
            if info is None or info.phase != POD_RUNNING:
                dead.append(pod)

        if not dead:
            return
        async with self._lock:
            removed = []
            for pod in dead:
                pool = self._pools.get(pod.key)
                if pool is not None and pod in pool.ready:
                    pool.ready.remove(pod)
                    self._set_ready_gauge(pool)
                    removed.append(pod)
        for pod in removed:
            logger.info("standby_pod_pruned", pod=pod.name, namespace=pod.namespace)
        await self._delete_pods(removed)

    async def run(self, shutdown: asyncio.Event) -> None:
        """Periodic prune + replenish until shutdown is set."""
        interval = self.config.pool.interval_seconds
        logger.info("standby_pool_loop_started", interval_seconds=interval)
        while not shutdown.is_set():
            try:
                await self.prune()
                await self.replenish()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("standby_pool_tick_failed", error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("standby_pool_loop_stopped")

    async def stop(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.drain_all()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def status(self) -> List[PoolStatusEntry]:
        return [
            PoolStatusEntry(
                environment_id=pool.key.environment_id,
                image=pool.key.image,
                configured_size=pool.size,
                ready=len(pool.ready),
                pending=pool.pending,
            )
            for pool in self._pools.values()
        ]

    async def _delete_pods(self, pods: List[StandbyPod]) -> None:
        for pod in pods:
            try:
                await self.gateway.delete_pod(pod.namespace, pod.name, force=True)
            except ClusterError as e:
                logger.warning("standby_pod_delete_failed", pod=pod.name, error=str(e))

    @staticmethod
    def _set_ready_gauge(pool: _Pool) -> None:
        metrics.standby_pods_ready.labels(
            environment_id=pool.key.environment_id, image=pool.key.image
        ).set(len(pool.ready))
