"""Tests for the environment reconciler."""

import asyncio
from datetime import timedelta

import pytest
from agentbox.core.config import Config
from agentbox.core.errors import ClusterError, NotFoundError, PreconditionError
from agentbox.models import (
    Environment,
    EnvironmentStatus,
    IsolationPolicy,
    PoolPolicy,
    utcnow,
)
from agentbox.pool import StandbyPoolManager
from agentbox.reconciler import Reconciler, is_expired, is_permanent
from agentbox.store import StateStore


def _reconciler(store, gateway, config, with_pool=False) -> Reconciler:
    pool = StandbyPoolManager(gateway, config) if with_pool else None
    return Reconciler(store, gateway, config, pool)


async def _event_types(store: StateStore, env_id: str):
    return [e.event_type for e in await store.list_events(env_id)]


async def _until(predicate, timeout: float = 5.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


class TestIsPermanent:
    def test_flagged_cluster_error(self):
        assert is_permanent(ClusterError("create_pod", "bad spec", status=422, permanent=True))

    @pytest.mark.parametrize(
        "message",
        [
            "exceeded quota: environment-quota",
            "pods is Forbidden: user cannot create",
            'RuntimeClass "kata" not found',
        ],
    )
    def test_message_markers(self, message):
        assert is_permanent(ClusterError("create_pod", message, status=500))

    def test_transient(self):
        assert not is_permanent(ClusterError("create_pod", "connection reset", status=503))


class TestProvisioning:
    @pytest.mark.asyncio
    async def test_pending_becomes_running(self, store, gateway, config, make_environment):
        env = await make_environment(status=EnvironmentStatus.PENDING)
        reconciler = _reconciler(store, gateway, config)

        await reconciler.tick()

        loaded = await store.get_environment(env.id)
        assert loaded.status == EnvironmentStatus.RUNNING
        assert loaded.started_at is not None
        assert loaded.reconciliation_retry_count == 0
        assert env.namespace in gateway.namespaces
        assert gateway.namespaces[env.namespace]["env-id"] == env.id
        assert gateway.pods[(env.namespace, "main")].spec.runtime_class == "gvisor"
        types = await _event_types(store, env.id)
        assert types == ["reconciliation_start", "reconciliation_success"]

    @pytest.mark.asyncio
    async def test_quota_is_doubled(self, store, gateway, config, make_environment):
        env = await make_environment(status=EnvironmentStatus.PENDING)
        await _reconciler(store, gateway, config).tick()
        assert gateway.quotas[env.namespace] == ("1000m", "1024Mi", "1Gi")

    @pytest.mark.asyncio
    async def test_quota_includes_standby_pool(self, store, gateway, config, make_environment):
        env = await make_environment(
            status=EnvironmentStatus.PENDING, pool=PoolPolicy(enabled=True, size=2)
        )
        await _reconciler(store, gateway, config, with_pool=True).tick()
        assert gateway.quotas[env.namespace] == ("2000m", "2048Mi", "1Gi")

    @pytest.mark.asyncio
    async def test_isolation_runtime_class_wins(self, store, gateway, config, make_environment):
        env = await make_environment(
            status=EnvironmentStatus.PENDING,
            isolation=IsolationPolicy(runtime_class="kata"),
        )
        await _reconciler(store, gateway, config).tick()
        assert gateway.pods[(env.namespace, "main")].spec.runtime_class == "kata"

    @pytest.mark.asyncio
    async def test_rerun_against_existing_resources(
        self, store, gateway, config, make_environment
    ):
        """Provisioning is safe to repeat once the namespace and pod exist."""
        env = await make_environment(status=EnvironmentStatus.PENDING)
        reconciler = _reconciler(store, gateway, config)
        await reconciler.provision(env)
        await reconciler.provision(env)
        assert gateway.pods[(env.namespace, "main")].phase == "Running"

    @pytest.mark.asyncio
    async def test_deleted_during_provisioning(self, store, gateway, config, make_environment):
        env = await make_environment(status=EnvironmentStatus.PENDING)
        reconciler = _reconciler(store, gateway, config)
        await store.delete_environment(env.id)

        await reconciler.reconcile_pending(env)

        assert await store.get_environment(env.id) is None


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failures_then_failed(
        self, store, gateway, config, make_environment
    ):
        env = await make_environment(status=EnvironmentStatus.PENDING)
        gateway.fail_always(
            "create_namespace", ClusterError("create_namespace", "connection reset", status=503)
        )
        reconciler = _reconciler(store, gateway, config)

        for expected in (1, 2):
            await reconciler.tick()
            loaded = await store.get_environment(env.id)
            assert loaded.status == EnvironmentStatus.PENDING
            assert loaded.reconciliation_retry_count == expected
            assert "connection reset" in loaded.last_reconciliation_error

        await reconciler.tick()
        loaded = await store.get_environment(env.id)
        assert loaded.status == EnvironmentStatus.FAILED
        assert loaded.reconciliation_retry_count == config.reconciliation.max_retries

        # Exhausted: further ticks leave it alone.
        attempts = gateway.called("create_namespace")
        await reconciler.tick()
        assert gateway.called("create_namespace") == attempts
        assert (await store.get_environment(env.id)).reconciliation_retry_count == 3

        types = await _event_types(store, env.id)
        assert types.count("reconciliation_failure") == 3
        assert types[-1] == "reconciliation_max_retries"

    @pytest.mark.asyncio
    async def test_permanent_error_fails_fast(self, store, gateway, config, make_environment):
        env = await make_environment(status=EnvironmentStatus.PENDING)
        gateway.fail(
            "create_pod",
            ClusterError("create_pod", 'runtimeclass "gvisor" not found', status=403),
        )

        await _reconciler(store, gateway, config).tick()

        loaded = await store.get_environment(env.id)
        assert loaded.status == EnvironmentStatus.FAILED
        assert loaded.reconciliation_retry_count == config.reconciliation.max_retries

    @pytest.mark.asyncio
    async def test_fast_fail_can_be_disabled(self, store, gateway, make_environment):
        config = Config.from_mapping(
            {
                "reconciliation": {"max_retries": 3, "fast_fail_permanent": False},
                "timeouts": {"startup_timeout": 5, "cleanup_timeout": 2},
            }
        )
        env = await make_environment(status=EnvironmentStatus.PENDING)
        gateway.fail("create_pod", ClusterError("create_pod", "forbidden", status=403))

        await _reconciler(store, gateway, config).tick()

        loaded = await store.get_environment(env.id)
        assert loaded.status == EnvironmentStatus.PENDING
        assert loaded.reconciliation_retry_count == 1

    @pytest.mark.asyncio
    async def test_retry_resets_and_recovers(self, store, gateway, config, make_environment):
        env = await make_environment(status=EnvironmentStatus.PENDING)
        gateway.fail("create_pod", ClusterError("create_pod", "forbidden", status=403))
        reconciler = _reconciler(store, gateway, config)
        await reconciler.tick()
        assert (await store.get_environment(env.id)).status == EnvironmentStatus.FAILED

        retried = await reconciler.retry(env.id)
        assert retried.status == EnvironmentStatus.PENDING
        assert retried.reconciliation_retry_count == 0
        assert retried.last_reconciliation_error is None

        await reconciler.reconcile_pending(retried)
        loaded = await store.get_environment(env.id)
        assert loaded.status == EnvironmentStatus.RUNNING
        assert "reconciliation_retry" in await _event_types(store, env.id)

    @pytest.mark.asyncio
    async def test_retry_unknown(self, store, gateway, config):
        with pytest.raises(NotFoundError):
            await _reconciler(store, gateway, config).retry("env-missing")

    @pytest.mark.asyncio
    async def test_retry_terminating(self, store, gateway, config, make_environment):
        env = await make_environment(status=EnvironmentStatus.TERMINATING)
        with pytest.raises(PreconditionError):
            await _reconciler(store, gateway, config).retry(env.id)

    @pytest.mark.asyncio
    async def test_failure_never_overwrites_terminating(
        self, store, gateway, config, make_environment
    ):
        env = await make_environment(status=EnvironmentStatus.PENDING)
        reconciler = _reconciler(store, gateway, config)
        terminating = env.model_copy(update={"status": EnvironmentStatus.TERMINATING})
        await store.save_environment(terminating)

        gateway.fail("create_pod", ClusterError("create_pod", "forbidden", status=403))
        await reconciler.reconcile_pending(env)

        assert (await store.get_environment(env.id)).status == EnvironmentStatus.TERMINATING

    @pytest.mark.asyncio
    async def test_success_never_revives_terminating(
        self, store, gateway, config, make_environment
    ):
        env = await make_environment(status=EnvironmentStatus.PENDING)
        gateway.start_gate = asyncio.Event()
        attempt = asyncio.create_task(_reconciler(store, gateway, config).reconcile_pending(env))
        await _until(lambda: gateway.called("wait_for_pod_running") == 1)

        await store.set_environment_status(env.id, EnvironmentStatus.TERMINATING)
        gateway.start_gate.set()
        await attempt

        loaded = await store.get_environment(env.id)
        assert loaded.status == EnvironmentStatus.TERMINATING
        assert loaded.started_at is None
        assert "reconciliation_success" not in await _event_types(store, env.id)


class TestRunning:
    @pytest.mark.asyncio
    async def test_missing_main_pod_is_recreated(
        self, store, gateway, config, make_environment
    ):
        env = await make_environment()
        del gateway.pods[(env.namespace, "main")]

        await _reconciler(store, gateway, config).tick()

        assert (env.namespace, "main") in gateway.pods
        types = await _event_types(store, env.id)
        assert types == ["reconciliation_pod_missing", "reconciliation_success"]

    @pytest.mark.asyncio
    async def test_healthy_pod_untouched(self, store, gateway, config, make_environment):
        env = await make_environment()
        await _reconciler(store, gateway, config).tick()
        assert gateway.called("create_pod") == 0
        assert await _event_types(store, env.id) == []

    @pytest.mark.asyncio
    async def test_recreate_failure_is_recorded(self, store, gateway, config, make_environment):
        env = await make_environment()
        del gateway.pods[(env.namespace, "main")]
        gateway.fail("create_pod")

        await _reconciler(store, gateway, config).tick()

        assert (await store.get_environment(env.id)).status == EnvironmentStatus.RUNNING
        assert "reconciliation_failure" in await _event_types(store, env.id)


class TestTeardown:
    @pytest.mark.asyncio
    async def test_terminating_is_torn_down(self, store, gateway, config, make_environment):
        env = await make_environment()
        gateway.network_policies[env.namespace] = None
        gateway.quotas[env.namespace] = ("1", "1Gi", "1Gi")
        await store.save_environment(
            env.model_copy(update={"status": EnvironmentStatus.TERMINATING})
        )

        await _reconciler(store, gateway, config).tick()

        assert env.namespace not in gateway.namespaces
        assert env.namespace not in gateway.quotas
        assert env.namespace not in gateway.network_policies
        assert (await store.get_environment(env.id)).status == EnvironmentStatus.TERMINATED

    @pytest.mark.asyncio
    async def test_teardown_continues_past_failures(
        self, store, gateway, config, make_environment
    ):
        env = await make_environment()
        gateway.fail("delete_network_policy")

        await _reconciler(store, gateway, config).teardown(env)

        assert env.namespace not in gateway.namespaces
        assert gateway.called("delete_resource_quota") == 1


class TestExpiry:
    def test_is_expired(self):
        now = utcnow()
        env = Environment(
            id="env-1",
            name="sb",
            image="img",
            namespace="ns",
            timeout=60,
            started_at=now - timedelta(seconds=61),
        )
        assert is_expired(env, now)
        assert not is_expired(env.model_copy(update={"timeout": 0}), now)
        assert not is_expired(env.model_copy(update={"started_at": None}), now)
        assert not is_expired(env.model_copy(update={"started_at": now}), now)

    @pytest.mark.asyncio
    async def test_expired_environment_is_torn_down(
        self, store, gateway, config, make_environment
    ):
        env = await make_environment(timeout=30, started_at=utcnow() - timedelta(minutes=5))

        await _reconciler(store, gateway, config).tick()

        assert env.namespace not in gateway.namespaces
        assert (await store.get_environment(env.id)).status == EnvironmentStatus.TERMINATED
        assert "expired" in await _event_types(store, env.id)

    @pytest.mark.asyncio
    async def test_unexpired_environment_is_kept(
        self, store, gateway, config, make_environment
    ):
        env = await make_environment(timeout=3600, started_at=utcnow())

        await _reconciler(store, gateway, config).tick()

        assert (env.namespace, "main") in gateway.pods
        assert (await store.get_environment(env.id)).status == EnvironmentStatus.RUNNING


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_ticks_until_shutdown(self, store, gateway, config, make_environment):
        env = await make_environment(status=EnvironmentStatus.PENDING)
        shutdown = asyncio.Event()
        loop = asyncio.create_task(_reconciler(store, gateway, config).run(shutdown))

        await _until(lambda: gateway.called("wait_for_pod_running") == 1)
        shutdown.set()
        await asyncio.wait_for(loop, timeout=5)

        assert (await store.get_environment(env.id)).status == EnvironmentStatus.RUNNING
        assert await _event_types(store, env.id) == [
            "reconciliation_start",
            "reconciliation_success",
        ]

    @pytest.mark.asyncio
    async def test_slow_provision_is_not_cut_short(
        self, store, gateway, config, make_environment
    ):
        first = await make_environment("env-slow0001", status=EnvironmentStatus.PENDING)
        second = await make_environment("env-slow0002", status=EnvironmentStatus.PENDING)
        gateway.start_gate = asyncio.Event()
        shutdown = asyncio.Event()
        loop = asyncio.create_task(_reconciler(store, gateway, config).run(shutdown))

        await _until(lambda: gateway.called("wait_for_pod_running") == 1)
        await asyncio.sleep(0.2)
        gateway.start_gate.set()
        await _until(lambda: gateway.called("wait_for_pod_running") == 2)
        shutdown.set()
        await asyncio.wait_for(loop, timeout=5)

        for env in (first, second):
            assert (await store.get_environment(env.id)).status == EnvironmentStatus.RUNNING

    @pytest.mark.asyncio
    async def test_interrupted_attempt_is_recorded(
        self, store, gateway, config, make_environment
    ):
        env = await make_environment(status=EnvironmentStatus.PENDING)
        gateway.start_gate = asyncio.Event()
        loop = asyncio.create_task(_reconciler(store, gateway, config).run(asyncio.Event()))
        await _until(lambda: gateway.called("wait_for_pod_running") == 1)

        loop.cancel()
        with pytest.raises(asyncio.CancelledError):
            await loop

        loaded = await store.get_environment(env.id)
        assert loaded.status == EnvironmentStatus.PENDING
        assert loaded.reconciliation_retry_count == 1
        assert "interrupted" in loaded.last_reconciliation_error
        assert await _event_types(store, env.id) == [
            "reconciliation_start",
            "reconciliation_failure",
        ]
