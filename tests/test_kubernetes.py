"""Tests for the kubernetes-backed gateway: manifests and API error mapping."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from agentbox.cluster import BytePipe, PodSpec
from agentbox.cluster import kubernetes as kube
from agentbox.cluster.kubernetes import (
    KubernetesGateway,
    _pod_info,
    build_network_policy,
    build_pod,
)
from agentbox.core.errors import ClusterError
from agentbox.models import NetworkPolicyConfig, SecurityContextConfig, Toleration
from kubernetes.client.rest import ApiException


@pytest.fixture
def k8s(monkeypatch) -> KubernetesGateway:
    monkeypatch.setattr(kube.config, "load_incluster_config", lambda: None)
    for api in ("CoreV1Api", "NetworkingV1Api", "VersionApi"):
        monkeypatch.setattr(kube.client, api, MagicMock)
    return KubernetesGateway(api_timeout=5)


def _spec(**overrides) -> PodSpec:
    fields = dict(
        name="main",
        namespace="agentbox-env-1",
        image="python:3.11-slim",
        command=["/bin/sh", "-c", "sleep infinity"],
        cpu="500m",
        memory="512Mi",
    )
    fields.update(overrides)
    return PodSpec(**fields)


class TestBuildPod:
    def test_requests_equal_limits(self):
        pod = build_pod(_spec(storage="1Gi"))
        resources = pod.spec.containers[0].resources
        assert resources.requests == resources.limits
        assert resources.limits == {
            "cpu": "500m",
            "memory": "512Mi",
            "ephemeral-storage": "1Gi",
        }

    def test_single_container_never_restarts(self):
        pod = build_pod(_spec(env={"A": "1"}, labels={"type": "standby"}))
        assert pod.spec.restart_policy == "Never"
        assert [c.name for c in pod.spec.containers] == ["main"]
        assert pod.spec.containers[0].env[0].name == "A"
        assert pod.metadata.labels == {"type": "standby"}

    def test_optional_fields_omitted(self):
        pod = build_pod(_spec())
        assert pod.spec.runtime_class_name is None
        assert pod.spec.node_selector is None
        assert pod.spec.tolerations is None
        assert pod.spec.containers[0].security_context is None

    def test_isolation_fields(self):
        pod = build_pod(
            _spec(
                runtime_class="kata",
                node_selector={"pool": "sandbox"},
                tolerations=[Toleration(key="sandbox", operator="Exists", effect="NoSchedule")],
                security_context=SecurityContextConfig(run_as_user=1000, run_as_non_root=True),
            )
        )
        assert pod.spec.runtime_class_name == "kata"
        assert pod.spec.node_selector == {"pool": "sandbox"}
        assert pod.spec.tolerations[0].operator == "Exists"
        assert pod.spec.tolerations[0].value is None
        assert pod.spec.containers[0].security_context.run_as_user == 1000


class TestBuildNetworkPolicy:
    def test_default_denies_all_but_dns(self):
        policy = build_network_policy("ns")
        assert policy.metadata.name == "isolation-policy"
        assert policy.spec.policy_types == ["Ingress", "Egress"]
        assert policy.spec.ingress == []
        [dns] = policy.spec.egress
        assert {p.port for p in dns.ports} == {53}
        assert dns.to[0].namespace_selector.match_labels == {
            "kubernetes.io/metadata.name": "kube-system"
        }

    def test_openings(self):
        policy = build_network_policy(
            "ns",
            NetworkPolicyConfig(
                allow_internet=True,
                allowed_egress_cidrs=["203.0.113.0/24"],
                allowed_ingress_ports=[8080],
                allow_cluster_internal=True,
            ),
        )
        cidrs = [
            rule.to[0].ip_block.cidr
            for rule in policy.spec.egress
            if rule.to and rule.to[0].ip_block is not None
        ]
        assert cidrs == ["0.0.0.0/0", "203.0.113.0/24"]
        internet = next(r for r in policy.spec.egress if r.to and r.to[0].ip_block is not None)
        assert "10.0.0.0/8" in internet.to[0].ip_block._except
        ports = [p.port for rule in policy.spec.ingress for p in (rule.ports or [])]
        assert ports == [8080]


class TestPodInfo:
    def test_terminated_container(self):
        terminated = SimpleNamespace(exit_code=2, reason="Error")
        pod = SimpleNamespace(
            metadata=SimpleNamespace(name="exec-1", namespace="ns", labels={"type": "ephemeral"}),
            status=SimpleNamespace(
                phase="Failed",
                container_statuses=[
                    SimpleNamespace(state=SimpleNamespace(terminated=terminated, waiting=None))
                ],
            ),
        )
        info = _pod_info(pod)
        assert info.phase == "Failed"
        assert info.exit_code == 2
        assert info.reason == "Error"
        assert info.labels == {"type": "ephemeral"}

    def test_no_status_yet(self):
        pod = SimpleNamespace(
            metadata=SimpleNamespace(name="main", namespace="ns", labels=None), status=None
        )
        info = _pod_info(pod)
        assert info.phase == ""
        assert info.exit_code is None


class TestApiErrors:
    @pytest.mark.asyncio
    async def test_create_tolerates_conflict(self, k8s):
        k8s.core_v1.create_namespace.side_effect = ApiException(status=409, reason="Conflict")
        await k8s.create_namespace("ns", {"app": "agentbox"})
        k8s.core_v1.create_namespace.assert_called_once()

    @pytest.mark.asyncio
    async def test_delete_tolerates_missing(self, k8s):
        k8s.core_v1.delete_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")
        await k8s.delete_pod("ns", "main", force=True)
        _, kwargs = k8s.core_v1.delete_namespaced_pod.call_args
        assert kwargs["grace_period_seconds"] == 0
        assert kwargs["_request_timeout"] == 5

    @pytest.mark.asyncio
    async def test_missing_pod_is_none(self, k8s):
        k8s.core_v1.read_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")
        assert await k8s.get_pod("ns", "main") is None

    @pytest.mark.asyncio
    async def test_forbidden_is_permanent(self, k8s):
        k8s.core_v1.create_namespace.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(ClusterError) as exc:
            await k8s.create_namespace("ns", {})
        assert exc.value.status == 403
        assert exc.value.permanent is True

    @pytest.mark.asyncio
    async def test_transport_failure_is_transient(self, k8s):
        k8s.version_api.get_code.side_effect = ConnectionError("connection refused")
        with pytest.raises(ClusterError) as exc:
            await k8s.health_check()
        assert exc.value.permanent is False
        assert "connection refused" in str(exc.value)

    @pytest.mark.asyncio
    async def test_existing_quota_is_replaced(self, k8s):
        k8s.core_v1.create_namespaced_resource_quota.side_effect = ApiException(status=409)
        await k8s.apply_resource_quota("ns", "1000m", "1Gi", "5Gi")
        args, _ = k8s.core_v1.replace_namespaced_resource_quota.call_args
        name, namespace, body = args
        assert (name, namespace) == ("environment-quota", "ns")
        assert body.spec.hard == {
            "limits.cpu": "1000m",
            "limits.memory": "1Gi",
            "requests.storage": "5Gi",
        }

    @pytest.mark.asyncio
    async def test_create_pod_requires_command(self, k8s):
        with pytest.raises(ClusterError) as exc:
            await k8s.create_pod(_spec(command=[]))
        assert exc.value.permanent is True
        k8s.core_v1.create_namespaced_pod.assert_not_called()

    @pytest.mark.asyncio
    async def test_exec_handshake_failure_is_cluster_error(self, k8s, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionError("websocket handshake failed")

        monkeypatch.setattr(kube, "k8s_stream", refuse)
        stdout, stderr = BytePipe(), BytePipe()
        with pytest.raises(ClusterError) as exc:
            await k8s.exec_in_pod("ns", "main", ["true"], stdout=stdout, stderr=stderr)
        assert exc.value.permanent is False
        assert "handshake failed" in str(exc.value)
        assert stdout.closed and stderr.closed

    @pytest.mark.asyncio
    async def test_exec_stream_failure_is_cluster_error(self, k8s, monkeypatch):
        ws = MagicMock()
        ws.is_open.return_value = True
        ws.update.side_effect = OSError("connection reset by peer")
        monkeypatch.setattr(kube, "k8s_stream", lambda *args, **kwargs: ws)

        with pytest.raises(ClusterError) as exc:
            await k8s.exec_in_pod("ns", "main", ["true"])
        assert "connection reset" in str(exc.value)
        ws.close.assert_called_once()
