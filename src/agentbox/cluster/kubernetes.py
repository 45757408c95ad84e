"""Cluster gateway backed by the official kubernetes Python client."""

import asyncio
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import structlog
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream as k8s_stream
from kubernetes.utils import parse_quantity

from ..core import metrics
from ..core.errors import ClusterError
from ..models import ClusterCapacity, NetworkPolicyConfig
from .gateway import (
    CONTAINER_NAME,
    NETWORK_POLICY_NAME,
    POD_FAILED,
    POD_RUNNING,
    POD_SUCCEEDED,
    QUOTA_NAME,
    ClusterGateway,
    PodCompletion,
    PodInfo,
    PodSpec,
)
from .streams import BytePipe

logger = structlog.get_logger(__name__)

# Timeout for single K8s API calls
K8S_API_TIMEOUT = 15
POD_POLL_INTERVAL_SECONDS = 1.0
EXEC_POLL_SECONDS = 0.2
PRIVATE_RANGES = ["10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"]

# Status codes that will not get better by retrying the same request.
PERMANENT_STATUSES = (400, 403, 422)


def _is_permanent(e: ApiException) -> bool:
    return e.status in PERMANENT_STATUSES


def _close_pipes(*pipes: Optional[BytePipe]) -> None:
    for pipe in pipes:
        if pipe is not None:
            pipe.close()


def _pod_info(pod: Any) -> PodInfo:
    reason = ""
    exit_code = None
    for status in (pod.status.container_statuses or []) if pod.status else []:
        state = status.state
        if state is None:
            continue
        if state.terminated is not None:
            reason = state.terminated.reason or reason
            exit_code = state.terminated.exit_code
        elif state.waiting is not None:
            reason = state.waiting.reason or reason
    return PodInfo(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace,
        phase=(pod.status.phase if pod.status else "") or "",
        labels=dict(pod.metadata.labels or {}),
        reason=reason,
        exit_code=exit_code,
    )


class KubernetesGateway(ClusterGateway):
    """Talks to the cluster API; sync client calls run in worker threads."""

    def __init__(self, kubeconfig: str = "", api_timeout: float = K8S_API_TIMEOUT):
        if kubeconfig:
            config.load_kube_config(config_file=kubeconfig)
            logger.info("loaded_kubeconfig", path=kubeconfig)
        else:
            try:
                config.load_incluster_config()
                logger.info("loaded_incluster_config")
            except config.ConfigException:
                # Fallback to kubeconfig for local development
                try:
                    config.load_kube_config()
                    logger.info("loaded_kubeconfig")
                except config.ConfigException as e:
                    logger.error("failed_to_load_k8s_config", error=str(e))
                    raise

        self.api_timeout = api_timeout
        self.core_v1 = client.CoreV1Api()
        self.networking_v1 = client.NetworkingV1Api()
        self.version_api = client.VersionApi()

    async def _call(
        self,
        operation: str,
        fn: Callable[..., Any],
        *args: Any,
        timeout: Optional[float] = None,
        ok_statuses: tuple = (),
        **kwargs: Any,
    ) -> Any:
        """Run a client call in a thread, mapping API failures to ClusterError.

        Statuses in ok_statuses (e.g. 409 on create, 404 on delete) return None.
        """
        kwargs["_request_timeout"] = timeout or self.api_timeout
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            if e.status in ok_statuses:
                return None
            metrics.cluster_errors_total.labels(operation=operation).inc()
            raise ClusterError(
                operation,
                f"{e.status} {e.reason}: {(e.body or '')[:500]}",
                status=e.status,
                permanent=_is_permanent(e),
                cause=e,
            ) from e
        except Exception as e:
            metrics.cluster_errors_total.labels(operation=operation).inc()
            raise ClusterError(operation, str(e), cause=e) from e

    # =========================================================================
    # Cluster info
    # =========================================================================

    async def health_check(self, timeout: Optional[float] = None) -> None:
        await self._call("health_check", self.version_api.get_code, timeout=timeout)

    async def get_server_version(self, timeout: Optional[float] = None) -> str:
        info = await self._call(
            "get_server_version", self.version_api.get_code, timeout=timeout
        )
        return info.git_version or ""

    async def get_cluster_capacity(self, timeout: Optional[float] = None) -> ClusterCapacity:
        nodes = await self._call("list_nodes", self.core_v1.list_node, timeout=timeout)
        total_cpu_millis = 0
        total_memory = 0
        for node in nodes.items:
            allocatable = (node.status.allocatable or {}) if node.status else {}
            if "cpu" in allocatable:
                total_cpu_millis += int(parse_quantity(allocatable["cpu"]) * 1000)
            if "memory" in allocatable:
                total_memory += int(parse_quantity(allocatable["memory"]))
        return ClusterCapacity(
            total_nodes=len(nodes.items),
            available_cpu=f"{total_cpu_millis}m",
            available_memory=f"{total_memory // (1024 ** 3)}Gi",
        )

    # =========================================================================
    # Namespaces, quotas, network policies
    # =========================================================================

    async def create_namespace(
        self, name: str, labels: Dict[str, str], timeout: Optional[float] = None
    ) -> None:
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=labels))
        await self._call(
            "create_namespace",
            self.core_v1.create_namespace,
            body,
            timeout=timeout,
            ok_statuses=(409,),
        )

    async def namespace_exists(self, name: str, timeout: Optional[float] = None) -> bool:
        ns = await self._call(
            "read_namespace",
            self.core_v1.read_namespace,
            name,
            timeout=timeout,
            ok_statuses=(404,),
        )
        return ns is not None

    async def delete_namespace(self, name: str, timeout: Optional[float] = None) -> None:
        await self._call(
            "delete_namespace",
            self.core_v1.delete_namespace,
            name,
            timeout=timeout,
            ok_statuses=(404,),
        )

    async def apply_resource_quota(
        self,
        namespace: str,
        cpu: str,
        memory: str,
        storage: str,
        timeout: Optional[float] = None,
    ) -> None:
        hard = {"limits.cpu": cpu, "limits.memory": memory}
        if storage:
            hard["requests.storage"] = storage
        body = client.V1ResourceQuota(
            metadata=client.V1ObjectMeta(name=QUOTA_NAME, namespace=namespace),
            spec=client.V1ResourceQuotaSpec(hard=hard),
        )
        created = await self._call(
            "create_resource_quota",
            self.core_v1.create_namespaced_resource_quota,
            namespace,
            body,
            timeout=timeout,
            ok_statuses=(409,),
        )
        if created is None:
            # Already there: bring it in line with the current spec.
            await self._call(
                "replace_resource_quota",
                self.core_v1.replace_namespaced_resource_quota,
                QUOTA_NAME,
                namespace,
                body,
                timeout=timeout,
            )

    async def delete_resource_quota(
        self, namespace: str, timeout: Optional[float] = None
    ) -> None:
        await self._call(
            "delete_resource_quota",
            self.core_v1.delete_namespaced_resource_quota,
            QUOTA_NAME,
            namespace,
            timeout=timeout,
            ok_statuses=(404,),
        )

    async def apply_network_policy(
        self,
        namespace: str,
        config: Optional[NetworkPolicyConfig] = None,
        timeout: Optional[float] = None,
    ) -> None:
        body = build_network_policy(namespace, config)
        created = await self._call(
            "create_network_policy",
            self.networking_v1.create_namespaced_network_policy,
            namespace,
            body,
            timeout=timeout,
            ok_statuses=(409,),
        )
        if created is None:
            await self._call(
                "replace_network_policy",
                self.networking_v1.replace_namespaced_network_policy,
                NETWORK_POLICY_NAME,
                namespace,
                body,
                timeout=timeout,
            )

    async def delete_network_policy(
        self, namespace: str, timeout: Optional[float] = None
    ) -> None:
        await self._call(
            "delete_network_policy",
            self.networking_v1.delete_namespaced_network_policy,
            NETWORK_POLICY_NAME,
            namespace,
            timeout=timeout,
            ok_statuses=(404,),
        )

    # =========================================================================
    # Pods
    # =========================================================================

    async def create_pod(self, spec: PodSpec, timeout: Optional[float] = None) -> None:
        if not spec.name or not spec.namespace:
            raise ClusterError("create_pod", "pod name and namespace are required", permanent=True)
        if not spec.image:
            raise ClusterError("create_pod", "pod image is required", permanent=True)
        if not spec.command:
            raise ClusterError("create_pod", "pod command is required", permanent=True)

        await self._call(
            "create_pod",
            self.core_v1.create_namespaced_pod,
            spec.namespace,
            build_pod(spec),
            timeout=timeout,
            ok_statuses=(409,),
        )

    async def get_pod(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> Optional[PodInfo]:
        pod = await self._call(
            "read_pod",
            self.core_v1.read_namespaced_pod,
            name,
            namespace,
            timeout=timeout,
            ok_statuses=(404,),
        )
        return _pod_info(pod) if pod is not None else None

    async def delete_pod(
        self,
        namespace: str,
        name: str,
        force: bool = False,
        timeout: Optional[float] = None,
    ) -> None:
        kwargs = {"grace_period_seconds": 0} if force else {}
        await self._call(
            "delete_pod",
            self.core_v1.delete_namespaced_pod,
            name,
            namespace,
            timeout=timeout,
            ok_statuses=(404,),
            **kwargs,
        )

    async def wait_for_pod_running(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> None:
        deadline = asyncio.get_running_loop().time() + (timeout or self.api_timeout)
        last_phase = ""
        while True:
            pod = await self.get_pod(namespace, name)
            if pod is None:
                raise ClusterError("wait_for_pod_running", f"pod {namespace}/{name} was deleted")
            if pod.phase == POD_RUNNING:
                return
            if pod.phase in (POD_FAILED, POD_SUCCEEDED):
                raise ClusterError(
                    "wait_for_pod_running",
                    f"pod {namespace}/{name} failed to start ({pod.phase} {pod.reason})".strip(),
                )
            last_phase = f"{pod.phase} {pod.reason}".strip()
            if asyncio.get_running_loop().time() >= deadline:
                raise ClusterError(
                    "wait_for_pod_running",
                    f"timed out waiting for pod {namespace}/{name} (last state: {last_phase})",
                )
            await asyncio.sleep(POD_POLL_INTERVAL_SECONDS)

    async def wait_for_pod_completion(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> PodCompletion:
        deadline = asyncio.get_running_loop().time() + (timeout or self.api_timeout)
        while True:
            pod = await self.get_pod(namespace, name)
            if pod is None:
                raise ClusterError(
                    "wait_for_pod_completion", f"pod {namespace}/{name} disappeared"
                )
            if pod.phase in (POD_SUCCEEDED, POD_FAILED):
                try:
                    logs = await self.get_pod_logs(namespace, name)
                except ClusterError as e:
                    logger.warning("completion_logs_unavailable", pod=name, error=str(e))
                    logs = ""
                exit_code = pod.exit_code
                if exit_code is None:
                    exit_code = 0 if pod.phase == POD_SUCCEEDED else 1
                return PodCompletion(phase=pod.phase, exit_code=exit_code, logs=logs)
            if asyncio.get_running_loop().time() >= deadline:
                raise ClusterError(
                    "wait_for_pod_completion",
                    f"timed out waiting for pod {namespace}/{name} to complete",
                )
            await asyncio.sleep(POD_POLL_INTERVAL_SECONDS)

    async def exec_in_pod(
        self,
        namespace: str,
        name: str,
        command: List[str],
        stdin: Optional[BytePipe] = None,
        stdout: Optional[BytePipe] = None,
        stderr: Optional[BytePipe] = None,
    ) -> int:
        try:
            ws = await asyncio.to_thread(
                k8s_stream,
                self.core_v1.connect_get_namespaced_pod_exec,
                name,
                namespace,
                command=command,
                container=CONTAINER_NAME,
                stdin=stdin is not None,
                stdout=True,
                stderr=True,
                tty=False,
                _preload_content=False,
            )
        except ApiException as e:
            metrics.cluster_errors_total.labels(operation="exec").inc()
            _close_pipes(stdout, stderr)
            raise ClusterError(
                "exec", f"{e.status} {e.reason}", status=e.status, cause=e
            ) from e
        except Exception as e:
            # Websocket handshake and transport failures.
            metrics.cluster_errors_total.labels(operation="exec").inc()
            _close_pipes(stdout, stderr)
            raise ClusterError("exec", str(e), cause=e) from e

        try:
            return await self._pump_exec(ws, stdin, stdout, stderr)
        except Exception as e:
            metrics.cluster_errors_total.labels(operation="exec").inc()
            raise ClusterError("exec", f"exec stream failed: {e}", cause=e) from e
        finally:
            ws.close()
            _close_pipes(stdout, stderr)

    async def _pump_exec(
        self,
        ws: Any,
        stdin: Optional[BytePipe],
        stdout: Optional[BytePipe],
        stderr: Optional[BytePipe],
    ) -> int:
        while ws.is_open():
            await asyncio.to_thread(ws.update, EXEC_POLL_SECONDS)
            await self._forward_output(ws, stdout, stderr)
            if stdin is None:
                continue
            while True:
                chunk = stdin.read_nowait()
                if chunk is None:
                    break
                if chunk == b"":
                    # Client side hung up: end the remote shell.
                    ws.close()
                    break
                ws.write_stdin(chunk.decode("utf-8", errors="replace"))
        await self._forward_output(ws, stdout, stderr)
        code = ws.returncode
        return 0 if code is None else int(code)

    @staticmethod
    async def _forward_output(
        ws: Any, stdout: Optional[BytePipe], stderr: Optional[BytePipe]
    ) -> None:
        out = ws.read_stdout(timeout=0) if ws.peek_stdout(timeout=0) else ""
        err = ws.read_stderr(timeout=0) if ws.peek_stderr(timeout=0) else ""
        if out and stdout is not None and not stdout.closed:
            await stdout.write(out.encode("utf-8"))
        if err and stderr is not None and not stderr.closed:
            await stderr.write(err.encode("utf-8"))

    async def get_pod_logs(
        self,
        namespace: str,
        name: str,
        tail_lines: Optional[int] = None,
        timestamps: bool = False,
        timeout: Optional[float] = None,
    ) -> str:
        kwargs: Dict[str, Any] = {"timestamps": timestamps}
        if tail_lines:
            kwargs["tail_lines"] = tail_lines
        logs = await self._call(
            "read_pod_log",
            self.core_v1.read_namespaced_pod_log,
            name,
            namespace,
            timeout=timeout,
            **kwargs,
        )
        return logs or ""

    async def stream_pod_logs(
        self,
        namespace: str,
        name: str,
        tail_lines: Optional[int] = None,
        follow: bool = False,
        timestamps: bool = False,
    ) -> AsyncIterator[bytes]:
        kwargs: Dict[str, Any] = {
            "follow": follow,
            "timestamps": timestamps,
            "_preload_content": False,
        }
        if tail_lines:
            kwargs["tail_lines"] = tail_lines
        try:
            resp = await asyncio.to_thread(
                self.core_v1.read_namespaced_pod_log, name, namespace, **kwargs
            )
        except ApiException as e:
            metrics.cluster_errors_total.labels(operation="stream_pod_logs").inc()
            raise ClusterError(
                "stream_pod_logs", f"{e.status} {e.reason}", status=e.status, cause=e
            ) from e

        try:
            while True:
                line = await asyncio.to_thread(resp.readline)
                if not line:
                    return
                yield line
        finally:
            resp.release_conn()

    async def list_pods(
        self,
        namespace: str,
        label_selector: str = "",
        timeout: Optional[float] = None,
    ) -> List[PodInfo]:
        kwargs = {"label_selector": label_selector} if label_selector else {}
        pods = await self._call(
            "list_pods",
            self.core_v1.list_namespaced_pod,
            namespace,
            timeout=timeout,
            **kwargs,
        )
        return [_pod_info(p) for p in pods.items]


def build_pod(spec: PodSpec) -> client.V1Pod:
    """Translate a PodSpec into the client's V1Pod."""
    quantities = {"cpu": spec.cpu, "memory": spec.memory}
    if spec.storage:
        quantities["ephemeral-storage"] = spec.storage

    security_context = None
    if spec.security_context is not None:
        sc = spec.security_context
        security_context = client.V1SecurityContext(
            run_as_user=sc.run_as_user,
            run_as_group=sc.run_as_group,
            run_as_non_root=sc.run_as_non_root,
            read_only_root_filesystem=sc.read_only_root_filesystem,
            allow_privilege_escalation=sc.allow_privilege_escalation,
        )

    container = client.V1Container(
        name=CONTAINER_NAME,
        image=spec.image,
        command=list(spec.command),
        env=[client.V1EnvVar(name=k, value=v) for k, v in spec.env.items() if k],
        resources=client.V1ResourceRequirements(
            requests=dict(quantities), limits=dict(quantities)
        ),
        security_context=security_context,
        stdin=True,
        tty=True,
    )

    tolerations = [
        client.V1Toleration(
            key=t.key or None,
            operator=t.operator or None,
            value=t.value or None,
            effect=t.effect or None,
            toleration_seconds=t.toleration_seconds,
        )
        for t in spec.tolerations
    ]

    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=spec.name, namespace=spec.namespace, labels=dict(spec.labels)
        ),
        spec=client.V1PodSpec(
            runtime_class_name=spec.runtime_class or None,
            containers=[container],
            restart_policy="Never",
            node_selector=dict(spec.node_selector) or None,
            tolerations=tolerations or None,
        ),
    )


def build_network_policy(
    namespace: str, config: Optional[NetworkPolicyConfig] = None
) -> client.V1NetworkPolicy:
    """Default deny-all with DNS egress, opened up per the optional config."""
    dns_rule = client.V1NetworkPolicyEgressRule(
        ports=[
            client.V1NetworkPolicyPort(protocol="UDP", port=53),
            client.V1NetworkPolicyPort(protocol="TCP", port=53),
        ],
        to=[
            client.V1NetworkPolicyPeer(
                namespace_selector=client.V1LabelSelector(
                    match_labels={"kubernetes.io/metadata.name": "kube-system"}
                )
            )
        ],
    )
    egress = [dns_rule]
    ingress: List[client.V1NetworkPolicyIngressRule] = []

    if config is not None:
        if config.allow_internet:
            egress.append(
                client.V1NetworkPolicyEgressRule(
                    to=[
                        client.V1NetworkPolicyPeer(
                            ip_block=client.V1IPBlock(cidr="0.0.0.0/0", _except=PRIVATE_RANGES)
                        )
                    ]
                )
            )
        for cidr in config.allowed_egress_cidrs:
            if cidr:
                egress.append(
                    client.V1NetworkPolicyEgressRule(
                        to=[client.V1NetworkPolicyPeer(ip_block=client.V1IPBlock(cidr=cidr))]
                    )
                )
        if config.allow_cluster_internal:
            same_namespace = client.V1NetworkPolicyPeer(pod_selector=client.V1LabelSelector())
            egress.append(client.V1NetworkPolicyEgressRule(to=[same_namespace]))
            ingress.append(client.V1NetworkPolicyIngressRule(_from=[same_namespace]))
        if config.allowed_ingress_ports:
            ingress.append(
                client.V1NetworkPolicyIngressRule(
                    ports=[
                        client.V1NetworkPolicyPort(protocol="TCP", port=p)
                        for p in config.allowed_ingress_ports
                    ]
                )
            )

    return client.V1NetworkPolicy(
        metadata=client.V1ObjectMeta(name=NETWORK_POLICY_NAME, namespace=namespace),
        spec=client.V1NetworkPolicySpec(
            pod_selector=client.V1LabelSelector(),
            policy_types=["Ingress", "Egress"],
            ingress=ingress,
            egress=egress,
        ),
    )
