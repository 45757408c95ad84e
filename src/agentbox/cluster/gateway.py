"""Cluster gateway interface consumed by the orchestrator."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from ..models import ClusterCapacity, NetworkPolicyConfig, SecurityContextConfig, Toleration
from .streams import BytePipe

QUOTA_NAME = "environment-quota"
NETWORK_POLICY_NAME = "isolation-policy"
CONTAINER_NAME = "main"

POD_PENDING = "Pending"
POD_RUNNING = "Running"
POD_SUCCEEDED = "Succeeded"
POD_FAILED = "Failed"


@dataclass
class PodSpec:
    """Everything needed to create a single-container sandbox pod."""

    name: str
    namespace: str
    image: str
    command: List[str]
    cpu: str
    memory: str
    storage: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    runtime_class: str = ""
    node_selector: Dict[str, str] = field(default_factory=dict)
    tolerations: List[Toleration] = field(default_factory=list)
    security_context: Optional[SecurityContextConfig] = None


@dataclass
class PodInfo:
    name: str
    namespace: str
    phase: str
    labels: Dict[str, str] = field(default_factory=dict)
    reason: str = ""  # container waiting/terminated reason, if any
    exit_code: Optional[int] = None


@dataclass
class PodCompletion:
    phase: str
    exit_code: int
    logs: str


class ClusterGateway(ABC):
    """
    Namespace/pod/quota/network-policy CRUD, logs and remote exec.

    Create calls succeed when the object already exists and delete calls
    succeed when it is already gone. Every call takes an optional deadline
    in seconds; failures raise ClusterError.
    """

    @abstractmethod
    async def health_check(self, timeout: Optional[float] = None) -> None: ...

    @abstractmethod
    async def get_server_version(self, timeout: Optional[float] = None) -> str: ...

    @abstractmethod
    async def get_cluster_capacity(
        self, timeout: Optional[float] = None
    ) -> ClusterCapacity: ...

    @abstractmethod
    async def create_namespace(
        self, name: str, labels: Dict[str, str], timeout: Optional[float] = None
    ) -> None: ...

    @abstractmethod
    async def namespace_exists(self, name: str, timeout: Optional[float] = None) -> bool: ...

    @abstractmethod
    async def delete_namespace(self, name: str, timeout: Optional[float] = None) -> None: ...

    @abstractmethod
    async def apply_resource_quota(
        self,
        namespace: str,
        cpu: str,
        memory: str,
        storage: str,
        timeout: Optional[float] = None,
    ) -> None: ...

    @abstractmethod
    async def delete_resource_quota(
        self, namespace: str, timeout: Optional[float] = None
    ) -> None: ...

    @abstractmethod
    async def apply_network_policy(
        self,
        namespace: str,
        config: Optional[NetworkPolicyConfig] = None,
        timeout: Optional[float] = None,
    ) -> None: ...

    @abstractmethod
    async def delete_network_policy(
        self, namespace: str, timeout: Optional[float] = None
    ) -> None: ...

    @abstractmethod
    async def create_pod(self, spec: PodSpec, timeout: Optional[float] = None) -> None: ...

    @abstractmethod
    async def get_pod(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> Optional[PodInfo]: ...

    @abstractmethod
    async def delete_pod(
        self,
        namespace: str,
        name: str,
        force: bool = False,
        timeout: Optional[float] = None,
    ) -> None: ...

    @abstractmethod
    async def wait_for_pod_running(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> None: ...

    @abstractmethod
    async def wait_for_pod_completion(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> PodCompletion: ...

    @abstractmethod
    async def exec_in_pod(
        self,
        namespace: str,
        name: str,
        command: List[str],
        stdin: Optional[BytePipe] = None,
        stdout: Optional[BytePipe] = None,
        stderr: Optional[BytePipe] = None,
    ) -> int:
        """Run command in the pod, piping stdio; returns the remote exit code.

        stdout/stderr are closed when the remote process exits. Cancelling the
        awaiting task tears down the remote exec stream.
        """

    @abstractmethod
    async def get_pod_logs(
        self,
        namespace: str,
        name: str,
        tail_lines: Optional[int] = None,
        timestamps: bool = False,
        timeout: Optional[float] = None,
    ) -> str: ...

    @abstractmethod
    def stream_pod_logs(
        self,
        namespace: str,
        name: str,
        tail_lines: Optional[int] = None,
        follow: bool = False,
        timestamps: bool = False,
    ) -> AsyncIterator[bytes]:
        """Async iterator of raw log lines."""

    @abstractmethod
    async def list_pods(
        self,
        namespace: str,
        label_selector: str = "",
        timeout: Optional[float] = None,
    ) -> List[PodInfo]: ...
