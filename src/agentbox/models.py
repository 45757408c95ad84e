"""Pydantic models for environments, executions and their API shapes."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Status enums
# =============================================================================


class EnvironmentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    FAILED = "failed"


# Environments that have not been asked to go away
LIVE_ENVIRONMENT_STATUSES = (
    EnvironmentStatus.PENDING,
    EnvironmentStatus.RUNNING,
    EnvironmentStatus.FAILED,
)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELED}
)
CANCELABLE_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.PENDING, ExecutionStatus.QUEUED, ExecutionStatus.RUNNING}
)


# =============================================================================
# Environment spec building blocks
# =============================================================================


class ResourceSpec(BaseModel):
    """CPU/memory/storage quantities in Kubernetes notation (e.g. 500m, 512Mi)."""

    cpu: str = ""
    memory: str = ""
    storage: str = ""


class Toleration(BaseModel):
    key: str = ""
    operator: str = ""  # Exists or Equal
    value: str = ""
    effect: str = ""  # NoSchedule, PreferNoSchedule, NoExecute
    toleration_seconds: Optional[int] = None


class NetworkPolicyConfig(BaseModel):
    """Egress/ingress openings on top of the default deny-all policy."""

    allow_internet: bool = False
    allowed_egress_cidrs: List[str] = Field(default_factory=list)
    allowed_ingress_ports: List[int] = Field(default_factory=list)
    allow_cluster_internal: bool = False


class SecurityContextConfig(BaseModel):
    run_as_user: Optional[int] = None
    run_as_group: Optional[int] = None
    run_as_non_root: Optional[bool] = None
    read_only_root_filesystem: Optional[bool] = None
    allow_privilege_escalation: Optional[bool] = None


class IsolationPolicy(BaseModel):
    """Optional isolation bundle; each part is applied independently."""

    runtime_class: Optional[str] = None
    network_policy: Optional[NetworkPolicyConfig] = None
    security_context: Optional[SecurityContextConfig] = None


class PoolPolicy(BaseModel):
    """Standby pool policy for one environment."""

    enabled: bool = False
    size: int = 0  # <= 0 means the configured default size
    min_ready: Optional[int] = None  # replenish once ready+pending drops below this


# =============================================================================
# Environment
# =============================================================================


class Environment(BaseModel):
    id: str
    name: str
    image: str
    status: EnvironmentStatus = EnvironmentStatus.PENDING
    namespace: str
    resources: ResourceSpec = Field(default_factory=ResourceSpec)
    env: Dict[str, str] = Field(default_factory=dict)
    command: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)
    timeout: int = 0
    user_id: str = ""
    node_selector: Dict[str, str] = Field(default_factory=dict)
    tolerations: List[Toleration] = Field(default_factory=list)
    isolation: Optional[IsolationPolicy] = None
    pool: Optional[PoolPolicy] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None

    # Reconciliation bookkeeping (persisted so retries survive restarts)
    reconciliation_retry_count: int = 0
    last_reconciliation_error: Optional[str] = None
    last_reconciliation_at: Optional[datetime] = None
    reconciliation_retries_left: Optional[int] = None


class CreateEnvironmentRequest(BaseModel):
    name: str
    image: str
    resources: ResourceSpec = Field(default_factory=ResourceSpec)
    timeout: int = 0
    env: Dict[str, str] = Field(default_factory=dict)
    command: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)
    node_selector: Dict[str, str] = Field(default_factory=dict)
    tolerations: List[Toleration] = Field(default_factory=list)
    isolation: Optional[IsolationPolicy] = None
    pool: Optional[PoolPolicy] = None


class UpdateEnvironmentRequest(BaseModel):
    """Partial update; only fields that are set are applied."""

    name: Optional[str] = None
    image: Optional[str] = None
    resources: Optional[ResourceSpec] = None
    timeout: Optional[int] = None
    env: Optional[Dict[str, str]] = None
    command: Optional[List[str]] = None
    labels: Optional[Dict[str, str]] = None
    node_selector: Optional[Dict[str, str]] = None
    tolerations: Optional[List[Toleration]] = None
    isolation: Optional[IsolationPolicy] = None
    pool: Optional[PoolPolicy] = None


class ListEnvironmentsResponse(BaseModel):
    environments: List[Environment]
    total: int
    limit: int
    offset: int


class EnvironmentEvent(BaseModel):
    id: Optional[int] = None
    environment_id: str
    event_type: str
    message: str
    details: str = ""
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Executions
# =============================================================================


class Execution(BaseModel):
    id: str
    environment_id: str
    command: List[str]
    env: Dict[str, str] = Field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.PENDING
    user_id: str = ""
    pod_name: str = ""
    namespace: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error: str = ""
    duration_ms: Optional[int] = None


class SubmitExecutionRequest(BaseModel):
    environment_id: str
    command: List[str]
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: int = 0


class ExecutionListResponse(BaseModel):
    executions: List[Execution]
    total: int


class ExecRequest(BaseModel):
    command: List[str]
    timeout: int = 0


class ExecResponse(BaseModel):
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int


# =============================================================================
# Logs, pool, health
# =============================================================================


class LogEntry(BaseModel):
    timestamp: datetime
    stream: str  # stdout, stderr or reconciliation
    message: str


class LogsResponse(BaseModel):
    logs: List[LogEntry]


class PoolStatusEntry(BaseModel):
    environment_id: str
    image: str
    configured_size: int
    ready: int
    pending: int


class KubernetesHealthStatus(BaseModel):
    connected: bool
    version: str = ""


class ClusterCapacity(BaseModel):
    total_nodes: int = 0
    available_cpu: str = ""
    available_memory: str = ""


class HealthResponse(BaseModel):
    status: str
    version: str
    kubernetes: KubernetesHealthStatus
    capacity: ClusterCapacity


# =============================================================================
# Interactive session frames
# =============================================================================


class SessionMessage(BaseModel):
    """One framed message on an interactive session."""

    type: str  # stdin, stdout, stderr, exit
    data: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    exit_code: Optional[int] = None
