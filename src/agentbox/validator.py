"""Input validation for environment and execution requests."""

import re
from typing import Optional

from .core.config import Config
from .core.errors import ValidationError
from .models import (
    CreateEnvironmentRequest,
    IsolationPolicy,
    NetworkPolicyConfig,
    PoolPolicy,
    ResourceSpec,
    SecurityContextConfig,
    Toleration,
)

CPU_RE = re.compile(r"^(\d+)(m?)$")
MEMORY_RE = re.compile(r"^(\d+)(Mi|Gi|M|G|Ki|K)?$")
STORAGE_RE = re.compile(r"^(\d+)(Mi|Gi|Ti|M|G|T|Ki|K)?$")
NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
CIDR_RE = re.compile(r"^(\d{1,3}\.){3}\d{1,3}/\d{1,2}$")
QUANTITY_RE = re.compile(r"^(\d+)([A-Za-z]*)$")

_UNITS = {
    "": 1,
    "K": 1024,
    "Ki": 1024,
    "M": 1024**2,
    "Mi": 1024**2,
    "G": 1024**3,
    "Gi": 1024**3,
    "T": 1024**4,
    "Ti": 1024**4,
}

TOLERATION_OPERATORS = ("Exists", "Equal")
TOLERATION_EFFECTS = ("NoSchedule", "PreferNoSchedule", "NoExecute")


def parse_cpu(cpu: str) -> int:
    """Parse a CPU quantity ("500m" or "2") into millicores."""
    match = CPU_RE.match(cpu)
    if not match:
        raise ValidationError("invalid cpu format (expected: 100m or 1)")
    value = int(match.group(1))
    return value if match.group(2) else value * 1000


def _parse_bytes(value: str, pattern: re.Pattern, kind: str, example: str) -> int:
    match = pattern.match(value)
    if not match:
        raise ValidationError(f"invalid {kind} format (expected: {example})")
    return int(match.group(1)) * _UNITS[match.group(2) or ""]


def parse_memory(memory: str) -> int:
    return _parse_bytes(memory, MEMORY_RE, "memory", "512Mi, 1Gi, etc")


def parse_storage(storage: str) -> int:
    return _parse_bytes(storage, STORAGE_RE, "storage", "1Gi, 5Gi, etc")


def multiply_quantity(base: str, multiplier: int) -> str:
    """Return base * multiplier keeping the unit suffix, e.g. 500m * 2 = 1000m."""
    if multiplier <= 0:
        return "0"
    match = QUANTITY_RE.match(base)
    if not match:
        raise ValidationError(f"cannot scale resource quantity '{base}'")
    return f"{int(match.group(1)) * multiplier}{match.group(2)}"


class Validator:
    """Checks requests against format rules and configured limits."""

    def __init__(
        self,
        max_cpu_millis: int,
        max_memory_bytes: int,
        max_storage_bytes: int,
        max_timeout: int,
    ):
        self.max_cpu_millis = max_cpu_millis
        self.max_memory_bytes = max_memory_bytes
        self.max_storage_bytes = max_storage_bytes
        self.max_timeout = max_timeout

    @classmethod
    def from_config(cls, config: Config) -> "Validator":
        return cls(
            max_cpu_millis=parse_cpu(config.resources.max_cpu),
            max_memory_bytes=parse_memory(config.resources.max_memory),
            max_storage_bytes=parse_storage(config.resources.max_storage),
            max_timeout=config.timeouts.max_timeout,
        )

    def validate_create_request(self, req: CreateEnvironmentRequest) -> None:
        """Validate an environment declaration; raises ValidationError."""
        if not req.name:
            raise ValidationError("name is required")
        if len(req.name) > 63:
            raise ValidationError("name must be 63 characters or less")
        if not NAME_RE.match(req.name):
            raise ValidationError("name must be lowercase alphanumeric with hyphens")
        if not req.image:
            raise ValidationError("image is required")

        try:
            self.validate_resource_spec(req.resources)
        except ValidationError as e:
            raise ValidationError(f"invalid resources: {e}") from e

        self._validate_timeout(req.timeout)

        for key in req.env:
            if not key:
                raise ValidationError("environment variable name cannot be empty")

        for key, value in req.labels.items():
            if not key:
                raise ValidationError("label key cannot be empty")
            if len(key) > 63:
                raise ValidationError("label key must be 63 characters or less")
            if len(value) > 63:
                raise ValidationError("label value must be 63 characters or less")

        for key, value in req.node_selector.items():
            if not key:
                raise ValidationError("node selector key cannot be empty")
            if len(key) > 253:
                raise ValidationError("node selector key must be 253 characters or less")
            if len(value) > 63:
                raise ValidationError("node selector value must be 63 characters or less")

        for index, toleration in enumerate(req.tolerations):
            validate_toleration(toleration, index)

        if req.isolation is not None:
            validate_isolation(req.isolation)

        if req.pool is not None:
            validate_pool(req.pool)

    def validate_resource_spec(self, spec: ResourceSpec) -> None:
        if not spec.cpu:
            raise ValidationError("cpu is required")
        cpu = parse_cpu(spec.cpu)
        if cpu <= 0:
            raise ValidationError("cpu must be positive")
        if cpu > self.max_cpu_millis:
            raise ValidationError(f"cpu exceeds maximum allowed ({self.max_cpu_millis}m)")

        if not spec.memory:
            raise ValidationError("memory is required")
        memory = parse_memory(spec.memory)
        if memory <= 0:
            raise ValidationError("memory must be positive")
        if memory > self.max_memory_bytes:
            raise ValidationError(
                f"memory exceeds maximum allowed ({self.max_memory_bytes} bytes)"
            )

        if not spec.storage:
            raise ValidationError("storage is required")
        storage = parse_storage(spec.storage)
        if storage <= 0:
            raise ValidationError("storage must be positive")
        if storage > self.max_storage_bytes:
            raise ValidationError(
                f"storage exceeds maximum allowed ({self.max_storage_bytes} bytes)"
            )

    def validate_exec_request(
        self, command: list[str], timeout: int, max_timeout: Optional[int] = None
    ) -> None:
        if not command:
            raise ValidationError("command is required")
        self._validate_timeout(timeout, max_timeout)

    def _validate_timeout(self, timeout: int, max_timeout: Optional[int] = None) -> None:
        limit = self.max_timeout if max_timeout is None else max_timeout
        if timeout < 0:
            raise ValidationError("timeout cannot be negative")
        if timeout > limit:
            raise ValidationError(f"timeout exceeds maximum allowed ({limit} seconds)")


def validate_toleration(t: Toleration, index: int) -> None:
    if t.operator and t.operator not in TOLERATION_OPERATORS:
        raise ValidationError(f"toleration[{index}]: operator must be 'Exists' or 'Equal'")
    if t.effect and t.effect not in TOLERATION_EFFECTS:
        raise ValidationError(
            f"toleration[{index}]: effect must be 'NoSchedule', 'PreferNoSchedule', or 'NoExecute'"
        )
    if t.operator == "Exists" and t.value:
        raise ValidationError(
            f"toleration[{index}]: value must be empty when operator is 'Exists'"
        )
    if t.toleration_seconds is not None and t.effect != "NoExecute":
        raise ValidationError(
            f"toleration[{index}]: toleration_seconds can only be set when effect is 'NoExecute'"
        )
    if len(t.key) > 253:
        raise ValidationError(f"toleration[{index}]: key must be 253 characters or less")


def validate_isolation(isolation: IsolationPolicy) -> None:
    if isolation.runtime_class:
        if len(isolation.runtime_class) > 63:
            raise ValidationError("isolation.runtime_class must be 63 characters or less")
        if not NAME_RE.match(isolation.runtime_class):
            raise ValidationError(
                "isolation.runtime_class must be lowercase alphanumeric with hyphens"
            )
    if isolation.network_policy is not None:
        _validate_network_policy(isolation.network_policy)
    if isolation.security_context is not None:
        _validate_security_context(isolation.security_context)


def _validate_network_policy(np: NetworkPolicyConfig) -> None:
    for i, cidr in enumerate(np.allowed_egress_cidrs):
        if not cidr:
            continue
        if not CIDR_RE.match(cidr):
            raise ValidationError(
                f"isolation.network_policy.allowed_egress_cidrs[{i}]: invalid CIDR format '{cidr}'"
            )
    for i, port in enumerate(np.allowed_ingress_ports):
        if port < 1 or port > 65535:
            raise ValidationError(
                f"isolation.network_policy.allowed_ingress_ports[{i}]: port must be between 1 and 65535"
            )


def _validate_security_context(sc: SecurityContextConfig) -> None:
    if sc.run_as_user is not None and sc.run_as_user < 0:
        raise ValidationError("isolation.security_context.run_as_user must be non-negative")
    if sc.run_as_group is not None and sc.run_as_group < 0:
        raise ValidationError("isolation.security_context.run_as_group must be non-negative")


def validate_pool(pool: PoolPolicy) -> None:
    if pool.size < 0:
        raise ValidationError("pool.size cannot be negative")
    if pool.min_ready is not None:
        if pool.min_ready < 0:
            raise ValidationError("pool.min_ready cannot be negative")
        if pool.size > 0 and pool.min_ready > pool.size:
            raise ValidationError("pool.min_ready cannot exceed pool.size")
