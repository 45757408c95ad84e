"""Deterministic naming and pod specs shared by the reconciler, pool and executors."""

import uuid
from typing import Dict, List, Optional

from .cluster import PodSpec
from .core.errors import ClusterError
from .models import Environment, Execution

MAIN_POD_NAME = "main"
DEFAULT_MAIN_COMMAND = ["/bin/sh", "-c", "sleep infinity"]
STANDBY_COMMAND = ["/bin/sh", "-c", "trap 'exit 0' TERM; while true; do sleep 1; done"]

APP_LABEL = "agentbox"


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def namespace_for(prefix: str, env_id: str) -> str:
    return f"{prefix}{env_id}"


def environment_labels(env: Environment) -> Dict[str, str]:
    labels = {"app": APP_LABEL, "env-id": env.id, "managed-by": APP_LABEL}
    labels.update(env.labels)
    return labels


def runtime_class_for(env: Environment, default: str) -> str:
    """The environment's isolation runtime class wins over the global one."""
    if env.isolation is not None and env.isolation.runtime_class:
        return env.isolation.runtime_class
    return default


def _pod_spec(
    env: Environment,
    name: str,
    command: List[str],
    labels: Dict[str, str],
    runtime_class: str,
    env_vars: Optional[Dict[str, str]] = None,
    cpu: Optional[str] = None,
    memory: Optional[str] = None,
) -> PodSpec:
    return PodSpec(
        name=name,
        namespace=env.namespace,
        image=env.image,
        command=list(command),
        cpu=cpu if cpu is not None else env.resources.cpu,
        memory=memory if memory is not None else env.resources.memory,
        storage=env.resources.storage,
        env=dict(env.env if env_vars is None else env_vars),
        labels=labels,
        runtime_class=runtime_class_for(env, runtime_class),
        node_selector=dict(env.node_selector),
        tolerations=list(env.tolerations),
        security_context=env.isolation.security_context if env.isolation else None,
    )


def main_pod_spec(env: Environment, runtime_class: str) -> PodSpec:
    """The environment's long-lived primary pod."""
    return _pod_spec(
        env,
        MAIN_POD_NAME,
        env.command or DEFAULT_MAIN_COMMAND,
        environment_labels(env),
        runtime_class,
    )


def ephemeral_pod_spec(
    env: Environment, execution: Execution, runtime_class: str
) -> PodSpec:
    """A single-use pod named after the execution that runs its command."""
    labels = {
        "app": APP_LABEL,
        "managed-by": APP_LABEL,
        "type": "ephemeral",
        "exec-id": execution.id,
        "user-id": execution.user_id,
        "environment-id": env.id,
    }
    labels.update(env.labels)
    env_vars = dict(env.env)
    env_vars.update(execution.env)
    return _pod_spec(
        env, execution.id, execution.command, labels, runtime_class, env_vars=env_vars
    )


def standby_pod_spec(
    env: Environment, name: str, cpu: str, memory: str, runtime_class: str
) -> PodSpec:
    labels = {
        "app": APP_LABEL,
        "managed-by": APP_LABEL,
        "type": "standby",
        "environment-id": env.id,
    }
    return _pod_spec(
        env, name, STANDBY_COMMAND, labels, runtime_class, cpu=cpu, memory=memory
    )


def is_quota_rejection(err: ClusterError) -> bool:
    text = str(err).lower()
    return "exceeded quota" in text or "forbidden" in text
