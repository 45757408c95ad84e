"""Prometheus metrics for the orchestrator."""

from prometheus_client import Counter, Gauge, Histogram

reconciliation_attempts_total = Counter(
    "agentbox_reconciliation_attempts_total",
    "Reconciliation attempts by outcome",
    ["outcome"],  # success, failure, max_retries, pod_recreated
)

environments_by_status = Gauge(
    "agentbox_environments",
    "Environments seen by the last reconciliation tick",
    ["status"],
)

standby_pods_ready = Gauge(
    "agentbox_standby_pods_ready",
    "Idle standby pods per pool",
    ["environment_id", "image"],
)

executions_total = Counter(
    "agentbox_executions_total",
    "Executions reaching a terminal state",
    ["status"],
)

execution_duration_seconds = Histogram(
    "agentbox_execution_duration_seconds",
    "Command execution duration in seconds",
    ["pod_source"],  # standby, ephemeral, main
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0, 1800.0, 3600.0],
)

active_sessions = Gauge(
    "agentbox_active_sessions",
    "Interactive sessions currently attached",
)

cluster_errors_total = Counter(
    "agentbox_cluster_errors_total",
    "Cluster gateway call failures",
    ["operation"],
)
