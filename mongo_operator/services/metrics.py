"""
Prometheus metrics for reconciliation passes and bootstrap steps.
"""
from prometheus_client import Counter, Gauge, Histogram

# Reconciliation metrics
reconcile_total = Counter(
    "mongo_operator_reconcile_total",
    "Total number of reconciliation passes",
    ["result"],
)

reconcile_duration_seconds = Histogram(
    "mongo_operator_reconcile_duration_seconds",
    "Time spent in a reconciliation pass",
    ["result"],
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300, 600),
)

# Managed resource metrics
resource_mutations_total = Counter(
    "mongo_operator_resource_mutations_total",
    "Total create/update/delete calls on managed resources",
    ["kind", "action"],
)

# Database bootstrap metrics
bootstrap_operations_total = Counter(
    "mongo_operator_bootstrap_operations_total",
    "MongoDB bootstrap commands issued, by outcome",
    ["operation", "outcome"],
)

# Dispatcher metrics
queue_depth = Gauge(
    "mongo_operator_queue_depth",
    "Number of cluster objects waiting for a reconciliation pass",
)

reconciles_in_flight = Gauge(
    "mongo_operator_reconciles_in_flight",
    "Number of reconciliation passes currently running",
)


def record_reconcile(result: str, duration_seconds: float):
    """Record a finished reconciliation pass."""
    reconcile_total.labels(result=result).inc()
    reconcile_duration_seconds.labels(result=result).observe(duration_seconds)


def record_resource_mutation(kind: str, action: str):
    """Record a create, update or delete on a managed resource."""
    resource_mutations_total.labels(kind=kind, action=action).inc()


def record_bootstrap(operation: str, outcome: str):
    """Record a replication or sharding bootstrap command."""
    bootstrap_operations_total.labels(operation=operation, outcome=outcome).inc()


def update_queue_stats(queued: int, in_flight: int):
    """Update dispatcher gauges."""
    queue_depth.set(queued)
    reconciles_in_flight.set(in_flight)
