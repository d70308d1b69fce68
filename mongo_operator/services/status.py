"""
Status computation for MongoDBCluster objects.
"""
from datetime import datetime, timezone
from typing import Optional

from mongo_operator.models.cluster import (
    ClusterCondition,
    ClusterPhase,
    ClusterStatus,
    ConditionStatus,
    ConditionType,
    MongoDBCluster,
)


def now_rfc3339() -> str:
    """Current time in the format Kubernetes uses for metav1.Time."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def set_condition(
    status: ClusterStatus,
    previous: Optional[ClusterStatus],
    condition_type: ConditionType,
    condition_status: ConditionStatus,
    reason: str,
    message: str,
    now: str,
) -> None:
    """
    Add or replace a condition on ``status``.

    The transition time is carried over from ``previous`` when the condition
    status did not change.
    """
    prior = previous.get_condition(condition_type.value) if previous else None
    transition = prior.last_transition_time if prior and prior.status == condition_status else now
    status.conditions = [c for c in status.conditions if c.type != condition_type.value]
    status.conditions.append(
        ClusterCondition(
            type=condition_type.value,
            status=condition_status,
            last_transition_time=transition,
            reason=reason,
            message=message,
        )
    )


def running_status(
    cluster: MongoDBCluster,
    previous: Optional[ClusterStatus],
    sharding_configured: bool,
    last_backup_time: Optional[str] = None,
    now: Optional[str] = None,
) -> ClusterStatus:
    """Status written at the end of a successful pass."""
    now = now or now_rfc3339()
    spec = cluster.spec
    total = spec.total_shard_members

    status = ClusterStatus(
        phase=ClusterPhase.RUNNING,
        message="Cluster is running",
        ready_replicas=total,
        replica_summary=f"{total}/{total}",
        current_version=spec.version,
        last_backup_time=last_backup_time or (previous.last_backup_time if previous else None),
        sharding_configured=sharding_configured,
    )

    set_condition(
        status, previous,
        ConditionType.REPLICA_SET_READY, ConditionStatus.TRUE,
        "ReplicaSetsInitialized",
        f"config server and {spec.replica_set_count} shard replica sets have a primary",
        now,
    )

    if sharding_configured:
        sharding_message = f"{spec.replica_set_count} shards registered"
        if spec.sharding and spec.sharding.enabled and spec.sharding.collections:
            sharding_message += f", collection {spec.sharding.collections} sharded"
        set_condition(
            status, previous,
            ConditionType.SHARDING_READY, ConditionStatus.TRUE,
            "ShardsRegistered", sharding_message, now,
        )
    else:
        set_condition(
            status, previous,
            ConditionType.SHARDING_READY, ConditionStatus.FALSE,
            "NoShards", "no shard replica sets requested", now,
        )

    if spec.backup.enabled:
        set_condition(
            status, previous,
            ConditionType.BACKUP_SCHEDULED, ConditionStatus.TRUE,
            "BackupJobScheduled", f"backups run on schedule {spec.backup.schedule!r}", now,
        )
    else:
        set_condition(
            status, previous,
            ConditionType.BACKUP_SCHEDULED, ConditionStatus.FALSE,
            "BackupDisabled", "backup is disabled", now,
        )

    return status


def degraded_status(
    previous: Optional[ClusterStatus],
    reason: str,
    message: str,
    failed_condition: Optional[ConditionType] = None,
    now: Optional[str] = None,
) -> ClusterStatus:
    """
    Status written when a pass aborts.

    Last-known observations are kept; only the phase, the message and the
    condition of the failing stage change.
    """
    now = now or now_rfc3339()
    status = previous.model_copy(deep=True) if previous else ClusterStatus()
    status.phase = ClusterPhase.DEGRADED
    status.message = message
    if failed_condition is not None:
        set_condition(status, previous, failed_condition, ConditionStatus.FALSE, reason, message, now)
    return status


def parse_status(raw: Optional[dict]) -> Optional[ClusterStatus]:
    if not raw:
        return None
    return ClusterStatus.model_validate(raw)


def status_changed(previous: Optional[ClusterStatus], new: ClusterStatus) -> bool:
    if previous is None:
        return True
    return previous.to_body() != new.to_body()
