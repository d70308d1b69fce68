from mongo_operator.models.cluster import (
    BackupSpec,
    ClusterCondition,
    ClusterPhase,
    ClusterSpec,
    ClusterStatus,
    ConditionStatus,
    ConditionType,
    MongoDBCluster,
    SecretRef,
    ShardingSpec,
)
from mongo_operator.models.topology import ReplicaSetDescriptor, ShardDescriptor

__all__ = [
    "BackupSpec",
    "ClusterCondition",
    "ClusterPhase",
    "ClusterSpec",
    "ClusterStatus",
    "ConditionStatus",
    "ConditionType",
    "MongoDBCluster",
    "SecretRef",
    "ShardingSpec",
    "ReplicaSetDescriptor",
    "ShardDescriptor",
]
