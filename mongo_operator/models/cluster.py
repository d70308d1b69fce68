"""
Pydantic models for the MongoDBCluster custom resource.

Field names are snake_case in Python and camelCase on the wire.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model mapping snake_case attributes to camelCase JSON keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ClusterPhase(str, Enum):
    """Observed lifecycle phase of a cluster."""

    PENDING = "Pending"
    RUNNING = "Running"
    DEGRADED = "Degraded"
    FAILED = "Failed"


class ConditionStatus(str, Enum):
    """Kubernetes condition status values."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionType(str, Enum):
    """Condition types written by the reconciler."""

    REPLICA_SET_READY = "ReplicaSetReady"
    SHARDING_READY = "ShardingReady"
    BACKUP_SCHEDULED = "BackupScheduled"


class SecretRef(CamelModel):
    """Reference to the secret holding object-storage credentials."""

    name: str = ""
    namespace: str = ""


class ShardingSpec(CamelModel):
    """Sharding policy for the cluster."""

    enabled: bool = False
    database: str = Field(default="", description="Database to enable sharding on")
    collections: str = Field(default="", description="Collection to shard")
    key: str = Field(default="", description="Shard key, e.g. 'userId:1,region:1' or 'userId' for hashed")


class BackupSpec(CamelModel):
    """Scheduled backup policy."""

    enabled: bool = False
    schedule: str = Field(default="", description="Cron schedule")
    storage_endpoint: str = ""
    bucket: str = ""
    secret_ref: SecretRef = Field(default_factory=SecretRef)


class ClusterSpec(CamelModel):
    """Desired state, authored outside the operator."""

    replica_set_count: int = 0
    replica_set_size: int = 0
    sharding: Optional[ShardingSpec] = None
    config_server_count: int = 0
    mongos_count: int = 0
    version: str = ""
    backup: BackupSpec = Field(default_factory=BackupSpec)
    storage_size: str = ""
    storage_class: Optional[str] = None

    @property
    def total_shard_members(self) -> int:
        """Number of shard mongod pods the cluster spec asks for."""
        return self.replica_set_count * self.replica_set_size


class ClusterCondition(CamelModel):
    """A typed observation about the cluster."""

    type: str
    status: ConditionStatus
    last_transition_time: str
    reason: str = ""
    message: str = ""


class ClusterStatus(CamelModel):
    """Observed state, owned exclusively by the operator."""

    phase: ClusterPhase = ClusterPhase.PENDING
    message: str = ""
    ready_replicas: int = 0
    replica_summary: str = ""
    current_version: str = ""
    last_backup_time: Optional[str] = None
    sharding_configured: bool = False
    conditions: List[ClusterCondition] = Field(default_factory=list)

    def to_body(self) -> Dict[str, Any]:
        """Serialize for the status subresource."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def get_condition(self, condition_type: str) -> Optional[ClusterCondition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


class ObjectMeta(CamelModel):
    """Subset of Kubernetes object metadata the operator relies on."""

    name: str
    namespace: str = "default"
    uid: str = ""
    generation: int = 0
    resource_version: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)


class MongoDBCluster(CamelModel):
    """A MongoDBCluster object as read from the custom objects API."""

    api_version: str = "database.sadegh.msm/v1alpha1"
    kind: str = "MongoDBCluster"
    metadata: ObjectMeta
    spec: ClusterSpec = Field(default_factory=ClusterSpec)
    status: Optional[ClusterStatus] = None

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "MongoDBCluster":
        return cls.model_validate(obj)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    def owner_reference(self) -> Dict[str, Any]:
        """Controller owner reference so owned resources are garbage collected with the cluster."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.metadata.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
