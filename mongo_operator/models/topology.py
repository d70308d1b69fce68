"""
Deterministic naming and addressing for a MongoDBCluster.

Every name here is derived only from the cluster name, namespace and shard
index. The create-or-update protocol looks resources up by these names, so
they must never change for a given input.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from mongo_operator.models.cluster import MongoDBCluster

MONGOS_PORT = 27017
SHARD_PORT = 27018
CONFIG_SERVER_PORT = 27019

CONFIG_REPLICA_SET_NAME = "configReplSet"

COMPONENT_CONFIG_SERVER = "configsvr"
COMPONENT_SHARD = "shard"
COMPONENT_MONGOS = "mongos"
COMPONENT_BACKUP = "backup"

LABEL_NAME = "app.kubernetes.io/name"
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_COMPONENT = "app.kubernetes.io/component"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_SHARD = "mongodb.sadegh.msm/shard"
MANAGED_BY = "mongo-operator"


@dataclass(frozen=True)
class ReplicaSetDescriptor:
    """A replica set name and its ordered member addresses."""

    name: str
    members: Tuple[str, ...]
    config_server: bool = False


@dataclass(frozen=True)
class ShardDescriptor:
    """A shard replica set as registered with the router tier."""

    replica_set_name: str
    members: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def connection_string(self) -> str:
        return f"{self.replica_set_name}/{','.join(self.members)}"


def config_server_name(cluster_name: str) -> str:
    return f"{cluster_name}-configsvr"


def shard_name(cluster_name: str, shard_index: int) -> str:
    return f"{cluster_name}-shard{shard_index}"


def mongos_name(cluster_name: str) -> str:
    return f"{cluster_name}-mongos"


def backup_job_name(cluster_name: str) -> str:
    return f"{cluster_name}-backup"


def selector_labels(cluster_name: str, component: str, shard_index: Optional[int] = None) -> Dict[str, str]:
    """Labels used both as pod selector and on owned resources."""
    labels = {
        LABEL_NAME: "mongodb",
        LABEL_INSTANCE: cluster_name,
        LABEL_COMPONENT: component,
    }
    if shard_index is not None:
        labels[LABEL_SHARD] = str(shard_index)
    return labels


def resource_labels(cluster_name: str, component: str, shard_index: Optional[int] = None) -> Dict[str, str]:
    labels = selector_labels(cluster_name, component, shard_index)
    labels[LABEL_MANAGED_BY] = MANAGED_BY
    return labels


def owned_selector(cluster_name: str) -> str:
    """Label selector matching every resource owned by one cluster."""
    return f"{LABEL_INSTANCE}={cluster_name},{LABEL_MANAGED_BY}={MANAGED_BY}"


def member_address(
    pod_set: str,
    ordinal: int,
    service: str,
    namespace: str,
    port: int,
    cluster_domain: str = "cluster.local",
) -> str:
    """Stable DNS address of a StatefulSet pod behind its headless service."""
    return f"{pod_set}-{ordinal}.{service}.{namespace}.svc.{cluster_domain}:{port}"


def config_server_members(cluster: MongoDBCluster, cluster_domain: str = "cluster.local") -> List[str]:
    name = config_server_name(cluster.name)
    return [
        member_address(name, i, name, cluster.namespace, CONFIG_SERVER_PORT, cluster_domain)
        for i in range(cluster.spec.config_server_count)
    ]


def shard_members(cluster: MongoDBCluster, shard_index: int, cluster_domain: str = "cluster.local") -> List[str]:
    name = shard_name(cluster.name, shard_index)
    return [
        member_address(name, i, name, cluster.namespace, SHARD_PORT, cluster_domain)
        for i in range(cluster.spec.replica_set_size)
    ]


def config_server_replica_set(cluster: MongoDBCluster, cluster_domain: str = "cluster.local") -> ReplicaSetDescriptor:
    return ReplicaSetDescriptor(
        name=CONFIG_REPLICA_SET_NAME,
        members=tuple(config_server_members(cluster, cluster_domain)),
        config_server=True,
    )


def shard_replica_set(
    cluster: MongoDBCluster, shard_index: int, cluster_domain: str = "cluster.local"
) -> ReplicaSetDescriptor:
    return ReplicaSetDescriptor(
        name=shard_name(cluster.name, shard_index),
        members=tuple(shard_members(cluster, shard_index, cluster_domain)),
    )


def shard_descriptors(cluster: MongoDBCluster, cluster_domain: str = "cluster.local") -> List[ShardDescriptor]:
    return [
        ShardDescriptor(
            replica_set_name=shard_name(cluster.name, i),
            members=tuple(shard_members(cluster, i, cluster_domain)),
        )
        for i in range(cluster.spec.replica_set_count)
    ]


def config_db_string(cluster: MongoDBCluster, cluster_domain: str = "cluster.local") -> str:
    """Value of mongos --configdb."""
    return f"{CONFIG_REPLICA_SET_NAME}/{','.join(config_server_members(cluster, cluster_domain))}"


def mongos_uri(cluster: MongoDBCluster, cluster_domain: str = "cluster.local") -> str:
    host = f"{mongos_name(cluster.name)}.{cluster.namespace}.svc.{cluster_domain}"
    return f"mongodb://{host}:{MONGOS_PORT}"


def desired_resource_names(cluster: MongoDBCluster) -> Dict[str, set]:
    """Names of every resource the current cluster spec implies, keyed by kind."""
    shards = {shard_name(cluster.name, i) for i in range(cluster.spec.replica_set_count)}
    config = config_server_name(cluster.name)
    router = mongos_name(cluster.name)
    return {
        "StatefulSet": shards | {config},
        "Deployment": {router},
        "Service": shards | {config, router},
        "CronJob": {backup_job_name(cluster.name)} if cluster.spec.backup.enabled else set(),
    }
