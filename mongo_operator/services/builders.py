"""
Resource builders for a sharded MongoDB topology.

The ``build_*`` functions are pure: they map a MongoDBCluster (and a shard
index where relevant) onto the manifest the operator wants to exist. The
``TopologyBuilder`` pairs each of them with the create-or-update protocol.
"""
from typing import Any, Dict, List

from mongo_operator.config.logging import get_logger
from mongo_operator.models.cluster import MongoDBCluster
from mongo_operator.models import topology
from mongo_operator.services.resource_manager import ApplyResult, ResourceManager

logger = get_logger(__name__)

DATA_VOLUME = "data"
DATA_MOUNT_PATH = "/data/db"


def _metadata(cluster: MongoDBCluster, name: str, labels: Dict[str, str]) -> Dict[str, Any]:
    return {
        "name": name,
        "namespace": cluster.namespace,
        "labels": labels,
        "ownerReferences": [cluster.owner_reference()],
    }


def _image(cluster: MongoDBCluster, image_repository: str) -> str:
    return f"{image_repository}:{cluster.spec.version}"


def _volume_claim_templates(cluster: MongoDBCluster) -> List[Dict[str, Any]]:
    claim_spec: Dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": cluster.spec.storage_size}},
    }
    if cluster.spec.storage_class:
        claim_spec["storageClassName"] = cluster.spec.storage_class
    return [{"metadata": {"name": DATA_VOLUME}, "spec": claim_spec}]


def _mongod_statefulset(
    cluster: MongoDBCluster,
    name: str,
    labels: Dict[str, str],
    selector: Dict[str, str],
    replicas: int,
    args: List[str],
    port: int,
    image_repository: str,
) -> Dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(cluster, name, labels),
        "spec": {
            "replicas": replicas,
            "serviceName": name,
            "selector": {"matchLabels": selector},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [
                        {
                            "name": "mongod",
                            "image": _image(cluster, image_repository),
                            "args": args,
                            "ports": [{"name": "mongodb", "containerPort": port}],
                            "volumeMounts": [{"name": DATA_VOLUME, "mountPath": DATA_MOUNT_PATH}],
                        }
                    ],
                },
            },
            "volumeClaimTemplates": _volume_claim_templates(cluster),
        },
    }


def build_config_server_workload(cluster: MongoDBCluster, image_repository: str = "mongo") -> Dict[str, Any]:
    """StatefulSet running the config-server replica set."""
    name = topology.config_server_name(cluster.name)
    return _mongod_statefulset(
        cluster,
        name=name,
        labels=topology.resource_labels(cluster.name, topology.COMPONENT_CONFIG_SERVER),
        selector=topology.selector_labels(cluster.name, topology.COMPONENT_CONFIG_SERVER),
        replicas=cluster.spec.config_server_count,
        args=[
            "mongod",
            "--configsvr",
            "--replSet", topology.CONFIG_REPLICA_SET_NAME,
            "--bind_ip_all",
            "--port", str(topology.CONFIG_SERVER_PORT),
        ],
        port=topology.CONFIG_SERVER_PORT,
        image_repository=image_repository,
    )


def build_shard_workload(
    cluster: MongoDBCluster, shard_index: int, image_repository: str = "mongo"
) -> Dict[str, Any]:
    """StatefulSet running the replica set of one shard."""
    name = topology.shard_name(cluster.name, shard_index)
    return _mongod_statefulset(
        cluster,
        name=name,
        labels=topology.resource_labels(cluster.name, topology.COMPONENT_SHARD, shard_index),
        selector=topology.selector_labels(cluster.name, topology.COMPONENT_SHARD, shard_index),
        replicas=cluster.spec.replica_set_size,
        args=[
            "mongod",
            "--replSet", name,
            "--shardsvr",
            "--bind_ip_all",
            "--port", str(topology.SHARD_PORT),
        ],
        port=topology.SHARD_PORT,
        image_repository=image_repository,
    )


def build_router_workload(
    cluster: MongoDBCluster, image_repository: str = "mongo", cluster_domain: str = "cluster.local"
) -> Dict[str, Any]:
    """Deployment running the stateless mongos routers."""
    name = topology.mongos_name(cluster.name)
    labels = topology.resource_labels(cluster.name, topology.COMPONENT_MONGOS)
    selector = topology.selector_labels(cluster.name, topology.COMPONENT_MONGOS)
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(cluster, name, labels),
        "spec": {
            "replicas": cluster.spec.mongos_count,
            "selector": {"matchLabels": selector},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [
                        {
                            "name": "mongos",
                            "image": _image(cluster, image_repository),
                            "args": [
                                "mongos",
                                f"--configdb={topology.config_db_string(cluster, cluster_domain)}",
                                "--bind_ip_all",
                                "--port", str(topology.MONGOS_PORT),
                            ],
                            "ports": [{"name": "mongodb", "containerPort": topology.MONGOS_PORT}],
                        }
                    ],
                },
            },
        },
    }


def _service(
    cluster: MongoDBCluster,
    name: str,
    labels: Dict[str, str],
    selector: Dict[str, str],
    port: int,
    headless: bool,
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "selector": selector,
        "ports": [{"name": "mongodb", "port": port, "targetPort": port, "protocol": "TCP"}],
    }
    if headless:
        spec["clusterIP"] = "None"
    else:
        spec["type"] = "ClusterIP"
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(cluster, name, labels),
        "spec": spec,
    }


def build_shard_network(cluster: MongoDBCluster, shard_index: int) -> Dict[str, Any]:
    """Headless service giving each shard member a stable DNS name."""
    return _service(
        cluster,
        name=topology.shard_name(cluster.name, shard_index),
        labels=topology.resource_labels(cluster.name, topology.COMPONENT_SHARD, shard_index),
        selector=topology.selector_labels(cluster.name, topology.COMPONENT_SHARD, shard_index),
        port=topology.SHARD_PORT,
        headless=True,
    )


def build_config_server_network(cluster: MongoDBCluster) -> Dict[str, Any]:
    """Headless service for the config-server replica set."""
    return _service(
        cluster,
        name=topology.config_server_name(cluster.name),
        labels=topology.resource_labels(cluster.name, topology.COMPONENT_CONFIG_SERVER),
        selector=topology.selector_labels(cluster.name, topology.COMPONENT_CONFIG_SERVER),
        port=topology.CONFIG_SERVER_PORT,
        headless=True,
    )


def build_router_network(cluster: MongoDBCluster) -> Dict[str, Any]:
    """ClusterIP service load-balancing across routers."""
    return _service(
        cluster,
        name=topology.mongos_name(cluster.name),
        labels=topology.resource_labels(cluster.name, topology.COMPONENT_MONGOS),
        selector=topology.selector_labels(cluster.name, topology.COMPONENT_MONGOS),
        port=topology.MONGOS_PORT,
        headless=False,
    )


class TopologyBuilder:
    """Converges the workloads and services of one cluster."""

    def __init__(
        self,
        resources: ResourceManager,
        image_repository: str = "mongo",
        cluster_domain: str = "cluster.local",
    ):
        self.resources = resources
        self.image_repository = image_repository
        self.cluster_domain = cluster_domain

    async def _apply(self, cluster: MongoDBCluster, manifest: Dict[str, Any]) -> ApplyResult:
        result = await self.resources.apply(manifest)
        if result is not ApplyResult.UNCHANGED:
            logger.info(
                "topology_resource_converged",
                cluster=cluster.name,
                namespace=cluster.namespace,
                kind=manifest["kind"],
                name=manifest["metadata"]["name"],
                result=result.value,
            )
        return result

    async def ensure_config_server_workload(self, cluster: MongoDBCluster) -> ApplyResult:
        return await self._apply(cluster, build_config_server_workload(cluster, self.image_repository))

    async def ensure_shard_workload(self, cluster: MongoDBCluster, shard_index: int) -> ApplyResult:
        return await self._apply(cluster, build_shard_workload(cluster, shard_index, self.image_repository))

    async def ensure_router_workload(self, cluster: MongoDBCluster) -> ApplyResult:
        return await self._apply(
            cluster, build_router_workload(cluster, self.image_repository, self.cluster_domain)
        )

    async def ensure_shard_network(self, cluster: MongoDBCluster, shard_index: int) -> ApplyResult:
        return await self._apply(cluster, build_shard_network(cluster, shard_index))

    async def ensure_config_server_network(self, cluster: MongoDBCluster) -> ApplyResult:
        return await self._apply(cluster, build_config_server_network(cluster))

    async def ensure_router_network(self, cluster: MongoDBCluster) -> ApplyResult:
        return await self._apply(cluster, build_router_network(cluster))

    async def ensure_shard(self, cluster: MongoDBCluster, shard_index: int) -> None:
        """Network first so member DNS names exist by the time pods start."""
        await self.ensure_shard_network(cluster, shard_index)
        await self.ensure_shard_workload(cluster, shard_index)
