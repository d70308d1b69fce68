"""
Reconciliation pass for a single MongoDBCluster.

A pass converges, in order:

1. workloads and services (config servers, shards, routers);
2. the config-server replica set, then every shard replica set;
3. shard registration and the sharding policy through mongos;
4. the backup job;
5. removal of owned resources the cluster spec no longer asks for;
6. the status subresource.

Each phase finishes for every shard before the next one starts; within a
phase shards are handled concurrently. Any error aborts the pass, marks the
cluster Degraded and is re-raised so the dispatcher can requeue it. Nothing
is checkpointed: the next pass redoes the same idempotent steps.
"""
import asyncio
import time
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple

from kubernetes_asyncio.client import ApiException

from mongo_operator.config.kubernetes import TRANSPORT_ERRORS, KubernetesClientSet
from mongo_operator.config.logging import cluster_context, get_logger
from mongo_operator.config.mongodb import MongoClientFactory
from mongo_operator.config.settings import Settings, settings as default_settings
from mongo_operator.exceptions import (
    KubernetesError,
    OperatorException,
    ReconcileTimeoutError,
    ResourceConflictError,
)
from mongo_operator.models.cluster import ClusterStatus, ConditionType, MongoDBCluster
from mongo_operator.models import topology
from mongo_operator.services import metrics
from mongo_operator.services.backup import BackupScheduler
from mongo_operator.services.builders import TopologyBuilder
from mongo_operator.services.replication import ReplicationBootstrapper
from mongo_operator.services.resource_manager import KINDS, ResourceManager
from mongo_operator.services.sharding import ShardingBootstrapper
from mongo_operator.services.status import (
    degraded_status,
    parse_status,
    running_status,
    status_changed,
)

logger = get_logger(__name__)

STAGE_RESOURCES = "resources"
STAGE_REPLICATION = "replication"
STAGE_SHARDING = "sharding"
STAGE_BACKUP = "backup"
STAGE_CLEANUP = "cleanup"
STAGE_STATUS = "status"

STAGE_CONDITIONS = {
    STAGE_REPLICATION: ConditionType.REPLICA_SET_READY,
    STAGE_SHARDING: ConditionType.SHARDING_READY,
    STAGE_BACKUP: ConditionType.BACKUP_SCHEDULED,
}


async def run_phase(coros: Iterable[Awaitable[Any]]) -> List[Any]:
    """
    Run independent steps concurrently and wait for all of them.

    The first failure (in submission order) is raised once every step has
    finished, so no step of the phase is left running into the next one.
    """
    results = await asyncio.gather(*coros, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


class ClusterReconciler:
    """Drives one MongoDBCluster toward its spec."""

    def __init__(
        self,
        k8s: KubernetesClientSet,
        mongo: MongoClientFactory,
        config: Optional[Settings] = None,
    ):
        self.k8s = k8s
        self.config = config or default_settings
        self.resources = ResourceManager(k8s)
        self.topology = TopologyBuilder(
            self.resources,
            image_repository=self.config.mongo_image_repository,
            cluster_domain=self.config.cluster_domain,
        )
        self.replication = ReplicationBootstrapper(
            mongo,
            probe_timeout_seconds=self.config.member_probe_timeout_seconds,
            poll_interval_seconds=self.config.primary_poll_interval_seconds,
            election_timeout_seconds=self.config.primary_election_timeout_seconds,
        )
        self.sharding = ShardingBootstrapper(mongo, timeout_seconds=self.config.member_probe_timeout_seconds)
        self.backup = BackupScheduler(
            self.resources,
            image=self.config.backup_image,
            cluster_domain=self.config.cluster_domain,
        )

    def _crd_args(self) -> Dict[str, str]:
        return {
            "group": self.config.crd_group,
            "version": self.config.crd_version,
            "plural": self.config.crd_plural,
        }

    async def get_cluster(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Read the cluster object; None if it was deleted."""
        try:
            return await self.k8s.custom_api.get_namespaced_custom_object(
                namespace=namespace, name=name, **self._crd_args()
            )
        except ApiException as e:
            if e.status == 404:
                return None
            logger.error("cluster_get_failed", namespace=namespace, name=name, status=e.status, error=e.reason)
            raise KubernetesError(f"Failed to get MongoDBCluster {namespace}/{name}: {e.reason}", status=e.status)
        except TRANSPORT_ERRORS as e:
            logger.error("cluster_get_failed", namespace=namespace, name=name, error_type=type(e).__name__, error=str(e))
            raise KubernetesError(f"Failed to get MongoDBCluster {namespace}/{name}: {type(e).__name__} {e}".rstrip())

    async def list_cluster_keys(self) -> List[Tuple[str, str]]:
        """(namespace, name) of every cluster in the watched scope."""
        try:
            if self.config.watch_namespace:
                result = await self.k8s.custom_api.list_namespaced_custom_object(
                    namespace=self.config.watch_namespace, **self._crd_args()
                )
            else:
                result = await self.k8s.custom_api.list_cluster_custom_object(**self._crd_args())
        except ApiException as e:
            raise KubernetesError(f"Failed to list MongoDBClusters: {e.reason}", status=e.status)
        except TRANSPORT_ERRORS as e:
            raise KubernetesError(f"Failed to list MongoDBClusters: {type(e).__name__} {e}".rstrip())
        return [
            (item["metadata"].get("namespace", "default"), item["metadata"]["name"])
            for item in result.get("items", [])
        ]

    async def reconcile(self, namespace: str, name: str) -> Optional[ClusterStatus]:
        """
        Run one bounded reconciliation pass.

        Returns:
            The status written (or already current), None if the object is gone

        Raises:
            OperatorException: Any failure of the pass, after Degraded was recorded
        """
        key = f"{namespace}/{name}"
        started = time.monotonic()
        with cluster_context(namespace, name):
            # Only the pass deadline counts as a timeout; a TimeoutError raised
            # inside the pass is an ordinary failure of that pass.
            task = asyncio.ensure_future(self._reconcile(namespace, name))
            try:
                done, _ = await asyncio.wait({task}, timeout=self.config.reconcile_timeout_seconds)
            except asyncio.CancelledError:
                task.cancel()
                raise

            if not done:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                error = ReconcileTimeoutError(key, self.config.reconcile_timeout_seconds)
                logger.error("reconcile_timeout", timeout_seconds=self.config.reconcile_timeout_seconds)
                await self._mark_degraded(namespace, name, await self._stored_status(namespace, name), error, None)
                metrics.record_reconcile("timeout", time.monotonic() - started)
                raise error

            try:
                status = task.result()
            except Exception:
                metrics.record_reconcile("error", time.monotonic() - started)
                raise

            metrics.record_reconcile("success" if status else "deleted", time.monotonic() - started)
            return status

    async def _reconcile(self, namespace: str, name: str) -> Optional[ClusterStatus]:
        obj = await self.get_cluster(namespace, name)
        if obj is None:
            logger.info("cluster_not_found_skipping")
            return None

        cluster = MongoDBCluster.from_object(obj)
        previous = parse_status(obj.get("status"))
        stage = STAGE_RESOURCES

        logger.info(
            "reconcile_started",
            generation=cluster.metadata.generation,
            shards=cluster.spec.replica_set_count,
            shard_size=cluster.spec.replica_set_size,
        )

        try:
            await self.converge_resources(cluster)

            stage = STAGE_REPLICATION
            await self.bootstrap_replication(cluster)

            stage = STAGE_SHARDING
            sharding_configured = await self.bootstrap_sharding(cluster)

            stage = STAGE_BACKUP
            await self.backup.ensure(cluster)

            stage = STAGE_CLEANUP
            await self.delete_orphans(cluster)

            stage = STAGE_STATUS
            last_backup = await self.backup.last_successful_backup(cluster)
            status = running_status(cluster, previous, sharding_configured, last_backup)
            await self.write_status(obj, previous, status)

        except Exception as e:
            logger.error(
                "reconcile_failed",
                stage=stage,
                error_type=type(e).__name__,
                error=str(e),
                exc_info=not isinstance(e, OperatorException),
            )
            await self._mark_degraded(namespace, name, previous, e, STAGE_CONDITIONS.get(stage))
            raise

        logger.info("reconcile_completed", phase=status.phase.value, replica_summary=status.replica_summary)
        return status

    async def converge_resources(self, cluster: MongoDBCluster) -> None:
        """Workloads and services, config servers first, shards in parallel, routers last."""
        await self.topology.ensure_config_server_workload(cluster)
        await run_phase(
            self.topology.ensure_shard(cluster, i) for i in range(cluster.spec.replica_set_count)
        )
        await self.topology.ensure_router_workload(cluster)
        await self.topology.ensure_config_server_network(cluster)
        await self.topology.ensure_router_network(cluster)

    async def bootstrap_replication(self, cluster: MongoDBCluster) -> None:
        domain = self.config.cluster_domain
        await self.replication.bootstrap(topology.config_server_replica_set(cluster, domain))
        await run_phase(
            self.replication.bootstrap(topology.shard_replica_set(cluster, i, domain))
            for i in range(cluster.spec.replica_set_count)
        )

    async def bootstrap_sharding(self, cluster: MongoDBCluster) -> bool:
        """Returns True when at least one shard is registered."""
        domain = self.config.cluster_domain
        shards = topology.shard_descriptors(cluster, domain)
        await self.sharding.bootstrap(topology.mongos_uri(cluster, domain), shards, cluster.spec.sharding)
        return any(shard.members for shard in shards)

    async def delete_orphans(self, cluster: MongoDBCluster) -> List[Tuple[str, str]]:
        """
        Delete owned resources whose names the current cluster spec no longer implies.

        Returns:
            (kind, name) of every deleted resource
        """
        wanted = topology.desired_resource_names(cluster)
        selector = topology.owned_selector(cluster.name)
        deleted = []
        for kind in KINDS:
            for item in await self.resources.list_resources(kind, cluster.namespace, selector):
                meta = item.get("metadata", {})
                item_name = meta.get("name")
                if item_name in wanted[kind] or not self._owned_by(meta, cluster):
                    continue
                if await self.resources.delete(kind, item_name, cluster.namespace):
                    logger.info("orphaned_resource_deleted", kind=kind, name=item_name)
                    deleted.append((kind, item_name))
        return deleted

    @staticmethod
    def _owned_by(meta: Dict[str, Any], cluster: MongoDBCluster) -> bool:
        if not cluster.metadata.uid:
            return True
        return any(ref.get("uid") == cluster.metadata.uid for ref in meta.get("ownerReferences") or [])

    async def write_status(
        self, obj: Dict[str, Any], previous: Optional[ClusterStatus], status: ClusterStatus
    ) -> bool:
        """
        Replace the status subresource with the resourceVersion read at the start of the pass.

        Returns:
            False if the stored status already matched
        """
        if not status_changed(previous, status):
            logger.debug("status_unchanged")
            return False

        meta = obj["metadata"]
        body = dict(obj)
        body["status"] = status.to_body()
        try:
            await self.k8s.custom_api.replace_namespaced_custom_object_status(
                namespace=meta["namespace"], name=meta["name"], body=body, **self._crd_args()
            )
        except ApiException as e:
            if e.status == 409:
                raise ResourceConflictError(self.config.crd_kind, meta["name"], meta["namespace"])
            raise KubernetesError(f"Failed to update status of {meta['namespace']}/{meta['name']}: {e.reason}", status=e.status)
        except TRANSPORT_ERRORS as e:
            raise KubernetesError(
                f"Failed to update status of {meta['namespace']}/{meta['name']}: {type(e).__name__} {e}".rstrip()
            )
        logger.info("status_updated", phase=status.phase.value)
        return True

    async def _stored_status(self, namespace: str, name: str) -> Optional[ClusterStatus]:
        try:
            obj = await self.get_cluster(namespace, name)
        except KubernetesError:
            return None
        return parse_status(obj.get("status")) if obj else None

    async def _mark_degraded(
        self,
        namespace: str,
        name: str,
        previous: Optional[ClusterStatus],
        error: BaseException,
        failed_condition: Optional[ConditionType],
    ) -> None:
        """Best-effort merge patch recording why the last pass aborted."""
        reason = error.reason if isinstance(error, OperatorException) else type(error).__name__
        status = degraded_status(previous, reason, str(error), failed_condition)
        try:
            await self.k8s.custom_api.patch_namespaced_custom_object_status(
                namespace=namespace,
                name=name,
                body={"status": status.to_body()},
                _content_type="application/merge-patch+json",
                **self._crd_args(),
            )
            logger.info("status_marked_degraded", reason=reason)
        except ApiException as e:
            logger.warning("degraded_status_write_failed", status=e.status, error=e.reason)
        except TRANSPORT_ERRORS as e:
            logger.warning("degraded_status_write_failed", error_type=type(e).__name__, error=str(e))
