"""
Scheduled backups of a cluster to S3-compatible object storage.

The CronJob runs mongodump against the router service, compresses the
archive and uploads it with the aws cli. Credentials come from the secret
named in ``spec.backup.secretRef`` (keys ``accessKey`` and ``secretKey``).
"""
from typing import Any, Dict, Optional

from kubernetes_asyncio.client import ApiException

from mongo_operator.config.kubernetes import TRANSPORT_ERRORS
from mongo_operator.config.logging import get_logger
from mongo_operator.models.cluster import MongoDBCluster
from mongo_operator.models import topology
from mongo_operator.services.resource_manager import ApplyResult, ResourceManager

logger = get_logger(__name__)

ACCESS_KEY_SECRET_KEY = "accessKey"
SECRET_KEY_SECRET_KEY = "secretKey"

BACKUP_SCRIPT = """
BACKUP_NAME="backup-$(date +%F-%H%M%S).gz"
mongodump --uri="{mongo_uri}" --archive | gzip > $BACKUP_NAME
aws --endpoint-url=$AWS_ENDPOINT_URL s3 cp $BACKUP_NAME s3://{bucket}/$BACKUP_NAME
"""


def _secret_env(env_name: str, secret_name: str, key: str) -> Dict[str, Any]:
    return {
        "name": env_name,
        "valueFrom": {"secretKeyRef": {"name": secret_name, "key": key}},
    }


def build_backup_script(mongo_uri: str, bucket: str) -> str:
    return BACKUP_SCRIPT.format(mongo_uri=mongo_uri, bucket=bucket)


def build_backup_job(
    cluster: MongoDBCluster,
    image: str = "sadegh81/mongo-aws:latest",
    cluster_domain: str = "cluster.local",
) -> Dict[str, Any]:
    """CronJob dumping the whole cluster through mongos on the configured schedule."""
    backup = cluster.spec.backup
    secret_name = backup.secret_ref.name
    labels = topology.resource_labels(cluster.name, topology.COMPONENT_BACKUP)

    return {
        "apiVersion": "batch/v1",
        "kind": "CronJob",
        "metadata": {
            "name": topology.backup_job_name(cluster.name),
            "namespace": cluster.namespace,
            "labels": labels,
            "ownerReferences": [cluster.owner_reference()],
        },
        "spec": {
            "schedule": backup.schedule,
            "concurrencyPolicy": "Forbid",
            "jobTemplate": {
                "spec": {
                    "template": {
                        "metadata": {"labels": labels},
                        "spec": {
                            "restartPolicy": "Never",
                            "containers": [
                                {
                                    "name": "mongodump",
                                    "image": image,
                                    "command": ["sh", "-c"],
                                    "args": [
                                        build_backup_script(
                                            topology.mongos_uri(cluster, cluster_domain), backup.bucket
                                        )
                                    ],
                                    "env": [
                                        _secret_env("AWS_ACCESS_KEY_ID", secret_name, ACCESS_KEY_SECRET_KEY),
                                        _secret_env("AWS_SECRET_ACCESS_KEY", secret_name, SECRET_KEY_SECRET_KEY),
                                        {"name": "AWS_ENDPOINT_URL", "value": backup.storage_endpoint},
                                    ],
                                }
                            ],
                        },
                    },
                },
            },
        },
    }


class BackupScheduler:
    """Converges the backup CronJob of a cluster."""

    def __init__(
        self,
        resources: ResourceManager,
        image: str = "sadegh81/mongo-aws:latest",
        cluster_domain: str = "cluster.local",
    ):
        self.resources = resources
        self.image = image
        self.cluster_domain = cluster_domain

    async def ensure(self, cluster: MongoDBCluster) -> Optional[ApplyResult]:
        """
        Create or update the backup job when backup is enabled.

        Returns:
            The apply result, or None when backup is disabled. A job left over
            from an earlier enabled spec is removed by orphan cleanup, not here.
        """
        if not cluster.spec.backup.enabled:
            logger.debug("backup_disabled", cluster=cluster.name, namespace=cluster.namespace)
            return None

        result = await self.resources.apply(build_backup_job(cluster, self.image, self.cluster_domain))
        if result is not ApplyResult.UNCHANGED:
            logger.info(
                "backup_job_converged",
                cluster=cluster.name,
                namespace=cluster.namespace,
                schedule=cluster.spec.backup.schedule,
                bucket=cluster.spec.backup.bucket,
                result=result.value,
            )
        return result

    async def last_successful_backup(self, cluster: MongoDBCluster) -> Optional[str]:
        """Completion time of the last successful backup job, if any."""
        if not cluster.spec.backup.enabled:
            return None
        try:
            job = await self.resources.get("CronJob", topology.backup_job_name(cluster.name), cluster.namespace)
        except ApiException as e:
            logger.warning(
                "backup_job_status_unavailable",
                cluster=cluster.name,
                namespace=cluster.namespace,
                status=e.status,
                error=e.reason,
            )
            return None
        except TRANSPORT_ERRORS as e:
            logger.warning(
                "backup_job_status_unavailable",
                cluster=cluster.name,
                namespace=cluster.namespace,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None
        if not job:
            return None
        last = (job.get("status") or {}).get("lastSuccessfulTime")
        return str(last) if last else None
