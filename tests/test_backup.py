"""
Tests for the scheduled backup job.
"""
import pytest

from mongo_operator.models.cluster import MongoDBCluster
from mongo_operator.services.backup import BackupScheduler, build_backup_job
from mongo_operator.services.resource_manager import ApplyResult, ResourceManager

from tests.conftest import NAMESPACE, make_cluster_object

BACKUP = {
    "enabled": True,
    "schedule": "0 3 * * *",
    "storageEndpoint": "https://s3.example.com",
    "bucket": "mongo-backups",
    "secretRef": {"name": "s3-credentials"},
}


@pytest.fixture
def scheduler(k8s) -> BackupScheduler:
    return BackupScheduler(ResourceManager(k8s), image="backup:test")


def test_backup_job_manifest():
    cluster = MongoDBCluster.from_object(make_cluster_object(backup=BACKUP))
    job = build_backup_job(cluster, image="backup:test")

    assert job["kind"] == "CronJob"
    assert job["metadata"]["name"] == "demo-backup"
    assert job["spec"]["schedule"] == "0 3 * * *"
    assert job["spec"]["concurrencyPolicy"] == "Forbid"

    pod = job["spec"]["jobTemplate"]["spec"]["template"]["spec"]
    assert pod["restartPolicy"] == "Never"
    container = pod["containers"][0]
    assert container["image"] == "backup:test"
    assert container["command"] == ["sh", "-c"]
    script = container["args"][0]
    assert f'mongodump --uri="mongodb://demo-mongos.{NAMESPACE}.svc.cluster.local:27017" --archive' in script
    assert "s3://mongo-backups/$BACKUP_NAME" in script

    env = {e["name"]: e for e in container["env"]}
    assert env["AWS_ACCESS_KEY_ID"]["valueFrom"]["secretKeyRef"] == {"name": "s3-credentials", "key": "accessKey"}
    assert env["AWS_SECRET_ACCESS_KEY"]["valueFrom"]["secretKeyRef"] == {"name": "s3-credentials", "key": "secretKey"}
    assert env["AWS_ENDPOINT_URL"]["value"] == "https://s3.example.com"


@pytest.mark.asyncio
async def test_disabled_backup_creates_nothing(scheduler, k8s):
    cluster = MongoDBCluster.from_object(make_cluster_object())
    assert await scheduler.ensure(cluster) is None
    assert k8s.store.names("CronJob") == []
    assert await scheduler.last_successful_backup(cluster) is None


@pytest.mark.asyncio
async def test_enabled_backup_creates_one_job(scheduler, k8s):
    cluster = MongoDBCluster.from_object(make_cluster_object(backup=BACKUP))
    assert await scheduler.ensure(cluster) is ApplyResult.CREATED
    assert await scheduler.ensure(cluster) is ApplyResult.UNCHANGED
    assert k8s.store.names("CronJob") == ["demo-backup"]


@pytest.mark.asyncio
async def test_last_successful_backup(scheduler, k8s):
    cluster = MongoDBCluster.from_object(make_cluster_object(backup=BACKUP))
    await scheduler.ensure(cluster)
    assert await scheduler.last_successful_backup(cluster) is None

    k8s.store.get("CronJob", "demo-backup")["status"] = {"lastSuccessfulTime": "2026-10-18T03:00:41Z"}
    assert await scheduler.last_successful_backup(cluster) == "2026-10-18T03:00:41Z"
