"""
Pytest configuration and fixtures.

The Kubernetes API and MongoDB are replaced by in-memory fakes that keep
just enough server behaviour (resourceVersion checks, replica set state,
shard registry) to exercise the operator's protocols.
"""
import copy
import itertools
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from kubernetes_asyncio.client import ApiException
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

from mongo_operator.config.settings import Settings
from mongo_operator.services.reconciler import ClusterReconciler

CLUSTER_NAME = "demo"
NAMESPACE = "databases"
CLUSTER_UID = "6b1f6c9e-0000-4000-8000-000000000001"

SUFFIX_KINDS = {
    "namespaced_stateful_set": "StatefulSet",
    "namespaced_deployment": "Deployment",
    "namespaced_service": "Service",
    "namespaced_cron_job": "CronJob",
}


def _matches_selector(labels: Dict[str, str], selector: Optional[str]) -> bool:
    if not selector:
        return True
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


def _merge(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


class FakeResourceStore:
    """Objects keyed by (kind, namespace, name), with optimistic concurrency."""

    def __init__(self):
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.mutations: List[Tuple[str, str, str]] = []
        self._versions = itertools.count(100)
        self._ips = itertools.count(10)
        self.fail_next: Dict[str, Exception] = {}

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _maybe_fail(self, verb: str, kind: str) -> None:
        error = self.fail_next.pop(f"{verb}:{kind}", None)
        if error:
            raise error

    def put(self, kind: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Seed an object directly, bypassing the mutation log."""
        obj = copy.deepcopy(body)
        meta = obj.setdefault("metadata", {})
        meta["resourceVersion"] = self._next_version()
        self.objects[(kind, meta["namespace"], meta["name"])] = obj
        return obj

    def read(self, kind: str, name: str, namespace: str) -> Dict[str, Any]:
        self._maybe_fail("read", kind)
        obj = self.objects.get((kind, namespace, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(obj)

    def create(self, kind: str, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._maybe_fail("create", kind)
        name = body["metadata"]["name"]
        if (kind, namespace, name) in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        obj = copy.deepcopy(body)
        obj["metadata"]["resourceVersion"] = self._next_version()
        obj["metadata"]["uid"] = f"uid-{kind.lower()}-{name}"
        if kind == "Service" and "clusterIP" not in obj["spec"]:
            obj["spec"]["clusterIP"] = f"10.96.0.{next(self._ips)}"
            obj["spec"]["clusterIPs"] = [obj["spec"]["clusterIP"]]
        self.objects[(kind, namespace, name)] = obj
        self.mutations.append(("create", kind, name))
        return copy.deepcopy(obj)

    def replace(self, kind: str, name: str, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._maybe_fail("replace", kind)
        live = self.objects.get((kind, namespace, name))
        if live is None:
            raise ApiException(status=404, reason="Not Found")
        if body["metadata"].get("resourceVersion") != live["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        if kind == "Service" and body["spec"].get("clusterIP") != live["spec"].get("clusterIP"):
            raise ApiException(status=422, reason="spec.clusterIP: Invalid value: field is immutable")
        obj = copy.deepcopy(body)
        obj["metadata"]["resourceVersion"] = self._next_version()
        obj["metadata"]["uid"] = live["metadata"].get("uid")
        if "status" in live:
            obj["status"] = live["status"]
        self.objects[(kind, namespace, name)] = obj
        self.mutations.append(("replace", kind, name))
        return copy.deepcopy(obj)

    def list(self, kind: str, namespace: str, label_selector: Optional[str]) -> Dict[str, Any]:
        self._maybe_fail("list", kind)
        items = [
            copy.deepcopy(obj)
            for (k, ns, _), obj in sorted(self.objects.items())
            if k == kind and ns == namespace and _matches_selector(obj["metadata"].get("labels", {}), label_selector)
        ]
        return {"items": items}

    def delete(self, kind: str, name: str, namespace: str) -> None:
        self._maybe_fail("delete", kind)
        if self.objects.pop((kind, namespace, name), None) is None:
            raise ApiException(status=404, reason="Not Found")
        self.mutations.append(("delete", kind, name))

    def names(self, kind: str) -> List[str]:
        return sorted(name for (k, _, name) in self.objects if k == kind)

    def get(self, kind: str, name: str, namespace: str = NAMESPACE) -> Optional[Dict[str, Any]]:
        return self.objects.get((kind, namespace, name))


class FakeTypedApi:
    """Stands in for AppsV1Api, CoreV1Api and BatchV1Api."""

    def __init__(self, store: FakeResourceStore):
        self.store = store

    def __getattr__(self, attr: str):
        verb, _, suffix = attr.partition("_")
        kind = SUFFIX_KINDS.get(suffix)
        if kind is None:
            raise AttributeError(attr)

        async def call(name=None, namespace=None, body=None, label_selector=None, **kwargs):
            if verb == "read":
                return self.store.read(kind, name, namespace)
            if verb == "create":
                return self.store.create(kind, namespace, body)
            if verb == "replace":
                return self.store.replace(kind, name, namespace, body)
            if verb == "list":
                return self.store.list(kind, namespace, label_selector)
            if verb == "delete":
                return self.store.delete(kind, name, namespace)
            raise AttributeError(attr)

        return call


class FakeCustomObjectsApi:
    """MongoDBCluster objects with a status subresource."""

    def __init__(self):
        self.objects: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.status_replaces = 0
        self.status_patches: List[Dict[str, Any]] = []
        self._versions = itertools.count(1)
        self.fail_next: Dict[str, Exception] = {}

    def add(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        obj = copy.deepcopy(obj)
        obj["metadata"]["resourceVersion"] = str(next(self._versions))
        self.objects[(obj["metadata"]["namespace"], obj["metadata"]["name"])] = obj
        return obj

    def update_spec(self, namespace: str, name: str, **spec_changes) -> Dict[str, Any]:
        obj = self.objects[(namespace, name)]
        obj["spec"].update(spec_changes)
        obj["metadata"]["generation"] = obj["metadata"].get("generation", 1) + 1
        obj["metadata"]["resourceVersion"] = str(next(self._versions))
        return obj

    def status_of(self, namespace: str = NAMESPACE, name: str = CLUSTER_NAME) -> Dict[str, Any]:
        return self.objects[(namespace, name)].get("status", {})

    def _get(self, namespace: str, name: str) -> Dict[str, Any]:
        obj = self.objects.get((namespace, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return obj

    async def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        error = self.fail_next.pop("get", None)
        if error:
            raise error
        return copy.deepcopy(self._get(namespace, name))

    async def list_namespaced_custom_object(self, group, version, namespace, plural, **kwargs):
        return {"items": [copy.deepcopy(o) for (ns, _), o in self.objects.items() if ns == namespace]}

    async def list_cluster_custom_object(self, group, version, plural, **kwargs):
        return {"items": [copy.deepcopy(o) for o in self.objects.values()]}

    async def replace_namespaced_custom_object_status(self, group, version, namespace, plural, name, body):
        obj = self._get(namespace, name)
        if body["metadata"].get("resourceVersion") != obj["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        obj["status"] = copy.deepcopy(body["status"])
        obj["metadata"]["resourceVersion"] = str(next(self._versions))
        self.status_replaces += 1
        return copy.deepcopy(obj)

    async def patch_namespaced_custom_object_status(
        self, group, version, namespace, plural, name, body, _content_type=None
    ):
        obj = self._get(namespace, name)
        _merge(obj, body)
        obj["metadata"]["resourceVersion"] = str(next(self._versions))
        self.status_patches.append(copy.deepcopy(body))
        return copy.deepcopy(obj)


class FakeKubernetes:
    """Drop-in for KubernetesClientSet."""

    def __init__(self):
        self.store = FakeResourceStore()
        self.custom_api = FakeCustomObjectsApi()
        self.apps_api = FakeTypedApi(self.store)
        self.core_api = FakeTypedApi(self.store)
        self.batch_api = FakeTypedApi(self.store)
        self.healthy = True

    def to_dict(self, obj):
        return copy.deepcopy(obj)

    async def ping(self) -> bool:
        return self.healthy

    async def close(self):
        pass


class FakeMongoServer:
    """
    Shared state of every mongod and mongos the fake factory connects to.

    Replica set membership is learned from replSetInitiate; a host answers
    replSetGetStatus only once its set was initiated.
    """

    def __init__(self):
        self.unreachable: set = set()
        self.host_sets: Dict[str, str] = {}
        self.initiated: Dict[str, Dict[str, Any]] = {}
        self.never_elect: set = set()
        self.reject_initiate: Dict[str, OperationFailure] = {}
        self.shards: Dict[str, str] = {}
        self.sharded_databases: set = set()
        self.sharded_collections: Dict[str, Dict[str, Any]] = {}
        self.commands: List[Tuple[str, str, Any]] = []
        self.add_shard_duplicate_code = 11000
        self.enable_sharding_already_error = True

    def command_names(self, name: str) -> List[Any]:
        return [value for (_, n, value) in self.commands if n == name]


class FakeAdminDatabase:
    def __init__(self, server: FakeMongoServer, host: str, router: bool):
        self.server = server
        self.host = host
        self.router = router

    async def command(self, name, value=1, **kwargs):
        server = self.server
        if self.host in server.unreachable:
            raise ServerSelectionTimeoutError(f"{self.host}: timed out")
        server.commands.append((self.host, name, value))

        if name == "ping":
            return {"ok": 1}
        if self.router:
            return self._router_command(name, value, kwargs)
        return self._member_command(name, value)

    def _member_command(self, name, value):
        server = self.server
        rs = server.host_sets.get(self.host)
        if name == "replSetGetStatus":
            if rs is None:
                raise OperationFailure("no replset config has been received", code=94)
            state = "SECONDARY" if rs in server.never_elect else "PRIMARY"
            return {"set": rs, "members": [{"name": self.host, "stateStr": state}]}
        if name == "isMaster":
            return {"ismaster": rs is not None and rs not in server.never_elect}
        if name == "replSetInitiate":
            if value["_id"] in server.reject_initiate:
                raise server.reject_initiate[value["_id"]]
            if rs is not None or value["_id"] in server.initiated:
                raise OperationFailure("already initialized", code=23)
            server.initiated[value["_id"]] = value
            for member in value["members"]:
                server.host_sets[member["host"]] = value["_id"]
            return {"ok": 1}
        raise OperationFailure(f"no such command: '{name}'", code=59)

    def _router_command(self, name, value, kwargs):
        server = self.server
        if name == "addShard":
            rs_name, _, _ = value.partition("/")
            if rs_name in server.shards:
                raise OperationFailure(
                    f"E11000 duplicate key error collection: config.shards index: _id_ dup key: {rs_name}",
                    code=server.add_shard_duplicate_code,
                )
            server.shards[rs_name] = value
            return {"shardAdded": rs_name, "ok": 1}
        if name == "enableSharding":
            if value in server.sharded_databases and server.enable_sharding_already_error:
                raise OperationFailure(f"sharding already enabled for database {value}", code=23)
            server.sharded_databases.add(value)
            return {"ok": 1}
        if name == "shardCollection":
            key = kwargs["key"]
            existing = server.sharded_collections.get(value)
            if existing is not None and existing != key:
                raise OperationFailure("collection already sharded with different key", code=20)
            server.sharded_collections[value] = key
            return {"collectionsharded": value, "ok": 1}
        raise OperationFailure(f"no such command: '{name}'", code=59)


class FakeMongoClient:
    def __init__(self, server: FakeMongoServer, uri: str):
        self.uri = uri
        host = uri[len("mongodb://"):]
        self.admin = FakeAdminDatabase(server, host, router="-mongos." in host)
        self.closed = False

    def close(self):
        self.closed = True


class FakeMongoFactory:
    """Drop-in for MongoClientFactory."""

    def __init__(self, server: Optional[FakeMongoServer] = None):
        self.server = server or FakeMongoServer()
        self.clients: List[FakeMongoClient] = []

    def create(self, uri: str, direct: bool = False, timeout_seconds: Optional[float] = None) -> FakeMongoClient:
        client = FakeMongoClient(self.server, uri)
        self.clients.append(client)
        return client

    @asynccontextmanager
    async def connect(self, uri: str, direct: bool = False, timeout_seconds: Optional[float] = None):
        client = self.create(uri, direct=direct, timeout_seconds=timeout_seconds)
        try:
            yield client
        finally:
            client.close()


def make_cluster_object(
    name: str = CLUSTER_NAME,
    namespace: str = NAMESPACE,
    replica_set_count: int = 2,
    replica_set_size: int = 3,
    backup: Optional[Dict[str, Any]] = None,
    sharding: Optional[Dict[str, Any]] = None,
    **spec_overrides,
) -> Dict[str, Any]:
    spec = {
        "replicaSetCount": replica_set_count,
        "replicaSetSize": replica_set_size,
        "configServerCount": 3,
        "mongosCount": 1,
        "version": "6.0",
        "storageSize": "1Gi",
        "backup": backup or {"enabled": False},
    }
    if sharding is not None:
        spec["sharding"] = sharding
    spec.update(spec_overrides)
    return {
        "apiVersion": "database.sadegh.msm/v1alpha1",
        "kind": "MongoDBCluster",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": CLUSTER_UID,
            "generation": 1,
        },
        "spec": spec,
    }


@pytest.fixture
def test_settings() -> Settings:
    """Settings with short bootstrap bounds."""
    return Settings(
        environment="testing",
        member_probe_timeout_seconds=0.1,
        primary_poll_interval_seconds=0.01,
        primary_election_timeout_seconds=0.2,
        reconcile_timeout_seconds=5.0,
        requeue_base_delay_seconds=0.01,
        requeue_max_delay_seconds=0.05,
    )


@pytest.fixture
def k8s() -> FakeKubernetes:
    return FakeKubernetes()


@pytest.fixture
def mongo() -> FakeMongoFactory:
    return FakeMongoFactory()


@pytest.fixture
def cluster_object() -> Dict[str, Any]:
    return make_cluster_object()


@pytest.fixture
def reconciler(k8s: FakeKubernetes, mongo: FakeMongoFactory, test_settings: Settings) -> ClusterReconciler:
    return ClusterReconciler(k8s, mongo, test_settings)


@pytest_asyncio.fixture
async def test_client() -> AsyncGenerator[AsyncClient, None]:
    """Create test client without running the operator lifespan."""
    from mongo_operator.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
