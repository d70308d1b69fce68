"""
Create-or-update protocol for resources owned by a MongoDBCluster.

Given a desired manifest the manager reads the live object of the same name
and then:

- creates it when the read returns 404;
- leaves it alone when every field of the desired manifest already matches;
- otherwise replaces it, carrying forward the live resourceVersion so the
  API server accepts the write only if nobody changed the object since.

Any other read error and any conflict on write is surfaced to the caller, and
so is a request that never got an answer from the API server.
"""
import copy
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from kubernetes_asyncio.client import ApiException

from mongo_operator.config.kubernetes import TRANSPORT_ERRORS, KubernetesClientSet
from mongo_operator.config.logging import get_logger
from mongo_operator.exceptions import KubernetesError, ResourceConflictError
from mongo_operator.services import metrics
from mongo_operator.utils.retry import retry_on_k8s_error

logger = get_logger(__name__)


class ApplyResult(str, Enum):
    """Outcome of an apply call."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ResourceKind:
    """Maps a kind onto the typed client methods that manage it."""

    kind: str
    api: str
    method_suffix: str


STATEFUL_SET = ResourceKind("StatefulSet", "apps_api", "namespaced_stateful_set")
DEPLOYMENT = ResourceKind("Deployment", "apps_api", "namespaced_deployment")
SERVICE = ResourceKind("Service", "core_api", "namespaced_service")
CRON_JOB = ResourceKind("CronJob", "batch_api", "namespaced_cron_job")

KINDS: Dict[str, ResourceKind] = {k.kind: k for k in (STATEFUL_SET, DEPLOYMENT, SERVICE, CRON_JOB)}

# Fields the API server allocates on a Service and refuses to see cleared on update
_SERVICE_ALLOCATED_FIELDS = ("clusterIP", "clusterIPs")


def is_subset(desired: Any, live: Any) -> bool:
    """
    True if every field set in ``desired`` has the same value in ``live``.

    Fields only present on the live object (server defaults, status) are
    ignored. Lists must match element by element.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(k in live and is_subset(v, live[k]) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return desired == live


class ResourceManager:
    """Applies, lists and deletes managed resources through typed Kubernetes clients."""

    def __init__(self, k8s: KubernetesClientSet):
        self.k8s = k8s

    def _method(self, kind: ResourceKind, verb: str):
        return getattr(getattr(self.k8s, kind.api), f"{verb}_{kind.method_suffix}")

    @staticmethod
    def _transport_error(action: str, kind: str, target: str, error: BaseException) -> KubernetesError:
        logger.error(
            "managed_resource_request_failed",
            action=action,
            kind=kind,
            target=target,
            error_type=type(error).__name__,
            error=str(error),
        )
        return KubernetesError(f"Failed to {action} {kind} {target}: {type(error).__name__} {error}".rstrip())

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def get(self, kind: str, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        """
        Read a managed resource.

        Returns:
            The live object as a camelCase dict, or None if it does not exist

        Raises:
            ApiException: For errors other than 404 (wrapped by callers)
        """
        read = self._method(KINDS[kind], "read")
        try:
            obj = await read(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return self.k8s.to_dict(obj)

    async def apply(self, manifest: Dict[str, Any]) -> ApplyResult:
        """
        Create or update ``manifest``.

        Raises:
            ResourceConflictError: If the object changed between read and write
            KubernetesError: For any other API failure
        """
        kind = KINDS[manifest["kind"]]
        name = manifest["metadata"]["name"]
        namespace = manifest["metadata"]["namespace"]

        try:
            existing = await self.get(kind.kind, name, namespace)
        except ApiException as e:
            logger.error(
                "managed_resource_read_failed",
                kind=kind.kind,
                name=name,
                namespace=namespace,
                status=e.status,
                error=e.reason,
            )
            raise KubernetesError(f"Failed to read {kind.kind} {namespace}/{name}: {e.reason}", status=e.status)
        except TRANSPORT_ERRORS as e:
            raise self._transport_error("read", kind.kind, f"{namespace}/{name}", e)

        if existing is None:
            await self._create(kind, manifest)
            return ApplyResult.CREATED

        if is_subset(manifest, existing):
            logger.debug("managed_resource_unchanged", kind=kind.kind, name=name, namespace=namespace)
            return ApplyResult.UNCHANGED

        body = copy.deepcopy(manifest)
        body["metadata"]["resourceVersion"] = existing["metadata"]["resourceVersion"]
        if kind is SERVICE:
            live_spec = existing.get("spec", {})
            for field_name in _SERVICE_ALLOCATED_FIELDS:
                if field_name in live_spec and field_name not in body["spec"]:
                    body["spec"][field_name] = live_spec[field_name]

        await self._replace(kind, body)
        return ApplyResult.UPDATED

    async def _create(self, kind: ResourceKind, body: Dict[str, Any]) -> None:
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        create = self._method(kind, "create")
        try:
            await create(namespace=namespace, body=body)
        except ApiException as e:
            if e.status == 409:
                # Created by someone else between our read and write
                raise ResourceConflictError(kind.kind, name, namespace)
            logger.error(
                "managed_resource_create_failed",
                kind=kind.kind,
                name=name,
                namespace=namespace,
                status=e.status,
                error=e.reason,
            )
            raise KubernetesError(f"Failed to create {kind.kind} {namespace}/{name}: {e.reason}", status=e.status)
        except TRANSPORT_ERRORS as e:
            raise self._transport_error("create", kind.kind, f"{namespace}/{name}", e)

        metrics.record_resource_mutation(kind.kind, "create")
        logger.info("managed_resource_created", kind=kind.kind, name=name, namespace=namespace)

    async def _replace(self, kind: ResourceKind, body: Dict[str, Any]) -> None:
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        replace = self._method(kind, "replace")
        try:
            await replace(name=name, namespace=namespace, body=body)
        except ApiException as e:
            if e.status == 409:
                logger.warning(
                    "managed_resource_conflict",
                    kind=kind.kind,
                    name=name,
                    namespace=namespace,
                    resource_version=body["metadata"]["resourceVersion"],
                )
                raise ResourceConflictError(kind.kind, name, namespace)
            logger.error(
                "managed_resource_update_failed",
                kind=kind.kind,
                name=name,
                namespace=namespace,
                status=e.status,
                error=e.reason,
            )
            raise KubernetesError(f"Failed to update {kind.kind} {namespace}/{name}: {e.reason}", status=e.status)
        except TRANSPORT_ERRORS as e:
            raise self._transport_error("update", kind.kind, f"{namespace}/{name}", e)

        metrics.record_resource_mutation(kind.kind, "update")
        logger.info("managed_resource_updated", kind=kind.kind, name=name, namespace=namespace)

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _list(self, kind: str, namespace: str, label_selector: str) -> Dict[str, Any]:
        list_fn = self._method(KINDS[kind], "list")
        return self.k8s.to_dict(await list_fn(namespace=namespace, label_selector=label_selector))

    async def list_resources(self, kind: str, namespace: str, label_selector: str) -> List[Dict[str, Any]]:
        """
        List resources of one kind matching a label selector.

        Raises:
            KubernetesError: If the list call fails
        """
        try:
            result = await self._list(kind, namespace, label_selector)
        except ApiException as e:
            logger.error("managed_resource_list_failed", kind=kind, namespace=namespace, status=e.status, error=e.reason)
            raise KubernetesError(f"Failed to list {kind} in {namespace}: {e.reason}", status=e.status)
        except TRANSPORT_ERRORS as e:
            raise self._transport_error("list", kind, f"in {namespace}", e)
        return result.get("items") or []

    async def delete(self, kind: str, name: str, namespace: str) -> bool:
        """
        Delete a managed resource, letting its dependents go in the background.

        Returns:
            True if deleted, False if it was already gone
        """
        delete = self._method(KINDS[kind], "delete")
        try:
            await delete(name=name, namespace=namespace, propagation_policy="Background")
        except ApiException as e:
            if e.status == 404:
                return False
            logger.error(
                "managed_resource_delete_failed",
                kind=kind,
                name=name,
                namespace=namespace,
                status=e.status,
                error=e.reason,
            )
            raise KubernetesError(f"Failed to delete {kind} {namespace}/{name}: {e.reason}", status=e.status)
        except TRANSPORT_ERRORS as e:
            raise self._transport_error("delete", kind, f"{namespace}/{name}", e)

        metrics.record_resource_mutation(kind, "delete")
        logger.info("managed_resource_deleted", kind=kind, name=name, namespace=namespace)
        return True
