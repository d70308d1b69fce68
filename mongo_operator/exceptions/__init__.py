"""
Custom exceptions for the MongoDB cluster operator.

Every error that aborts a reconciliation pass is an OperatorException. The
``reason`` attribute is a CamelCase token that ends up in the Degraded status
condition written for the failed pass.
"""
from typing import Optional, Dict, Any


class OperatorException(Exception):
    """
    Base exception for all operator errors.

    All custom exceptions should inherit from this base class.
    """

    reason: str = "ReconcileError"

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if reason:
            self.reason = reason
        self.details = details or {}
        super().__init__(self.message)


class KubernetesError(OperatorException):
    """
    Raised when Kubernetes API operations fail.

    Used for unexpected API errors on managed resources and the cluster object.
    """

    reason = "KubernetesError"

    def __init__(self, message: str, status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        self.status = status
        super().__init__(
            message=f"Kubernetes error: {message}",
            details=details or ({"status": status} if status is not None else None),
        )


class ResourceConflictError(KubernetesError):
    """
    Raised when an update carries a stale resourceVersion.

    The pass is aborted and redone from fresh state on the next dispatch.
    """

    reason = "ResourceConflict"

    def __init__(self, kind: str, name: str, namespace: str):
        super().__init__(
            f"{kind} {namespace}/{name} was modified concurrently",
            status=409,
            details={"kind": kind, "name": name, "namespace": namespace},
        )


class MongoDBConnectionError(OperatorException):
    """Raised when a MongoDB endpoint cannot be reached or stops answering."""

    reason = "MongoDBUnreachable"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=f"MongoDB connection error: {message}", details=details)


class NoReachableMemberError(MongoDBConnectionError):
    """Raised when no member of a replica set answers a direct ping."""

    reason = "NoReachableMember"

    def __init__(self, replica_set: str, members: list):
        super().__init__(
            f"no reachable MongoDB host found for replica set {replica_set}",
            details={"replica_set": replica_set, "members": list(members)},
        )


class ReplicaSetInitiateError(OperatorException):
    """Raised when replSetInitiate fails for a reason other than already initialized."""

    reason = "ReplicaSetInitiateFailed"

    def __init__(self, replica_set: str, error: str):
        super().__init__(
            message=f"replSetInitiate failed for {replica_set}: {error}",
            details={"replica_set": replica_set, "error": error},
        )


class PrimaryElectionTimeoutError(OperatorException):
    """Raised when no member reports PRIMARY within the election timeout."""

    reason = "PrimaryElectionTimeout"

    def __init__(self, replica_set: str, timeout_seconds: float):
        super().__init__(
            message=(
                f"timeout waiting for replica set {replica_set} to elect a primary "
                f"after {timeout_seconds:g}s"
            ),
            details={"replica_set": replica_set, "timeout_seconds": timeout_seconds},
        )


class ShardingError(OperatorException):
    """Raised when a sharding command fails on the router tier."""

    reason = "ShardingFailed"

    def __init__(self, command: str, target: str, error: str):
        super().__init__(
            message=f"{command} failed for {target}: {error}",
            details={"command": command, "target": target, "error": error},
        )


class ReconcileTimeoutError(OperatorException):
    """Raised when a reconciliation pass exceeds its deadline."""

    reason = "ReconcileTimeout"

    def __init__(self, key: str, timeout_seconds: float):
        super().__init__(
            message=f"reconciliation of {key} exceeded {timeout_seconds:g}s",
            details={"key": key, "timeout_seconds": timeout_seconds},
        )


__all__ = [
    "OperatorException",
    "KubernetesError",
    "ResourceConflictError",
    "MongoDBConnectionError",
    "NoReachableMemberError",
    "ReplicaSetInitiateError",
    "PrimaryElectionTimeoutError",
    "ShardingError",
    "ReconcileTimeoutError",
]
