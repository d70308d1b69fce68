"""
Shard registration through the router tier.

Every pass re-runs addShard and enableSharding, long after the cluster has
converged, so both treat "already there" answers as success. Those answers
are recognised by server error code first; message matching is kept as a
fallback for server versions that report them differently.
"""
from typing import Any, Dict, Iterable, Optional

from pymongo.errors import OperationFailure, PyMongoError

from mongo_operator.config.logging import get_logger
from mongo_operator.config.mongodb import MongoClientFactory
from mongo_operator.exceptions import MongoDBConnectionError, ShardingError
from mongo_operator.models.cluster import ShardingSpec
from mongo_operator.models.topology import ShardDescriptor
from mongo_operator.services import metrics

logger = get_logger(__name__)

# MongoDB server error codes
ALREADY_INITIALIZED = 23
DUPLICATE_KEY = 11000

ALREADY_EXISTS_CODES = {DUPLICATE_KEY, ALREADY_INITIALIZED}
ALREADY_EXISTS_MESSAGES = ("already exists", "duplicate key")
ALREADY_ENABLED_CODES = {ALREADY_INITIALIZED}
ALREADY_ENABLED_MESSAGES = ("already enabled",)

DEFAULT_SHARD_KEY: Dict[str, Any] = {"_id": "hashed"}


def _matches(error: PyMongoError, codes: Iterable[int], messages: Iterable[str]) -> bool:
    code = getattr(error, "code", None)
    if code is not None and code in codes:
        return True
    text = str(error).lower()
    return any(m in text for m in messages)


def is_already_exists_error(error: PyMongoError) -> bool:
    return _matches(error, ALREADY_EXISTS_CODES, ALREADY_EXISTS_MESSAGES)


def is_already_enabled_error(error: PyMongoError) -> bool:
    return _matches(error, ALREADY_ENABLED_CODES, ALREADY_ENABLED_MESSAGES)


def parse_shard_key(key: str) -> Dict[str, Any]:
    """
    Parse a shard key declaration.

    ``"userId:1,region:-1"`` is a ranged compound key, ``"userId"`` or
    ``"userId:hashed"`` a hashed key. An empty declaration shards on a hashed
    ``_id``.
    """
    if not key or not key.strip():
        return dict(DEFAULT_SHARD_KEY)

    parsed: Dict[str, Any] = {}
    for part in key.split(","):
        part = part.strip()
        if not part:
            continue
        field_name, _, order = part.partition(":")
        field_name = field_name.strip()
        order = order.strip() or "hashed"
        if order == "hashed":
            parsed[field_name] = "hashed"
        elif order in ("1", "-1"):
            parsed[field_name] = int(order)
        else:
            raise ValueError(f"invalid shard key order {order!r} for field {field_name!r}")
    return parsed or dict(DEFAULT_SHARD_KEY)


def qualify_collection(database: str, collection: str) -> str:
    """Prefix a bare collection name with its database."""
    if "." in collection or not database:
        return collection
    return f"{database}.{collection}"


class ShardingBootstrapper:
    """Registers shards and applies the sharding policy via mongos."""

    def __init__(self, mongo: MongoClientFactory, timeout_seconds: float = 10.0):
        self.mongo = mongo
        self.timeout_seconds = timeout_seconds

    async def bootstrap(
        self,
        router_uri: str,
        shards: Iterable[ShardDescriptor],
        sharding: Optional[ShardingSpec] = None,
    ) -> None:
        """
        Register shards, enable sharding and shard the target collection.

        Raises:
            MongoDBConnectionError: The router cannot be reached
            ShardingError: A command failed for a reason other than already done
        """
        async with self.mongo.connect(router_uri, timeout_seconds=self.timeout_seconds) as client:
            try:
                await client.admin.command("ping")
            except PyMongoError as e:
                raise MongoDBConnectionError(f"router {router_uri} unreachable: {e}", details={"uri": router_uri})

            # One shard at a time: the router serializes topology changes anyway
            for shard in shards:
                if not shard.members:
                    continue
                await self.add_shard(client, shard)

            if not sharding or not sharding.enabled:
                return

            if sharding.database:
                await self.enable_sharding(client, sharding.database)

            if sharding.collections:
                await self.shard_collection(
                    client,
                    qualify_collection(sharding.database, sharding.collections),
                    parse_shard_key(sharding.key),
                )

    async def add_shard(self, client, shard: ShardDescriptor) -> None:
        try:
            await client.admin.command("addShard", shard.connection_string)
        except PyMongoError as e:
            if isinstance(e, OperationFailure) and is_already_exists_error(e):
                logger.debug("shard_already_registered", shard=shard.replica_set_name)
                metrics.record_bootstrap("addShard", "already_done")
                return
            metrics.record_bootstrap("addShard", "failed")
            raise ShardingError("addShard", shard.replica_set_name, str(e))
        metrics.record_bootstrap("addShard", "applied")
        logger.info("shard_registered", shard=shard.replica_set_name, members=len(shard.members))

    async def enable_sharding(self, client, database: str) -> None:
        try:
            await client.admin.command("enableSharding", database)
        except PyMongoError as e:
            if isinstance(e, OperationFailure) and is_already_enabled_error(e):
                logger.debug("sharding_already_enabled", database=database)
                metrics.record_bootstrap("enableSharding", "already_done")
                return
            metrics.record_bootstrap("enableSharding", "failed")
            raise ShardingError("enableSharding", database, str(e))
        metrics.record_bootstrap("enableSharding", "applied")
        logger.info("sharding_enabled", database=database)

    async def shard_collection(self, client, namespace: str, key: Dict[str, Any]) -> None:
        """Failures are surfaced as-is, including a collection already sharded on another key."""
        try:
            await client.admin.command("shardCollection", namespace, key=key)
        except PyMongoError as e:
            metrics.record_bootstrap("shardCollection", "failed")
            raise ShardingError("shardCollection", namespace, str(e))
        metrics.record_bootstrap("shardCollection", "applied")
        logger.info("collection_sharded", collection=namespace, key=key)
