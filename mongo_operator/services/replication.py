"""
Replica set bootstrap.

Brings a replica set from "member processes running" to "primary elected":

1. pick the first member that accepts a direct connection and answers ping;
2. on that member, ask for the replica set status; if there is one, the set
   was initiated on an earlier pass and nothing else is done;
3. otherwise send replSetInitiate with the full member list;
4. poll the same member until some member reports PRIMARY, bounded by the
   election timeout.
"""
import asyncio
from typing import Any, Dict

from pymongo.errors import OperationFailure, PyMongoError

from mongo_operator.config.logging import get_logger
from mongo_operator.config.mongodb import MongoClientFactory
from mongo_operator.exceptions import (
    MongoDBConnectionError,
    NoReachableMemberError,
    PrimaryElectionTimeoutError,
    ReplicaSetInitiateError,
)
from mongo_operator.models.topology import ReplicaSetDescriptor
from mongo_operator.services import metrics

logger = get_logger(__name__)

# MongoDB server error codes
ALREADY_INITIALIZED = 23

PRIMARY_STATE = "PRIMARY"


def build_replica_set_config(descriptor: ReplicaSetDescriptor) -> Dict[str, Any]:
    """Document passed to replSetInitiate."""
    config: Dict[str, Any] = {"_id": descriptor.name}
    if descriptor.config_server:
        config["configsvr"] = True
    config["members"] = [{"_id": i, "host": host} for i, host in enumerate(descriptor.members)]
    return config


class ReplicationBootstrapper:
    """Initiates replica sets and waits for their first primary."""

    def __init__(
        self,
        mongo: MongoClientFactory,
        probe_timeout_seconds: float = 5.0,
        poll_interval_seconds: float = 2.0,
        election_timeout_seconds: float = 30.0,
    ):
        self.mongo = mongo
        self.probe_timeout_seconds = probe_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.election_timeout_seconds = election_timeout_seconds

    async def find_reachable_member(self, descriptor: ReplicaSetDescriptor) -> str:
        """
        Return the first member answering a direct ping.

        Raises:
            NoReachableMemberError: If no member answers within the probe timeout
        """
        for host in descriptor.members:
            try:
                async with self.mongo.connect(
                    f"mongodb://{host}", direct=True, timeout_seconds=self.probe_timeout_seconds
                ) as client:
                    await client.admin.command("ping")
                return host
            except PyMongoError as e:
                logger.debug(
                    "replica_set_member_unreachable",
                    replica_set=descriptor.name,
                    host=host,
                    error=str(e),
                )
        raise NoReachableMemberError(descriptor.name, descriptor.members)

    async def bootstrap(self, descriptor: ReplicaSetDescriptor) -> bool:
        """
        Initiate the replica set if needed and wait for a primary.

        Returns:
            True if this call initiated the set, False if it was already initiated

        Raises:
            NoReachableMemberError: No member is reachable
            MongoDBConnectionError: The selected member stopped answering
            ReplicaSetInitiateError: replSetInitiate was rejected
            PrimaryElectionTimeoutError: No primary within the election timeout
        """
        host = await self.find_reachable_member(descriptor)
        log = logger.bind(replica_set=descriptor.name, host=host)

        async with self.mongo.connect(
            f"mongodb://{host}", direct=True, timeout_seconds=self.probe_timeout_seconds
        ) as client:
            if await self._is_initiated(client, descriptor):
                log.debug("replica_set_already_initiated")
                metrics.record_bootstrap("replSetInitiate", "already_done")
                return False

            config = build_replica_set_config(descriptor)
            log.info("initiating_replica_set", members=len(descriptor.members), config_server=descriptor.config_server)
            try:
                await client.admin.command("replSetInitiate", config)
            except OperationFailure as e:
                if e.code == ALREADY_INITIALIZED:
                    log.info("replica_set_initiated_concurrently")
                    metrics.record_bootstrap("replSetInitiate", "already_done")
                    return False
                metrics.record_bootstrap("replSetInitiate", "failed")
                raise ReplicaSetInitiateError(descriptor.name, str(e))
            except PyMongoError as e:
                metrics.record_bootstrap("replSetInitiate", "failed")
                raise ReplicaSetInitiateError(descriptor.name, str(e))

            metrics.record_bootstrap("replSetInitiate", "applied")
            await self.wait_for_primary(client, descriptor)
            log.info("replica_set_primary_elected")
            return True

    async def _is_initiated(self, client, descriptor: ReplicaSetDescriptor) -> bool:
        try:
            await client.admin.command("replSetGetStatus")
            return True
        except OperationFailure:
            # NotYetInitialized and friends
            return False
        except PyMongoError as e:
            raise MongoDBConnectionError(
                f"replSetGetStatus failed on {descriptor.name}: {e}",
                details={"replica_set": descriptor.name},
            )

    async def wait_for_primary(self, client, descriptor: ReplicaSetDescriptor) -> None:
        """
        Poll until some member reports PRIMARY.

        Raises:
            PrimaryElectionTimeoutError: After election_timeout_seconds
        """
        try:
            await asyncio.wait_for(
                self._poll_for_primary(client, descriptor),
                timeout=self.election_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "replica_set_primary_timeout",
                replica_set=descriptor.name,
                timeout_seconds=self.election_timeout_seconds,
            )
            raise PrimaryElectionTimeoutError(descriptor.name, self.election_timeout_seconds)

    async def _poll_for_primary(self, client, descriptor: ReplicaSetDescriptor) -> None:
        while True:
            if await self._has_primary(client):
                return
            logger.debug("waiting_for_primary", replica_set=descriptor.name)
            await asyncio.sleep(self.poll_interval_seconds)

    async def _has_primary(self, client) -> bool:
        try:
            status = await client.admin.command("replSetGetStatus")
            return any(m.get("stateStr") == PRIMARY_STATE for m in status.get("members", []))
        except PyMongoError:
            pass
        try:
            hello = await client.admin.command("isMaster")
            return bool(hello.get("ismaster"))
        except PyMongoError:
            return False
