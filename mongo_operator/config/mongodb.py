"""
MongoDB client factory used by the bootstrappers.

The operator never keeps long-lived connections to the clusters it manages:
each bootstrap step opens a short-lived Motor client against one endpoint and
closes it when done.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from motor.motor_asyncio import AsyncIOMotorClient

from mongo_operator.config.logging import get_logger

logger = get_logger(__name__)


class MongoClientFactory:
    """Creates Motor clients for cluster members and routers."""

    def __init__(self, connect_timeout_ms: int = 10000, socket_timeout_ms: int = 20000):
        self.connect_timeout_ms = connect_timeout_ms
        self.socket_timeout_ms = socket_timeout_ms

    def create(
        self,
        uri: str,
        direct: bool = False,
        timeout_seconds: Optional[float] = None,
    ) -> AsyncIOMotorClient:
        """
        Build a Motor client.

        Args:
            uri: mongodb:// URI of a member or router
            direct: Connect to exactly this host, skipping replica set discovery
            timeout_seconds: Server selection timeout

        Returns:
            Unconnected AsyncIOMotorClient (connection happens on first command)
        """
        options = {
            "directConnection": direct,
            "connectTimeoutMS": self.connect_timeout_ms,
            "socketTimeoutMS": self.socket_timeout_ms,
            "retryWrites": False,
        }
        if timeout_seconds is not None:
            options["serverSelectionTimeoutMS"] = int(timeout_seconds * 1000)
        return AsyncIOMotorClient(uri, **options)

    @asynccontextmanager
    async def connect(
        self,
        uri: str,
        direct: bool = False,
        timeout_seconds: Optional[float] = None,
    ) -> AsyncIterator[AsyncIOMotorClient]:
        """Yield a client and always close it afterwards."""
        mongo_client = self.create(uri, direct=direct, timeout_seconds=timeout_seconds)
        try:
            yield mongo_client
        finally:
            mongo_client.close()
            logger.debug("mongodb_client_closed", uri=uri)
