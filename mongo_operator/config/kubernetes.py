"""
Kubernetes API client handle.

One KubernetesClientSet is built at process start and passed to every
component that talks to the API server.
"""
import asyncio
from typing import Optional

import aiohttp
from kubernetes_asyncio import client, config

from mongo_operator.config.logging import get_logger
from mongo_operator.exceptions import KubernetesError

logger = get_logger(__name__)

# Raised by the HTTP transport when a request never gets an API server response
TRANSPORT_ERRORS = (asyncio.TimeoutError, aiohttp.ClientError)


class KubernetesClientSet:
    """Container for Kubernetes API clients."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.custom_api = client.CustomObjectsApi(api_client)
        self.core_api = client.CoreV1Api(api_client)
        self.apps_api = client.AppsV1Api(api_client)
        self.batch_api = client.BatchV1Api(api_client)

    def to_dict(self, obj) -> dict:
        """Convert a typed API model into its camelCase wire representation."""
        return self.api_client.sanitize_for_serialization(obj)

    async def ping(self) -> bool:
        """Check API server connectivity."""
        try:
            await client.VersionApi(self.api_client).get_code()
            return True
        except Exception as e:
            logger.error("kubernetes_ping_failed", error=str(e))
            return False

    async def close(self):
        """Close all API clients."""
        if self.api_client:
            await self.api_client.close()

    @classmethod
    async def create(
        cls, kubeconfig_path: Optional[str] = None, in_cluster: bool = False
    ) -> "KubernetesClientSet":
        """
        Load configuration and build a client set.

        Args:
            kubeconfig_path: Path to a kubeconfig file (default location when None)
            in_cluster: Use the pod's service account instead of a kubeconfig

        Returns:
            KubernetesClientSet bound to an isolated Configuration

        Raises:
            KubernetesError: If configuration cannot be loaded
        """
        configuration = client.Configuration()
        try:
            if in_cluster:
                config.load_incluster_config(client_configuration=configuration)
            else:
                await config.load_kube_config(
                    config_file=kubeconfig_path,
                    client_configuration=configuration,
                )
        except Exception as e:
            logger.error(
                "failed_to_load_kubernetes_configuration",
                in_cluster=in_cluster,
                kubeconfig_path=kubeconfig_path,
                error=str(e),
                exc_info=True,
            )
            raise KubernetesError(f"Failed to load Kubernetes configuration: {e}")

        logger.info(
            "kubernetes_configuration_loaded",
            host=configuration.host,
            in_cluster=in_cluster,
            verify_ssl=configuration.verify_ssl,
        )
        return cls(client.ApiClient(configuration=configuration))
