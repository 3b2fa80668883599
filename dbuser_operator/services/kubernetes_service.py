"""
Kubernetes API access used by the reconciler.

Only in-cluster Secrets are read here; status patches, events and the
finalizer are handled by kopf.
"""
import base64
from typing import Optional

from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiException
from kubernetes_asyncio.config import ConfigException

from dbuser_operator.config.logging import get_logger
from dbuser_operator.exceptions import FormatError, NotFoundError
from dbuser_operator.utils.retry import retry_on_k8s_error

logger = get_logger(__name__)


class KubernetesService:
    """Thin async wrapper over the CoreV1 API."""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self.api_client = api_client
        self._core_api: Optional[client.CoreV1Api] = None

    async def initialize(self) -> None:
        """Load in-cluster configuration, falling back to the local kubeconfig."""
        if self.api_client is None:
            try:
                config.load_incluster_config()
                logger.info("kubernetes_config_loaded", source="in_cluster")
            except ConfigException:
                await config.load_kube_config()
                logger.info("kubernetes_config_loaded", source="kubeconfig")
            self.api_client = client.ApiClient()
        self._core_api = client.CoreV1Api(self.api_client)

    async def close(self) -> None:
        if self.api_client is not None:
            await self.api_client.close()
            self.api_client = None
            self._core_api = None

    @property
    def core_api(self) -> client.CoreV1Api:
        if self._core_api is None:
            raise RuntimeError("KubernetesService is not initialized")
        return self._core_api

    @retry_on_k8s_error()
    async def _read_secret(self, name: str, namespace: str):
        return await self.core_api.read_namespaced_secret(name=name, namespace=namespace)

    async def read_secret_value(self, name: str, namespace: str, key: str) -> str:
        """
        Read and decode one key of a Secret.

        Args:
            name: Secret name
            namespace: Secret namespace
            key: Data key

        Returns:
            Decoded value

        Raises:
            NotFoundError: If the Secret does not exist
            FormatError: If the key is missing or empty
        """
        try:
            secret = await self._read_secret(name, namespace)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError("Secret", f"{namespace}/{name}") from e
            raise

        encoded = (secret.data or {}).get(key)
        if not encoded:
            raise FormatError(
                f"connection string is empty in secret {name} key {key}",
                details={"secret": f"{namespace}/{name}", "key": key},
            )
        try:
            return base64.b64decode(encoded).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise FormatError(f"secret {name} key {key} is not valid base64 UTF-8 data") from e


# Global instance
kubernetes_service = KubernetesService()
