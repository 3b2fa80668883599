"""
Resolve the admin connection string of a Database.

Exactly one source must be configured: a key of a Kubernetes Secret in the
resource namespace, or an AWS Secrets Manager secret. The AWS secret may
hold the connection string as a raw value or as one key of a JSON object.
"""
import json
from typing import Callable, Optional

from dbuser_operator.config.logging import get_logger
from dbuser_operator.exceptions import ConfigurationError, FormatError, NotFoundError, SecretNotFoundError
from dbuser_operator.models.database import DatabaseSpec
from dbuser_operator.services.kubernetes_service import KubernetesService, kubernetes_service
from dbuser_operator.services.secrets_manager import SecretsManagerClient, validate_region

logger = get_logger(__name__)


def validate_connection_source(spec: DatabaseSpec) -> None:
    """
    Raises:
        ConfigurationError: If both or neither source is configured
    """
    if spec.connection_string_secret_ref and spec.connection_string_aws_secret_ref:
        raise ConfigurationError(
            "both ConnectionStringSecretRef and ConnectionStringAWSSecretRef are specified, only one is allowed"
        )
    if not spec.connection_string_secret_ref and not spec.connection_string_aws_secret_ref:
        raise ConfigurationError(
            "neither ConnectionStringSecretRef nor ConnectionStringAWSSecretRef is specified"
        )


def extract_connection_string(value: str, key: str) -> str:
    """
    Pull the connection string out of an AWS secret value.

    Values containing ``{`` are parsed as JSON and ``key`` is extracted;
    anything else is used as-is.

    Raises:
        FormatError: If the JSON is invalid, lacks the key, or the value is not a non-empty string
    """
    if "{" not in value:
        if not value.strip():
            raise FormatError("AWS secret holding the connection string is empty")
        return value.strip()

    try:
        data = json.loads(value)
    except ValueError as e:
        raise FormatError(f"failed to parse AWS secret as JSON: {e}") from e
    if not isinstance(data, dict):
        raise FormatError("AWS secret JSON is not an object")
    if key not in data:
        raise FormatError(f"key {key} not found in AWS secret", details={"key": key})

    connection_string = data[key]
    if not isinstance(connection_string, str):
        raise FormatError(f"value for key {key} in AWS secret is not a string", details={"key": key})
    if not connection_string:
        raise FormatError(f"value for key {key} in AWS secret is empty", details={"key": key})
    return connection_string


class ConnectionStringResolver:
    """
    Reads the admin connection string from the configured source.

    Args:
        kubernetes: Service used for in-cluster Secrets
        store_factory: Builds a secret store client for a region
    """

    def __init__(
        self,
        kubernetes: Optional[KubernetesService] = None,
        store_factory: Callable[[str], SecretsManagerClient] = SecretsManagerClient,
    ):
        self.kubernetes = kubernetes or kubernetes_service
        self.store_factory = store_factory

    async def resolve(self, spec: DatabaseSpec, namespace: str) -> str:
        """
        Args:
            spec: Desired state of the Database
            namespace: Namespace of the Database resource

        Returns:
            The admin connection string

        Raises:
            ConfigurationError: Both or neither source, or an invalid region
            NotFoundError: The referenced secret does not exist
            FormatError: The secret cannot be parsed as expected
        """
        validate_connection_source(spec)

        if spec.connection_string_secret_ref:
            ref = spec.connection_string_secret_ref
            logger.debug("resolving_connection_string", source="kubernetes_secret", secret_name=ref.name)
            return await self.kubernetes.read_secret_value(ref.name, namespace, ref.key)

        ref = spec.connection_string_aws_secret_ref
        validate_region(ref.region)
        logger.debug(
            "resolving_connection_string",
            source="aws_secrets_manager",
            secret_name=ref.secret_name,
            region=ref.region or "default",
        )
        store = self.store_factory(ref.region)
        try:
            value = await store.get_secret_string(ref.secret_name)
        except SecretNotFoundError as e:
            raise NotFoundError("AWS secret", ref.secret_name) from e
        return extract_connection_string(value, ref.key)
