"""
AWS Secrets Manager client for database credentials.

boto3 is synchronous, so every API call runs in a worker thread via
``asyncio.to_thread``. One client is bound to one region and shared by
every pass; a pass that has to touch two regions (region migration) uses
two clients.
"""
import asyncio
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoRegionError

from dbuser_operator.config.logging import get_logger
from dbuser_operator.config.settings import settings
from dbuser_operator.exceptions import (
    ConfigurationError,
    SecretMarkedForDeletionError,
    SecretNotFoundError,
    SecretStoreError,
)
from dbuser_operator.services.secret_payload import DatabaseSecret

logger = get_logger(__name__)

VALID_AWS_REGIONS = frozenset(
    {
        # US
        "us-east-1",
        "us-east-2",
        "us-west-1",
        "us-west-2",
        "us-gov-west-1",
        "us-gov-east-1",
        # Africa
        "af-south-1",
        # Asia Pacific
        "ap-east-1",
        "ap-south-1",
        "ap-south-2",
        "ap-northeast-1",
        "ap-northeast-2",
        "ap-northeast-3",
        "ap-southeast-1",
        "ap-southeast-2",
        "ap-southeast-3",
        "ap-southeast-4",
        # Canada
        "ca-central-1",
        "ca-west-1",
        # Europe
        "eu-central-1",
        "eu-central-2",
        "eu-west-1",
        "eu-west-2",
        "eu-west-3",
        "eu-south-1",
        "eu-south-2",
        "eu-north-1",
        # Middle East
        "me-south-1",
        "me-central-1",
        # South America
        "sa-east-1",
        # China
        "cn-north-1",
        "cn-northwest-1",
        # Israel
        "il-central-1",
    }
)

RESOURCE_NOT_FOUND = "ResourceNotFoundException"
INVALID_REQUEST = "InvalidRequestException"


def validate_region(region: str) -> None:
    """
    Check an explicitly configured region.

    An empty region is valid and leaves resolution to the AWS SDK
    (environment, profile or instance metadata).

    Raises:
        ConfigurationError: If the region is not a known AWS region
    """
    if region and region not in VALID_AWS_REGIONS:
        raise ConfigurationError(f"invalid AWS region: {region}", details={"region": region})


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _is_deletion_pending(error: ClientError) -> bool:
    message = str(error).lower()
    return _error_code(error) == INVALID_REQUEST and (
        "scheduled for deletion" in message or "marked for deletion" in message
    )


@dataclass
class SecretDescription:
    """Metadata of a stored secret. Never carries the value."""

    arn: str
    name: str
    description: str = ""
    tags: Dict[str, str] = field(default_factory=dict)
    deleted: bool = False

    @classmethod
    def from_response(cls, response: Dict[str, Any]) -> "SecretDescription":
        return cls(
            arn=response.get("ARN", ""),
            name=response.get("Name", ""),
            description=response.get("Description", ""),
            tags={tag["Key"]: tag["Value"] for tag in response.get("Tags", []) if "Key" in tag},
            deleted=response.get("DeletedDate") is not None,
        )


@dataclass
class TagDiff:
    """Tag changes needed to turn the current set into the desired set."""

    to_add: Dict[str, str] = field(default_factory=dict)
    to_remove: List[str] = field(default_factory=list)

    @classmethod
    def compute(cls, current: Dict[str, str], desired: Dict[str, str]) -> "TagDiff":
        return cls(
            to_add={k: v for k, v in desired.items() if current.get(k) != v},
            to_remove=sorted(k for k in current if k not in desired),
        )

    @property
    def empty(self) -> bool:
        return not self.to_add and not self.to_remove


def _tag_list(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]


@lru_cache(maxsize=None)
def boto_client(region: str = ""):
    """
    Shared boto3 ``secretsmanager`` client for a region.

    One client per region serves every pass. A failed construction is
    not cached.

    Raises:
        ConfigurationError: If no region is given and none can be resolved
    """
    try:
        return boto3.session.Session().client(
            "secretsmanager",
            region_name=region or None,
            config=Config(
                connect_timeout=settings.aws_connect_timeout,
                read_timeout=settings.aws_read_timeout,
                retries={"max_attempts": settings.aws_max_attempts, "mode": "standard"},
            ),
        )
    except NoRegionError as e:
        raise ConfigurationError(
            "no AWS region configured; set spec.awsSecretsManager.region or AWS_REGION"
        ) from e


class SecretsManagerClient:
    """
    Region-bound wrapper around the boto3 ``secretsmanager`` client.

    Args:
        region: AWS region, or "" for SDK default resolution
        client: Pre-built boto3 client (tests inject a stubbed one)
    """

    def __init__(self, region: str = "", client: Any = None):
        validate_region(region)
        self._client = client if client is not None else boto_client(region)

    @property
    def region(self) -> str:
        """Region the client resolved to."""
        return self._client.meta.region_name or ""

    async def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        method = getattr(self._client, operation)
        return await asyncio.to_thread(method, **kwargs)

    def _wrap(self, action: str, secret_name: str, error: Exception) -> SecretStoreError:
        return SecretStoreError(
            f"failed to {action} secret {secret_name}: {error}",
            details={"secret_name": secret_name, "region": self.region},
        )

    async def describe_secret(self, secret_name: str) -> Optional[SecretDescription]:
        """Describe a secret, or return None when it does not exist."""
        try:
            response = await self._call("describe_secret", SecretId=secret_name)
        except ClientError as e:
            if _error_code(e) == RESOURCE_NOT_FOUND:
                return None
            raise self._wrap("describe", secret_name, e) from e
        except BotoCoreError as e:
            raise self._wrap("describe", secret_name, e) from e
        return SecretDescription.from_response(response)

    async def secret_exists(self, secret_name: str) -> bool:
        return await self.describe_secret(secret_name) is not None

    async def create_secret(
        self,
        secret_name: str,
        description: str,
        secret: DatabaseSecret,
        tags: Dict[str, str],
        template: Optional[str] = None,
    ) -> Tuple[str, str]:
        """
        Create a secret holding the credentials.

        A secret of the same name that is scheduled for deletion is
        restored and overwritten instead, with its description reset and its
        tags brought to exactly ``tags``.

        Args:
            secret_name: Name (path) of the secret
            description: Secret description
            secret: Credentials to store
            tags: Tags to attach
            template: Optional payload template

        Returns:
            Tuple of (ARN, version id)

        Raises:
            TemplateError: If the payload cannot be rendered; nothing is written
            SecretStoreError: If the store call fails
        """
        payload = secret.to_json(template)
        try:
            response = await self._call(
                "create_secret",
                Name=secret_name,
                Description=description,
                SecretString=payload,
                Tags=_tag_list(tags),
            )
        except ClientError as e:
            if not _is_deletion_pending(e):
                raise self._wrap("create", secret_name, e) from e
            logger.info("secret_scheduled_for_deletion_restoring", secret_name=secret_name, region=self.region)
            await self.restore_secret(secret_name)
            version_id = await self.update_secret(secret_name, secret, template)
            await self.update_description(secret_name, description)
            restored = await self.describe_secret(secret_name)
            if restored is None:
                raise SecretNotFoundError(secret_name)
            await self.reconcile_tags(secret_name, tags, current=restored.tags)
            return restored.arn, version_id
        except BotoCoreError as e:
            raise self._wrap("create", secret_name, e) from e

        return response.get("ARN", ""), response.get("VersionId", "")

    async def update_secret(
        self,
        secret_name: str,
        secret: DatabaseSecret,
        template: Optional[str] = None,
    ) -> str:
        """
        Overwrite the value of an existing secret.

        Returns:
            New version id

        Raises:
            TemplateError: If the payload cannot be rendered; nothing is written
            SecretNotFoundError: If the secret does not exist
            SecretMarkedForDeletionError: If the secret is scheduled for deletion
            SecretStoreError: For any other store failure
        """
        payload = secret.to_json(template)
        try:
            response = await self._call("update_secret", SecretId=secret_name, SecretString=payload)
        except ClientError as e:
            if _error_code(e) == RESOURCE_NOT_FOUND:
                raise SecretNotFoundError(secret_name) from e
            if _is_deletion_pending(e):
                raise SecretMarkedForDeletionError(secret_name) from e
            raise self._wrap("update", secret_name, e) from e
        except BotoCoreError as e:
            raise self._wrap("update", secret_name, e) from e
        return response.get("VersionId", "")

    async def update_description(self, secret_name: str, description: str) -> None:
        try:
            await self._call("update_secret", SecretId=secret_name, Description=description)
        except (ClientError, BotoCoreError) as e:
            raise self._wrap("update description of", secret_name, e) from e

    async def delete_secret(self, secret_name: str, force: bool = False) -> None:
        """
        Delete a secret.

        Args:
            secret_name: Name of the secret
            force: Purge immediately instead of using the recovery window
        """
        kwargs: Dict[str, Any] = {"SecretId": secret_name}
        if force:
            kwargs["ForceDeleteWithoutRecovery"] = True
        else:
            kwargs["RecoveryWindowInDays"] = settings.secret_recovery_window_days
        try:
            await self._call("delete_secret", **kwargs)
        except ClientError as e:
            if _error_code(e) == RESOURCE_NOT_FOUND:
                logger.debug("secret_already_deleted", secret_name=secret_name, region=self.region)
                return
            raise self._wrap("delete", secret_name, e) from e
        except BotoCoreError as e:
            raise self._wrap("delete", secret_name, e) from e
        logger.info("secret_deleted", secret_name=secret_name, region=self.region, force=force)

    async def restore_secret(self, secret_name: str) -> None:
        try:
            await self._call("restore_secret", SecretId=secret_name)
        except (ClientError, BotoCoreError) as e:
            raise self._wrap("restore", secret_name, e) from e
        logger.info("secret_restored", secret_name=secret_name, region=self.region)

    async def get_secret_string(self, secret_name: str) -> str:
        """
        Read the raw secret value.

        Raises:
            SecretNotFoundError: If the secret does not exist
            SecretStoreError: For any other store failure
        """
        try:
            response = await self._call("get_secret_value", SecretId=secret_name)
        except ClientError as e:
            if _error_code(e) == RESOURCE_NOT_FOUND:
                raise SecretNotFoundError(secret_name) from e
            if _is_deletion_pending(e):
                raise SecretMarkedForDeletionError(secret_name) from e
            raise self._wrap("get value of", secret_name, e) from e
        except BotoCoreError as e:
            raise self._wrap("get value of", secret_name, e) from e
        return response.get("SecretString") or ""

    async def get_secret(self, secret_name: str) -> DatabaseSecret:
        """
        Read and parse stored credentials.

        A secret scheduled for deletion still holds the password, so it is
        restored and read again.

        Raises:
            FormatError: If the stored value holds no password
        """
        try:
            text = await self.get_secret_string(secret_name)
        except SecretMarkedForDeletionError:
            await self.restore_secret(secret_name)
            text = await self.get_secret_string(secret_name)
        return DatabaseSecret.from_json(text)

    async def get_tags(self, secret_name: str) -> Dict[str, str]:
        description = await self.describe_secret(secret_name)
        if description is None:
            raise SecretNotFoundError(secret_name)
        return description.tags

    async def tag_secret(self, secret_name: str, tags: Dict[str, str]) -> None:
        if not tags:
            return
        try:
            await self._call("tag_resource", SecretId=secret_name, Tags=_tag_list(tags))
        except (ClientError, BotoCoreError) as e:
            raise self._wrap("tag", secret_name, e) from e

    async def untag_secret(self, secret_name: str, tag_keys: List[str]) -> None:
        if not tag_keys:
            return
        try:
            await self._call("untag_resource", SecretId=secret_name, TagKeys=list(tag_keys))
        except (ClientError, BotoCoreError) as e:
            raise self._wrap("untag", secret_name, e) from e

    async def reconcile_tags(
        self,
        secret_name: str,
        desired: Dict[str, str],
        current: Optional[Dict[str, str]] = None,
    ) -> TagDiff:
        """
        Bring the tag set of a secret to ``desired``.

        Keys only present on the secret are removed; missing or changed keys
        are written. Unchanged keys are not touched.

        Args:
            secret_name: Name of the secret
            desired: Full desired tag set
            current: Current tags when already known from a describe call

        Returns:
            The applied diff
        """
        if current is None:
            current = await self.get_tags(secret_name)
        diff = TagDiff.compute(current, desired)
        if diff.empty:
            return diff
        await self.untag_secret(secret_name, diff.to_remove)
        await self.tag_secret(secret_name, diff.to_add)
        logger.info(
            "secret_tags_reconciled",
            secret_name=secret_name,
            added=sorted(diff.to_add),
            removed=diff.to_remove,
        )
        return diff
