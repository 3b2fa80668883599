"""
Pydantic models for the Database custom resource.

``DatabaseSpec`` is the desired state supplied by the user and is re-read
on every pass. ``DatabaseStatus`` is the persisted status, written only by
the reconciler. Field aliases follow the camelCase names of the resource.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from dbuser_operator.exceptions import ConfigurationError

IDENTIFIER_PATTERN = r"^[a-z][a-z0-9_]*$"
DEFAULT_SECRET_KEY = "connectionString"


class ResourceModel(BaseModel):
    """Base model accepting both camelCase and snake_case field names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class DatabaseEngine(str, Enum):
    """Supported database engines."""

    POSTGRES = "postgres"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MARIADB = "mariadb"

    @property
    def family(self) -> str:
        """Engine family sharing one client implementation."""
        if self in (DatabaseEngine.POSTGRES, DatabaseEngine.POSTGRESQL):
            return "postgres"
        return "mysql"

    @property
    def url_scheme(self) -> str:
        """Scheme used in connection URLs handed to applications."""
        return "postgresql" if self.family == "postgres" else "mysql"

    @property
    def url_field(self) -> str:
        """Key of the connection URL in the default secret payload."""
        if self.family == "postgres":
            return "POSTGRES_URL"
        return f"{self.value.upper()}_URL"

    @property
    def default_port(self) -> int:
        return 5432 if self.family == "postgres" else 3306


class DatabasePhase(str, Enum):
    """Phase reported in the status of a Database resource."""

    PENDING = "Pending"
    READY = "Ready"
    ERROR = "Error"
    DELETING = "Deleting"


class SecretKeyReference(ResourceModel):
    """Reference to a key in a Kubernetes Secret in the resource namespace."""

    name: str = Field(..., min_length=1, description="Name of the secret")
    key: str = Field(default=DEFAULT_SECRET_KEY, description="Key within the secret")


class AWSSecretReference(ResourceModel):
    """Reference to an AWS Secrets Manager secret holding the admin connection string."""

    secret_name: str = Field(..., min_length=1, description="Name or ARN of the secret")
    key: str = Field(default=DEFAULT_SECRET_KEY, description="Key within the secret JSON")
    region: str = Field(default="", description="Region of the secret")


class AWSSecretsManagerConfig(ResourceModel):
    """Where and how created credentials are stored."""

    region: str = Field(default="", description="Region for the credentials secret")
    description: str = Field(default="", description="Secret description")
    tags: Dict[str, str] = Field(default_factory=dict, description="Secret tags")


class DatabaseSpec(ResourceModel):
    """Desired state of a Database resource."""

    engine: DatabaseEngine = Field(default=DatabaseEngine.POSTGRES, description="Database engine type")
    database_name: str = Field(
        ...,
        min_length=1,
        max_length=63,
        pattern=IDENTIFIER_PATTERN,
        description="Name of the database to create",
    )
    connection_string_secret_ref: Optional[SecretKeyReference] = Field(
        default=None, description="Kubernetes Secret holding the admin connection string"
    )
    connection_string_aws_secret_ref: Optional[AWSSecretReference] = Field(
        default=None,
        alias="connectionStringAWSSecretRef",
        description="AWS secret holding the admin connection string",
    )
    username: Optional[str] = Field(
        default=None,
        max_length=63,
        pattern=IDENTIFIER_PATTERN,
        description="Database user, defaults to the database name",
    )
    secret_name: Optional[str] = Field(default=None, description="Path of the credentials secret")
    privileges: List[str] = Field(default_factory=list, description="Privileges to grant, defaults to ALL")
    retain_on_delete: bool = Field(default=True, description="Keep database, user and secret on deletion")
    aws_secrets_manager: Optional[AWSSecretsManagerConfig] = Field(
        default=None,
        alias="awsSecretsManager",
        description="Credentials secret settings",
    )
    secret_template: Optional[str] = Field(default=None, description="Template producing the secret JSON")

    @model_validator(mode="before")
    @classmethod
    def drop_empty_strings(cls, data: Any) -> Any:
        """Treat empty optional strings as unset."""
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v != ""}
        return data

    @classmethod
    def from_body(cls, spec: Optional[Dict[str, Any]]) -> "DatabaseSpec":
        """
        Build from the spec stanza of a resource body.

        Raises:
            ConfigurationError: If the spec does not validate
        """
        try:
            return cls.model_validate(dict(spec or {}))
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'spec'}: {error['msg']}"
                for error in e.errors()
            )
            raise ConfigurationError(f"invalid Database spec: {problems}") from e

    @property
    def resolved_username(self) -> str:
        return self.username or self.database_name

    @property
    def resolved_privileges(self) -> List[str]:
        return list(self.privileges) or ["ALL"]

    @property
    def target_region(self) -> str:
        """
        Region for the credentials secret.

        Priority: awsSecretsManager.region, then connectionStringAWSSecretRef.region,
        then "" which lets the AWS SDK resolve its default.
        """
        if self.aws_secrets_manager and self.aws_secrets_manager.region:
            return self.aws_secrets_manager.region
        if self.connection_string_aws_secret_ref and self.connection_string_aws_secret_ref.region:
            return self.connection_string_aws_secret_ref.region
        return ""

    def secret_path(self, prefix: str) -> str:
        if self.secret_name:
            return self.secret_name
        return f"{prefix}/{self.engine.value}/{self.database_name}"

    def secret_description(self) -> str:
        if self.aws_secrets_manager and self.aws_secrets_manager.description:
            return self.aws_secrets_manager.description
        return f"Database credentials for {self.database_name}"

    def desired_tags(self, managed_by: Dict[str, str]) -> Dict[str, str]:
        tags = dict(managed_by)
        if self.aws_secrets_manager:
            tags.update(self.aws_secrets_manager.tags)
        return tags


class ConnectionInfo(ResourceModel):
    """Non-sensitive connection information. Never holds the password."""

    host: str = ""
    port: int = 0
    database: str = ""
    username: str = ""
    engine: str = ""


class DatabaseStatus(ResourceModel):
    """Persisted status of a Database resource."""

    phase: str = ""
    message: str = ""
    observed_generation: int = 0
    database_created: bool = False
    user_created: bool = False
    secret_created: bool = False
    secret_arn: str = Field(default="", alias="secretARN")
    secret_version: str = ""
    secret_format_version: str = ""
    actual_username: str = ""
    actual_secret_name: str = ""
    secret_region: str = ""
    connection_info: ConnectionInfo = Field(default_factory=ConnectionInfo)

    @classmethod
    def from_body(cls, status: Optional[Dict[str, Any]]) -> "DatabaseStatus":
        """Build from the status stanza of a resource body."""
        return cls.model_validate(dict(status or {}))

    @property
    def all_created(self) -> bool:
        return self.user_created and self.database_created and self.secret_created

    def to_patch(self) -> Dict[str, Any]:
        """Render as a status patch with resource field names."""
        return self.model_dump(by_alias=True)
