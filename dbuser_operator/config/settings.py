"""
Operator configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main operator settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Database User Operator", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Watched resource
    api_group: str = Field(default="dbaas.io", description="Custom resource API group")
    api_version: str = Field(default="v1alpha1", description="Custom resource API version")
    api_plural: str = Field(default="databases", description="Custom resource plural name")
    finalizer: str = Field(default="dbaas.io/database-finalizer", description="Finalizer guarding cleanup")
    peering_name: str = Field(default="dbuser-operator", description="Peering object used for single active writer")

    # Provisioning defaults
    secret_path_prefix: str = Field(default="rds", description="Prefix of the default secret path <prefix>/<engine>/<database>")
    managed_by_tag_key: str = Field(default="ManagedBy", description="Tag key marking secrets owned by the operator")
    managed_by_tag_value: str = Field(default="dbuser-operator", description="Tag value marking secrets owned by the operator")
    managed_comment: str = Field(default="Managed by dbuser-operator", description="Provenance comment on PostgreSQL objects")
    password_length: int = Field(default=32, ge=32, le=128, description="Length of generated passwords")

    # Requeue / backoff
    requeue_after_success: float = Field(default=600.0, ge=30, description="Seconds between periodic passes of a healthy object")
    retry_base_delay: float = Field(default=15.0, gt=0, description="Base delay for generic failures")
    retry_max_delay: float = Field(default=60.0, gt=0, description="Cap for generic failure backoff")
    long_retry_delay: float = Field(default=300.0, gt=0, description="Fixed delay for permission and not-found failures")

    # Relational engine deadlines
    sql_connect_timeout: float = Field(default=10.0, gt=0, description="Engine connect timeout in seconds")
    sql_command_timeout: float = Field(default=30.0, gt=0, description="Engine statement timeout in seconds")

    # AWS Secrets Manager
    aws_connect_timeout: float = Field(default=5.0, gt=0, description="Secrets Manager connect timeout in seconds")
    aws_read_timeout: float = Field(default=30.0, gt=0, description="Secrets Manager read timeout in seconds")
    aws_max_attempts: int = Field(default=3, ge=1, le=10, description="botocore attempts per API call")
    secret_recovery_window_days: int = Field(default=7, ge=7, le=30, description="Recovery window for soft deletes")

    # Health / metrics server
    health_host: str = Field(default="0.0.0.0", description="Health server host")
    health_port: int = Field(default=8081, ge=1, le=65535, description="Health server port")

    # Sentry
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")
    sentry_traces_sample_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Sentry traces sample rate"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        valid_envs = ["development", "testing", "staging", "production"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def managed_by_tags(self) -> dict[str, str]:
        """Tags every managed secret carries."""
        return {self.managed_by_tag_key: self.managed_by_tag_value}


# Global settings instance
settings = Settings()
