"""
Desired and persisted state models for the Database resource.
"""
from dbuser_operator.models.database import (
    AWSSecretReference,
    AWSSecretsManagerConfig,
    ConnectionInfo,
    DatabaseEngine,
    DatabasePhase,
    DatabaseSpec,
    DatabaseStatus,
    SecretKeyReference,
)

__all__ = [
    "AWSSecretReference",
    "AWSSecretsManagerConfig",
    "ConnectionInfo",
    "DatabaseEngine",
    "DatabasePhase",
    "DatabaseSpec",
    "DatabaseStatus",
    "SecretKeyReference",
]
