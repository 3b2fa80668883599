"""
Custom exceptions for the database user operator.

This module defines the error taxonomy used by the reconciliation engine.
The class of an error decides how the operator retries (see
``dbuser_operator.utils.retry``), so callers raise the most specific type
and chain the original driver or SDK error with ``raise ... from exc``.
"""
from typing import Optional, Dict, Any


class OperatorError(Exception):
    """
    Base exception for all operator errors.

    All custom exceptions should inherit from this base class.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(OperatorError):
    """
    Raised when the desired state cannot be acted upon as written.

    Used for mutually exclusive or missing connection sources, invalid
    regions, unsupported engines and malformed specs. Requires a spec edit.
    """


class TemplateError(ConfigurationError):
    """
    Raised when the secret output template is rejected.

    Used for syntax errors, unknown or undefined variables and output that
    does not parse as a JSON object.
    """


class NotFoundError(OperatorError):
    """
    Raised when a referenced secret or credential does not exist.
    """

    def __init__(self, resource: str, resource_id: str, details: Optional[Dict[str, Any]] = None):
        message = f"{resource} '{resource_id}' not found"
        super().__init__(
            message=message,
            details=details or {"resource": resource, "resource_id": resource_id},
        )


class FormatError(OperatorError):
    """
    Raised when a payload cannot be parsed into the expected shape.

    Used for admin connection secrets that are not valid JSON, miss the
    configured key, or hold a non-string value.
    """


class PermissionDeniedError(OperatorError):
    """
    Raised when the credential store or the engine denies access.
    """


class UnrecoverablePasswordError(OperatorError):
    """
    Raised when a user or database exists but its password cannot be found.

    Terminal for the object until the desired state is edited or deleted.
    """

    def __init__(
        self,
        user_exists: bool,
        database_exists: bool,
        secret_exists: bool,
        reason: Optional[str] = None,
    ):
        message = reason or (
            "database and/or user exist but secret is missing - cannot recover password "
            f"(database exists: {str(database_exists).lower()}, "
            f"user exists: {str(user_exists).lower()}, "
            f"secret exists: {str(secret_exists).lower()}). "
            "Please delete the Database resource and recreate it, or manually create "
            "the secret with the correct password"
        )
        super().__init__(
            message=message,
            details={
                "user_exists": user_exists,
                "database_exists": database_exists,
                "secret_exists": secret_exists,
            },
        )


class TransientError(OperatorError):
    """
    Raised for connectivity failures and timeouts.
    """


class EngineError(OperatorError):
    """
    Raised when a relational engine statement fails.

    Carries the operation name so the status message says what was attempted.
    """

    def __init__(self, operation: str, reason: str, details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        super().__init__(
            message=f"failed to {operation}: {reason}",
            details=details or {"operation": operation},
        )


class SecretStoreError(OperatorError):
    """
    Raised when an AWS Secrets Manager call fails.
    """


class SecretNotFoundError(SecretStoreError):
    """Raised when a secret does not exist in the store."""

    def __init__(self, secret_name: str):
        self.secret_name = secret_name
        super().__init__(
            message=f"secret {secret_name} does not exist",
            details={"secret_name": secret_name},
        )


class SecretMarkedForDeletionError(SecretStoreError):
    """Raised when a secret is scheduled for deletion and cannot be written."""

    def __init__(self, secret_name: str):
        self.secret_name = secret_name
        super().__init__(
            message=f"secret {secret_name} is marked for deletion",
            details={"secret_name": secret_name},
        )


__all__ = [
    "OperatorError",
    "ConfigurationError",
    "TemplateError",
    "NotFoundError",
    "FormatError",
    "PermissionDeniedError",
    "UnrecoverablePasswordError",
    "TransientError",
    "EngineError",
    "SecretStoreError",
    "SecretNotFoundError",
    "SecretMarkedForDeletionError",
]
