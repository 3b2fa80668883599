"""
Failure classification and retry policy.

A failed pass is classified once, and the class alone decides how long the
substrate waits before the next pass. The policy is a pure function; the
actual requeue belongs to the operator framework.

Kubernetes API reads done by the operator itself are retried in place with
``retry_on_k8s_error``. Engine and secret store calls are never retried
inside a pass.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Optional, TypeVar

import asyncpg
import pymysql
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    NoRegionError,
    ReadTimeoutError,
)
from kubernetes_asyncio.client.exceptions import ApiException
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from dbuser_operator.config.logging import get_logger
from dbuser_operator.exceptions import (
    ConfigurationError,
    FormatError,
    NotFoundError,
    PermissionDeniedError,
    SecretNotFoundError,
    TransientError,
    UnrecoverablePasswordError,
)

logger = get_logger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Retry class of a failed pass."""

    CONFIGURATION = "configuration"
    FORMAT = "format"
    NOT_FOUND = "not_found"
    PERMISSION = "permission"
    UNRECOVERABLE = "unrecoverable"
    TRANSIENT = "transient"

    @property
    def event_reason(self) -> str:
        return {
            ErrorKind.CONFIGURATION: "ConfigurationError",
            ErrorKind.FORMAT: "InvalidSecretFormat",
            ErrorKind.NOT_FOUND: "ResourceNotFound",
            ErrorKind.PERMISSION: "PermissionError",
            ErrorKind.UNRECOVERABLE: "UnrecoverablePassword",
            ErrorKind.TRANSIENT: "ReconciliationError",
        }[self]

    @property
    def is_terminal(self) -> bool:
        """Terminal kinds wait for the desired state to change."""
        return self in (ErrorKind.CONFIGURATION, ErrorKind.UNRECOVERABLE)


PERMISSION_ERROR_CODES = {
    "AccessDeniedException",
    "AccessDenied",
    "UnauthorizedOperation",
    "UnrecognizedClientException",
    "InvalidSignatureException",
}
NOT_FOUND_ERROR_CODES = {"ResourceNotFoundException"}

# MySQL: access denied to database, for user, to table, super privilege required, routine
MYSQL_PERMISSION_ERRNOS = {1044, 1045, 1142, 1227, 1370}

PERMISSION_KEYWORDS = (
    "accessdeniedexception",
    "accessdenied",
    "access denied",
    "not authorized",
    "insufficient permissions",
    "permission denied",
    "forbidden",
    "unauthorizedoperation",
)
NOT_FOUND_KEYWORDS = (
    "resourcenotfoundexception",
    "resource not found",
    "can't find the specified secret",
)


def _error_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield ``exc`` and every exception it was raised from, without cycles."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _classify_typed(exc: BaseException) -> Optional[ErrorKind]:
    if isinstance(exc, UnrecoverablePasswordError):
        return ErrorKind.UNRECOVERABLE
    if isinstance(exc, ConfigurationError):
        return ErrorKind.CONFIGURATION
    if isinstance(exc, FormatError):
        return ErrorKind.FORMAT
    if isinstance(exc, PermissionDeniedError):
        return ErrorKind.PERMISSION
    if isinstance(exc, (NotFoundError, SecretNotFoundError)):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, TransientError):
        return ErrorKind.TRANSIENT

    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        if code in PERMISSION_ERROR_CODES:
            return ErrorKind.PERMISSION
        if code in NOT_FOUND_ERROR_CODES:
            return ErrorKind.NOT_FOUND
        return None
    if isinstance(exc, NoCredentialsError):
        return ErrorKind.PERMISSION
    if isinstance(exc, NoRegionError):
        return ErrorKind.CONFIGURATION
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return ErrorKind.TRANSIENT

    if isinstance(
        exc,
        (
            asyncpg.exceptions.InsufficientPrivilegeError,
            asyncpg.exceptions.InvalidAuthorizationSpecificationError,
        ),
    ):
        return ErrorKind.PERMISSION
    if isinstance(exc, pymysql.err.MySQLError) and exc.args and exc.args[0] in MYSQL_PERMISSION_ERRNOS:
        return ErrorKind.PERMISSION

    return None


def _classify_message(exc: BaseException) -> Optional[ErrorKind]:
    text = str(exc).lower()
    if any(keyword in text for keyword in PERMISSION_KEYWORDS):
        return ErrorKind.PERMISSION
    if any(keyword in text for keyword in NOT_FOUND_KEYWORDS):
        return ErrorKind.NOT_FOUND
    return None


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Classify a failed pass.

    Typed errors anywhere in the cause chain win over message keywords.
    Anything unrecognised is transient.

    Args:
        exc: The exception that ended the pass

    Returns:
        The retry class
    """
    chain = list(_error_chain(exc))
    for link in chain:
        kind = _classify_typed(link)
        if kind is not None:
            return kind
    for link in chain:
        kind = _classify_message(link)
        if kind is not None:
            return kind
    return ErrorKind.TRANSIENT


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Delay before the next pass, as a function of the error class.

    Attributes:
        base_delay: First delay for transient failures
        max_delay: Cap for transient failures
        long_delay: Fixed delay for failures that need a human
    """

    base_delay: float = 15.0
    max_delay: float = 60.0
    long_delay: float = 300.0

    @classmethod
    def from_settings(cls, settings) -> "BackoffPolicy":
        return cls(
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            long_delay=settings.long_retry_delay,
        )

    def delay_for(self, kind: ErrorKind, attempt: int = 0) -> Optional[float]:
        """
        Args:
            kind: Error class of the failed pass
            attempt: Number of consecutive failures before this one

        Returns:
            Seconds to wait, or None when the object must wait for a spec change
        """
        if kind.is_terminal:
            return None
        if kind in (ErrorKind.PERMISSION, ErrorKind.NOT_FOUND, ErrorKind.FORMAT):
            return self.long_delay
        return min(self.base_delay * (2 ** max(attempt, 0)), self.max_delay)


_REQUEST_ID = re.compile(r"request[\s_-]?id\s*[:=]\s*[A-Za-z0-9-]+,?\s?", re.IGNORECASE)
_UUID = re.compile(r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b")
_TIMESTAMP = re.compile(
    r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?"
)
_SPACES = re.compile(r"\s{2,}")


def normalize_error_message(message: str) -> str:
    """
    Strip volatile content from an error message.

    Request identifiers, UUIDs and timestamps change on every attempt; leaving
    them in would rewrite the status and post a new event on every pass.
    """
    normalized = _REQUEST_ID.sub("", message)
    normalized = _UUID.sub("", normalized)
    normalized = _TIMESTAMP.sub("", normalized)
    normalized = _SPACES.sub(" ", normalized)
    return normalized.strip().rstrip(", ").strip()


def is_retryable_k8s_error(exception: BaseException) -> bool:
    """
    Determine if a Kubernetes API exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    if not isinstance(exception, ApiException):
        return False

    retryable_status_codes = {
        408,  # Request Timeout
        429,  # Too Many Requests
        500,  # Internal Server Error
        502,  # Bad Gateway
        503,  # Service Unavailable
        504,  # Gateway Timeout
    }

    return exception.status in retryable_status_codes


def _log_k8s_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "k8s_api_call_failed_retrying",
        function=getattr(retry_state.fn, "__name__", "unknown"),
        attempt=retry_state.attempt_number,
        delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error_type=type(exc).__name__ if exc else None,
        status_code=getattr(exc, "status", None),
    )


def retry_on_k8s_error(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator to retry Kubernetes API calls with exponential backoff.

    Args:
        max_retries: Maximum number of attempts (default: 3)
        initial_delay: Initial delay between retries in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)

    Example:
        @retry_on_k8s_error(max_retries=5)
        async def read_secret(name: str, namespace: str):
            ...
    """
    return retry(
        retry=retry_if_exception(is_retryable_k8s_error),
        stop=stop_after_attempt(max_retries),
        wait=wait_exponential(multiplier=initial_delay, max=max_delay),
        before_sleep=_log_k8s_retry,
        reraise=True,
    )
