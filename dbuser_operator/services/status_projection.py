"""
Map the outcome of a pass to a status patch, an event and a retry delay.

The status is rewritten and an event posted only when the phase or the
normalized message changes, so a failure that repeats on every retry
produces one event, not one per attempt.
"""
from dataclasses import dataclass
from typing import Optional

from dbuser_operator.core.state_machine import PhaseStateMachine
from dbuser_operator.models.database import DatabasePhase, DatabaseStatus
from dbuser_operator.utils.retry import BackoffPolicy, ErrorKind, classify_error, normalize_error_message

READY_MESSAGE = "Database, user, and secret are ready"
DELETING_MESSAGE = "Database resource is being deleted"

GUIDANCE = {
    ErrorKind.PERMISSION: (
        "Access denied. Ensure the operator has IAM permissions for Secrets Manager on the secret "
        "(IRSA or instance profile) and that the admin database user may manage roles and databases."
    ),
    ErrorKind.NOT_FOUND: (
        "Referenced resource not found. Verify the secret exists and that the name and region "
        "are correct in the Database spec."
    ),
}


@dataclass(frozen=True)
class StatusEvent:
    type: str
    reason: str
    message: str


@dataclass
class Projection:
    """
    Attributes:
        status: Status to persist
        changed: Whether ``status`` differs from the persisted one
        event: Event to post, if any
        kind: Error class for failed passes
        delay: Seconds until the next pass; None means wait for a spec change
    """

    status: DatabaseStatus
    changed: bool
    event: Optional[StatusEvent] = None
    kind: Optional[ErrorKind] = None
    delay: Optional[float] = None


def project_success(previous: DatabaseStatus, working: DatabaseStatus, generation: int) -> Projection:
    """Status after a pass that completed."""
    phase = PhaseStateMachine.validate_transition(previous.phase, DatabasePhase.READY)
    status = working.model_copy(
        update={
            "phase": phase.value,
            "message": READY_MESSAGE,
            "observed_generation": generation,
        }
    )
    return Projection(status=status, changed=status != previous)


def event_message(kind: ErrorKind, message: str) -> str:
    guidance = GUIDANCE.get(kind)
    if guidance:
        return f"{guidance} ({message})"
    return message


def project_failure(
    previous: DatabaseStatus,
    working: DatabaseStatus,
    error: BaseException,
    policy: BackoffPolicy,
    attempt: int = 0,
) -> Projection:
    """
    Status after a failed pass.

    The observed generation is left as it was so that the next pass does
    not mistake the failed generation for a reconciled one. Creation flags
    gathered before the failure are kept.

    Args:
        previous: Persisted status before the pass
        working: Status as far as the pass got
        error: The exception that ended the pass
        policy: Backoff policy
        attempt: Consecutive failures before this one

    Returns:
        Projection with the error class, retry delay and, when the
        phase or message changed, a Warning event
    """
    kind = classify_error(error)
    message = normalize_error_message(str(error))
    phase = PhaseStateMachine.validate_transition(previous.phase, DatabasePhase.ERROR)

    status = working.model_copy(
        update={
            "phase": phase.value,
            "message": message,
            "observed_generation": previous.observed_generation,
        }
    )

    event = None
    if previous.phase != phase.value or previous.message != message:
        event = StatusEvent(type="Warning", reason=kind.event_reason, message=event_message(kind, message))

    return Projection(
        status=status,
        changed=status != previous,
        event=event,
        kind=kind,
        delay=policy.delay_for(kind, attempt),
    )


def project_deleting(previous: DatabaseStatus) -> Projection:
    if PhaseStateMachine.coerce(previous.phase) is DatabasePhase.DELETING:
        return Projection(status=previous, changed=False)
    phase = PhaseStateMachine.validate_transition(previous.phase, DatabasePhase.DELETING)
    status = previous.model_copy(update={"phase": phase.value, "message": DELETING_MESSAGE})
    return Projection(status=status, changed=status != previous)
