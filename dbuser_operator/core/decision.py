"""
Decision table for a reconciliation pass.

Every pass is a function of the desired spec, the freshly observed state and
the persisted status. Nothing here talks to a backend; the reconciler
gathers ``ObservedState`` and acts on the returned ``Decision``.

Observed existence of the user, the database and the secret selects the
action:

    user  database  secret   action
    ----  --------  ------   ------------------------------------------
     T       T        T      VERIFY_AND_SYNC (MIGRATE_FORMAT if stale)
     T/F     T/F      F      MIGRATE_REGION if the old region has the
     (at least one T)        secret, otherwise UNRECOVERABLE
     F       F        F      CREATE
     (at least one F) T      REPAIR using the stored password
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from dbuser_operator.models.database import DatabasePhase, DatabaseStatus

CURRENT_SECRET_FORMAT_VERSION = "v2"


class Action(str, Enum):
    """What a pass does once the observed state is known."""

    NOOP = "noop"
    VERIFY_AND_SYNC = "verify_and_sync"
    MIGRATE_FORMAT = "migrate_format"
    MIGRATE_REGION = "migrate_region"
    REPAIR = "repair"
    CREATE = "create"
    UNRECOVERABLE = "unrecoverable"

    @property
    def generates_password(self) -> bool:
        return self is Action.CREATE


@dataclass(frozen=True)
class ObservedState:
    """Live existence facts gathered during one pass. Never persisted."""

    user_exists: bool
    database_exists: bool
    secret_exists: bool
    old_region_secret_exists: Optional[bool] = None

    @property
    def all_exist(self) -> bool:
        return self.user_exists and self.database_exists and self.secret_exists

    @property
    def engine_side_exists(self) -> bool:
        return self.user_exists or self.database_exists


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: str


def format_is_stale(status: DatabaseStatus) -> bool:
    return status.secret_format_version != CURRENT_SECRET_FORMAT_VERSION


def needs_reconciliation(status: DatabaseStatus, generation: int) -> bool:
    """
    Decide whether a pass has work to do at all.

    A pass is a pure no-op when all three resources are recorded as created,
    the spec generation was already observed, the secret format is current
    and the last pass ended Ready.
    """
    if not status.all_created:
        return True
    if status.phase != DatabasePhase.READY.value:
        return True
    if status.observed_generation != generation:
        return True
    return format_is_stale(status)


def region_changed(status: DatabaseStatus, target_region: str) -> bool:
    """True when the secret was last written to a different region."""
    return bool(status.secret_region) and status.secret_region != target_region


def needs_old_region_lookup(observed: ObservedState, status: DatabaseStatus, target_region: str) -> bool:
    """
    Whether the reconciler must look up the previously recorded region.

    Only relevant when the engine side exists, the secret is missing from the
    target region and the status knows where it used to live.
    """
    return (
        observed.engine_side_exists
        and not observed.secret_exists
        and region_changed(status, target_region)
        and bool(status.actual_secret_name)
    )


def decide(observed: ObservedState, status: DatabaseStatus, target_region: str) -> Decision:
    """
    Choose the action for a pass.

    Args:
        observed: Existence facts gathered this pass
        status: Persisted status from the previous pass
        target_region: Resolved region the secret must live in

    Returns:
        Decision with the action and a human readable reason
    """
    if observed.all_exist:
        if format_is_stale(status):
            return Decision(
                Action.MIGRATE_FORMAT,
                f"secret format {status.secret_format_version or 'v1'} is behind "
                f"{CURRENT_SECRET_FORMAT_VERSION}",
            )
        return Decision(Action.VERIFY_AND_SYNC, "database, user and secret already exist")

    if observed.engine_side_exists and not observed.secret_exists:
        if needs_old_region_lookup(observed, status, target_region):
            if observed.old_region_secret_exists:
                return Decision(
                    Action.MIGRATE_REGION,
                    f"secret moves from {status.secret_region} to {target_region or 'default region'}",
                )
            return Decision(
                Action.UNRECOVERABLE,
                f"region changed from {status.secret_region} to {target_region or 'default region'} "
                "but secret not found in old region - cannot recover password. Please delete the "
                "Database resource and recreate it, or manually create the secret with the correct password",
            )
        return Decision(Action.UNRECOVERABLE, "database and/or user exist but secret is missing")

    if observed.secret_exists:
        return Decision(Action.REPAIR, "secret exists, recreating missing database resources from it")

    return Decision(Action.CREATE, "no database, user or secret exists")
