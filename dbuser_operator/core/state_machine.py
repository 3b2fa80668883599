"""
Phase state machine for Database resources.

The reconciler reports one of four phases:
- Pending: accepted, no pass has completed yet
- Ready: database, user and secret are in place
- Error: the last pass failed (transient or terminal)
- Deleting: the resource is being removed

Usage:
    >>> from dbuser_operator.core.state_machine import PhaseStateMachine
    >>> from dbuser_operator.models import DatabasePhase
    >>>
    >>> PhaseStateMachine.can_transition(DatabasePhase.PENDING, DatabasePhase.READY)
    True
    >>> PhaseStateMachine.can_transition(DatabasePhase.DELETING, DatabasePhase.READY)
    False
"""

from typing import Dict, Optional, Set, Union

import structlog

from dbuser_operator.models.database import DatabasePhase

logger = structlog.get_logger(__name__)


class PhaseStateMachine:
    """
    State machine for Database phases.

    Ready and Error are re-enterable: every pass ends in one of them.
    Deleting is terminal.
    """

    TRANSITIONS: Dict[DatabasePhase, Set[DatabasePhase]] = {
        DatabasePhase.PENDING: {
            DatabasePhase.READY,
            DatabasePhase.ERROR,
            DatabasePhase.DELETING,
        },
        DatabasePhase.READY: {
            DatabasePhase.READY,
            DatabasePhase.ERROR,
            DatabasePhase.DELETING,
        },
        DatabasePhase.ERROR: {
            DatabasePhase.READY,
            DatabasePhase.ERROR,
            DatabasePhase.DELETING,
        },
        DatabasePhase.DELETING: set(),
    }

    @staticmethod
    def coerce(phase: Union[str, DatabasePhase, None]) -> DatabasePhase:
        """Map a persisted phase string to the enum. Empty or unknown means Pending."""
        if isinstance(phase, DatabasePhase):
            return phase
        try:
            return DatabasePhase(phase)
        except ValueError:
            return DatabasePhase.PENDING

    @classmethod
    def can_transition(
        cls,
        from_phase: Union[str, DatabasePhase, None],
        to_phase: DatabasePhase,
    ) -> bool:
        """
        Check if a phase transition is valid.

        Args:
            from_phase: Current phase (string from status or enum)
            to_phase: Target phase

        Returns:
            True if transition is allowed, False otherwise
        """
        allowed = cls.TRANSITIONS.get(cls.coerce(from_phase), set())
        return to_phase in allowed

    @classmethod
    def validate_transition(
        cls,
        from_phase: Union[str, DatabasePhase, None],
        to_phase: DatabasePhase,
        resource: Optional[str] = None,
    ) -> DatabasePhase:
        """
        Validate a phase transition and raise if invalid.

        Args:
            from_phase: Current phase
            to_phase: Target phase
            resource: Optional namespace/name for logging

        Returns:
            The target phase

        Raises:
            ValueError: If transition is not allowed
        """
        current = cls.coerce(from_phase)
        if not cls.can_transition(current, to_phase):
            error_msg = f"Invalid phase transition from {current.value} to {to_phase.value}"
            if resource:
                error_msg += f" for {resource}"

            logger.error(
                "invalid_phase_transition",
                resource=resource,
                from_phase=current.value,
                to_phase=to_phase.value,
                allowed_phases=[p.value for p in cls.TRANSITIONS.get(current, set())],
            )
            raise ValueError(error_msg)

        return to_phase
