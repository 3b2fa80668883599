"""
Tests for Database phase transitions.
"""
import pytest

from dbuser_operator.core.state_machine import PhaseStateMachine
from dbuser_operator.models.database import DatabasePhase


@pytest.mark.parametrize("phase", ["", None, "Unknown"])
def test_unset_phase_is_pending(phase):
    assert PhaseStateMachine.coerce(phase) is DatabasePhase.PENDING


@pytest.mark.parametrize(
    "from_phase, to_phase",
    [
        ("", DatabasePhase.READY),
        ("Pending", DatabasePhase.ERROR),
        ("Ready", DatabasePhase.READY),
        ("Ready", DatabasePhase.ERROR),
        ("Error", DatabasePhase.ERROR),
        ("Error", DatabasePhase.READY),
        ("Ready", DatabasePhase.DELETING),
    ],
)
def test_allowed_transitions(from_phase, to_phase):
    assert PhaseStateMachine.validate_transition(from_phase, to_phase) is to_phase


@pytest.mark.parametrize("to_phase", [DatabasePhase.READY, DatabasePhase.ERROR, DatabasePhase.PENDING])
def test_deleting_is_terminal(to_phase):
    assert PhaseStateMachine.can_transition("Deleting", to_phase) is False
    with pytest.raises(ValueError, match="Invalid phase transition from Deleting"):
        PhaseStateMachine.validate_transition("Deleting", to_phase, resource="apps/orders")


def test_nothing_returns_to_pending():
    assert PhaseStateMachine.can_transition("Ready", DatabasePhase.PENDING) is False
