"""
Core reconciliation logic that does not touch any backend.

This package provides:
- Phase state machine for Database status
- The decision table that maps observed state to an action
- Per-object locks serializing passes

Import directly from submodules:
from dbuser_operator.core.state_machine import PhaseStateMachine
from dbuser_operator.core.decision import Action, ObservedState, decide
from dbuser_operator.core.lock_manager import lock_manager
"""
