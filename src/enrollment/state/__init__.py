"""Deployment checkpoint and phase tracking.

This package manages the device's progression through deployment phases:
- not_started → pre_flight_checks → module_installation
- → azure_authentication → key_vault_access → graph_authentication
- → device_cleanup → entra_cleanup → intune_cleanup → autopilot_cleanup
- → group_validation → device_registration → oobe_launch → completed

State is persisted to a local file on every mutation and resumed on the next
run when it belongs to the same device and is less than a day old.
"""

from src.enrollment.state.models import (
    DeploymentPhase,
    DeploymentState,
    ORDERED_PHASES,
    PhaseResult,
)
from src.enrollment.state.machine import (
    DEFAULT_MAX_AGE,
    DeploymentStateMachine,
    STATE_KEY,
)
from src.enrollment.state.repository import (
    FileStateStore,
    StateStore,
)

__all__ = [
    # Models
    "DeploymentPhase",
    "DeploymentState",
    "ORDERED_PHASES",
    "PhaseResult",
    # State machine
    "DEFAULT_MAX_AGE",
    "DeploymentStateMachine",
    "STATE_KEY",
    # Repository
    "FileStateStore",
    "StateStore",
]
