"""Deployment state models.

This module defines the data models for the deployment checkpoint:
- DeploymentPhase: Ordered enum of workflow phases
- PhaseResult: Outcome recorded for a finished phase
- DeploymentState: Complete persisted checkpoint for one device

Phases are compared by integer rank. Skip decisions on resume rely on that
ordering, so the values below must stay in workflow order.
"""

from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentPhase(IntEnum):
    """Workflow phases in execution order.

    FAILED is an advisory marker rather than a position in the sequence: it
    is set by DeploymentStateMachine.record_error() and does not prevent a
    later run from advancing again.
    """

    NOT_STARTED = 0
    PRE_FLIGHT_CHECKS = 1
    MODULE_INSTALLATION = 2
    AZURE_AUTHENTICATION = 3
    KEY_VAULT_ACCESS = 4
    GRAPH_AUTHENTICATION = 5
    DEVICE_CLEANUP = 6
    ENTRA_CLEANUP = 7
    INTUNE_CLEANUP = 8
    AUTOPILOT_CLEANUP = 9
    GROUP_VALIDATION = 10
    DEVICE_REGISTRATION = 11
    OOBE_LAUNCH = 12
    COMPLETED = 13
    FAILED = 99

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES: Dict[DeploymentPhase, str] = {
    DeploymentPhase.NOT_STARTED: "NotStarted",
    DeploymentPhase.PRE_FLIGHT_CHECKS: "PreFlightChecks",
    DeploymentPhase.MODULE_INSTALLATION: "ModuleInstallation",
    DeploymentPhase.AZURE_AUTHENTICATION: "AzureAuthentication",
    DeploymentPhase.KEY_VAULT_ACCESS: "KeyVaultAccess",
    DeploymentPhase.GRAPH_AUTHENTICATION: "GraphAuthentication",
    DeploymentPhase.DEVICE_CLEANUP: "DeviceCleanup",
    DeploymentPhase.ENTRA_CLEANUP: "EntraCleanup",
    DeploymentPhase.INTUNE_CLEANUP: "IntuneCleanup",
    DeploymentPhase.AUTOPILOT_CLEANUP: "AutopilotCleanup",
    DeploymentPhase.GROUP_VALIDATION: "GroupValidation",
    DeploymentPhase.DEVICE_REGISTRATION: "DeviceRegistration",
    DeploymentPhase.OOBE_LAUNCH: "OOBELaunch",
    DeploymentPhase.COMPLETED: "Completed",
    DeploymentPhase.FAILED: "Failed",
}

# Every phase except the FAILED marker, in rank order.
ORDERED_PHASES: List[DeploymentPhase] = sorted(
    phase for phase in DeploymentPhase if phase != DeploymentPhase.FAILED
)


class PhaseResult(BaseModel):
    """Outcome recorded for a phase.

    Attributes:
        result: Free-form result payload (message, counts, flags).
        completed_at: When the result was recorded (UTC).
    """

    result: Any = None
    completed_at: datetime = Field(default_factory=utc_now)


class DeploymentState(BaseModel):
    """Checkpoint of the deployment workflow on one device.

    Attributes:
        device_serial: Hardware serial the checkpoint belongs to.
        current_phase: Highest phase reached, or FAILED after an error.
        failed_from_phase: Phase that was running when FAILED was recorded.
        started_at: When the logical session started (UTC).
        last_checkpoint: When the state was last mutated (UTC).
        phase_results: Phase display name -> recorded result.
        cleaned_device_ids: Remote record ids already removed this session.
        last_error: Message of the most recent fatal error.
        is_resume: True when this state was loaded from a valid checkpoint.
            Runtime only, never persisted.
    """

    device_serial: str = ""
    current_phase: DeploymentPhase = DeploymentPhase.NOT_STARTED
    failed_from_phase: Optional[DeploymentPhase] = None
    started_at: datetime = Field(default_factory=utc_now)
    last_checkpoint: datetime = Field(default_factory=utc_now)
    phase_results: Dict[str, PhaseResult] = Field(default_factory=dict)
    cleaned_device_ids: Set[str] = Field(default_factory=set)
    last_error: Optional[str] = None
    is_resume: bool = Field(default=False, exclude=True)

    @property
    def resume_phase(self) -> DeploymentPhase:
        """Phase a resumed run continues from.

        Equals current_phase, except after an error where it is the phase
        that was running when the error was recorded.
        """
        if self.current_phase == DeploymentPhase.FAILED:
            return self.failed_from_phase or DeploymentPhase.NOT_STARTED
        return self.current_phase
