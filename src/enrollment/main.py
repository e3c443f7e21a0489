"""Entry point wiring the enrollment components together.

The remote services and collaborators (Graph clients, the registration
flow, the OOBE launcher) are supplied by the host process; this module
builds everything else from settings and runs the workflow.
"""

import time
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

import structlog

from src.enrollment.certificates import CertificateLifecycleValidator
from src.enrollment.cleanup import (
    CleanupCoordinator,
    DeviceManagementService,
    DirectoryService,
    ProvisioningService,
)
from src.enrollment.clock import Clock
from src.enrollment.config import EnrollmentSettings, load_settings, log_configuration
from src.enrollment.context import DeploymentContext
from src.enrollment.device import DeviceIdentity
from src.enrollment.errors import ConfigurationError
from src.enrollment.events import EventEmitter
from src.enrollment.logging_config import configure_logging
from src.enrollment.orchestrator import Collaborators, DeploymentOrchestrator
from src.enrollment.results import PhaseOutcome
from src.enrollment.state.machine import DeploymentStateMachine
from src.enrollment.state.models import DeploymentPhase
from src.enrollment.state.repository import FileStateStore, StateStore


logger = structlog.get_logger(__name__)


def build_orchestrator(
    settings: EnrollmentSettings,
    directory: DirectoryService,
    device_management: DeviceManagementService,
    provisioning: ProvisioningService,
    collaborators: Collaborators,
    device: Optional[DeviceIdentity] = None,
    store: Optional[StateStore] = None,
    clock: Optional[Clock] = None,
    sleep: Callable[[float], None] = time.sleep,
    event_emitter: Optional[EventEmitter] = None,
) -> DeploymentOrchestrator:
    """Wire all enrollment dependencies into a DeploymentOrchestrator."""
    context = DeploymentContext.create(settings, device=device, clock=clock, sleep=sleep)

    state_machine = DeploymentStateMachine(
        store=store or FileStateStore(settings.state_dir),
        device_serial=context.device.serial_number,
        clock=context.clock,
        max_age=timedelta(hours=settings.checkpoint_max_age_hours),
    )

    validator = CertificateLifecycleValidator(
        executor=context.executor,
        clock=context.clock,
        expiry_warning_days=settings.certificate_expiry_warning_days,
    )

    coordinator = CleanupCoordinator(
        context=context,
        directory=directory,
        device_management=device_management,
        provisioning=provisioning,
    )

    return DeploymentOrchestrator(
        context=context,
        state_machine=state_machine,
        validator=validator,
        coordinator=coordinator,
        collaborators=collaborators,
        event_emitter=event_emitter,
    )


def run_deployment(
    directory: DirectoryService,
    device_management: DeviceManagementService,
    provisioning: ProvisioningService,
    collaborators: Collaborators,
    config_file: Optional[Path] = None,
    reset: bool = False,
) -> PhaseOutcome:
    """Load settings, configure logging and run the enrollment workflow.

    Args:
        directory: Directory (Entra) device record service.
        device_management: Managed device (Intune) record service.
        provisioning: Provisioning (Autopilot) identity service.
        collaborators: Authentication, group lookup, registration, OOBE.
        config_file: Optional JSON settings file.
        reset: Discard any existing checkpoint before running.

    Returns:
        The outcome of the run. Configuration errors surface as a failed
        outcome for the NOT_STARTED phase, since no checkpoint exists yet.
    """
    try:
        settings = load_settings(config_file)
    except ConfigurationError as exc:
        configure_logging()
        logger.error("Invalid configuration", error=exc.message)
        return PhaseOutcome(
            success=False,
            message=exc.message,
            phase=DeploymentPhase.NOT_STARTED,
            cause=exc,
        )

    configure_logging(settings.log_level, settings.log_json)
    log_configuration(settings)

    orchestrator = build_orchestrator(
        settings, directory, device_management, provisioning, collaborators
    )
    if reset:
        orchestrator.state_machine.reset()
    return orchestrator.run()
