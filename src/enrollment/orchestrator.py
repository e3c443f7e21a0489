"""Deployment orchestrator driving a device through every enrollment phase.

Runs the phases in rank order: pre-flight checks, module installation, Azure
and Key Vault access, Graph authentication, the three cleanup passes, group
validation, registration and the OOBE hand-off. Phases already finished in a
resumed session are skipped; the phase the previous run stopped in runs again.

Authentication does not survive a restart, so it is established lazily: any
phase that needs a Graph session first connects (fetching and validating the
certificate) if this process has not done so yet. The certificate is cleared
as soon as the Graph connection is made, or when the run ends, whichever
comes first.

Every fatal error is recorded in the checkpoint with record_error() before
the run halts, leaving a resumable checkpoint behind.

Collaborators:
- Authenticator: Azure sign-in and Graph connection (may block on user action)
- GroupDirectory: looks up the target assignment group
- DeviceRegistrar: the external registration flow
- OOBELauncher: hands the device back to the first-boot experience
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import structlog

from src.enrollment.certificates import (
    CertificateLifecycleValidator,
    Credential,
    SecretStore,
)
from src.enrollment.cleanup import CleanupCoordinator
from src.enrollment.config import EnrollmentSettings
from src.enrollment.context import DeploymentContext
from src.enrollment.device import DeviceIdentity
from src.enrollment.errors import (
    AuthenticationError,
    ConfigurationError,
    OperationFailedError,
    TransientNetworkError,
)
from src.enrollment.events import (
    DeploymentEvent,
    EventEmitter,
    EventType,
    LoggingEventEmitter,
)
from src.enrollment.results import PhaseOutcome
from src.enrollment.state.machine import DeploymentStateMachine
from src.enrollment.state.models import DeploymentPhase


logger = structlog.get_logger(__name__)


class Authenticator(Protocol):
    def connect_azure(self, settings: EnrollmentSettings) -> SecretStore:
        """Sign in to Azure and return a client for the configured vault."""
        ...

    def connect_graph(self, settings: EnrollmentSettings, credential: Credential) -> None:
        """Open the Graph session used by the cleanup and group services."""
        ...


class GroupDirectory(Protocol):
    def find_group(self, name: str) -> Optional[Dict[str, Any]]:
        ...


class DeviceRegistrar(Protocol):
    def register(self, device: DeviceIdentity, settings: EnrollmentSettings) -> Any:
        ...


class OOBELauncher(Protocol):
    def launch(self) -> None:
        ...


@dataclass
class Collaborators:
    """External collaborators the orchestrator delegates to."""

    authenticator: Authenticator
    groups: GroupDirectory
    registrar: DeviceRegistrar
    oobe_launcher: OOBELauncher
    module_installer: Optional[Callable[[], Any]] = None
    connectivity_check: Optional[Callable[[], Any]] = None


PhaseHandler = Callable[[DeploymentPhase], PhaseOutcome]


class DeploymentOrchestrator:
    """Sequences the enrollment phases against the checkpointed state.

    Attributes:
        context: Settings, device identity, clock and retry executor.
        state_machine: Checkpoint of this device's deployment.
        validator: Certificate retrieval and validation.
        coordinator: Stale record cleanup.
        collaborators: External systems and hand-offs.
        event_emitter: Receives deployment events.
    """

    def __init__(
        self,
        context: DeploymentContext,
        state_machine: DeploymentStateMachine,
        validator: CertificateLifecycleValidator,
        coordinator: CleanupCoordinator,
        collaborators: Collaborators,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.context = context
        self.state_machine = state_machine
        self.validator = validator
        self.coordinator = coordinator
        self.collaborators = collaborators
        self.event_emitter = event_emitter or LoggingEventEmitter()

        self._secret_store: Optional[SecretStore] = None
        self._pending_credential: Optional[Credential] = None
        self._graph_connected = False

        self._phases: List[Tuple[DeploymentPhase, PhaseHandler]] = [
            (DeploymentPhase.PRE_FLIGHT_CHECKS, self._run_preflight_checks),
            (DeploymentPhase.MODULE_INSTALLATION, self._run_module_installation),
            (DeploymentPhase.AZURE_AUTHENTICATION, self._run_azure_authentication),
            (DeploymentPhase.KEY_VAULT_ACCESS, self._run_key_vault_access),
            (DeploymentPhase.GRAPH_AUTHENTICATION, self._run_graph_authentication),
            (DeploymentPhase.DEVICE_CLEANUP, self._run_device_cleanup),
            (DeploymentPhase.ENTRA_CLEANUP, self._run_entra_cleanup),
            (DeploymentPhase.INTUNE_CLEANUP, self._run_intune_cleanup),
            (DeploymentPhase.AUTOPILOT_CLEANUP, self._run_autopilot_cleanup),
            (DeploymentPhase.GROUP_VALIDATION, self._run_group_validation),
            (DeploymentPhase.DEVICE_REGISTRATION, self._run_device_registration),
            (DeploymentPhase.OOBE_LAUNCH, self._run_oobe_launch),
        ]

    @property
    def settings(self) -> EnrollmentSettings:
        return self.context.settings

    def run(self) -> PhaseOutcome:
        """Run every phase that has not already finished.

        Returns:
            A successful outcome for the COMPLETED phase, or a failed outcome
            for the phase that raised a fatal error.
        """
        logger.info(
            "Starting deployment",
            device_serial=self.context.device.serial_number,
            is_resume=self.state_machine.is_resume,
            resume_phase=self.state_machine.state.resume_phase.display_name,
        )

        try:
            for phase, handler in self._phases:
                if self.state_machine.should_skip(phase):
                    logger.info("Skipping completed phase", phase=phase.display_name)
                    self._emit(EventType.PHASE_SKIPPED, phase)
                    continue

                try:
                    self.state_machine.advance_to(phase)
                    self._emit(EventType.PHASE_STARTED, phase)
                    outcome = handler(phase)
                    self.state_machine.record_phase_result(phase, outcome.to_result())
                except Exception as exc:
                    return self._fail(phase, exc)

                self._emit(EventType.PHASE_COMPLETED, phase, {"message": outcome.message})
        finally:
            self._clear_pending_credential()

        self.state_machine.mark_completed()
        removed = len(self.state_machine.state.cleaned_device_ids)
        self._emit(EventType.COMPLETION, DeploymentPhase.COMPLETED, {"cleaned_devices": removed})
        return PhaseOutcome(
            success=True,
            message="Deployment completed",
            phase=DeploymentPhase.COMPLETED,
            data={"cleaned_devices": removed},
        )

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------

    def _run_preflight_checks(self, phase: DeploymentPhase) -> PhaseOutcome:
        device = self.context.device
        if not device.has_usable_serial:
            raise ConfigurationError(
                f"Device serial number is unavailable or a placeholder: {device.serial_number!r}"
            )
        if not device.computer_name:
            logger.warning("Computer name is empty", serial_number=device.serial_number)

        if self.collaborators.connectivity_check is not None:
            self.context.executor.execute(
                self.collaborators.connectivity_check, "preflight.connectivity"
            )

        return PhaseOutcome(
            success=True,
            message="Pre-flight checks passed",
            phase=phase,
            data={
                "serial_number": device.serial_number,
                "computer_name": device.computer_name,
            },
        )

    def _run_module_installation(self, phase: DeploymentPhase) -> PhaseOutcome:
        installer = self.collaborators.module_installer
        if installer is None:
            return PhaseOutcome(True, "No modules to install", phase)
        self.context.executor.execute(installer, "module_installation")
        return PhaseOutcome(True, "Modules installed", phase)

    def _run_azure_authentication(self, phase: DeploymentPhase) -> PhaseOutcome:
        self._ensure_azure_session()
        return PhaseOutcome(
            True, "Connected to Azure", phase, {"tenant_id": self.settings.tenant_id}
        )

    def _run_key_vault_access(self, phase: DeploymentPhase) -> PhaseOutcome:
        self._clear_pending_credential()
        credential = self._retrieve_credential()
        self._pending_credential = credential
        return PhaseOutcome(
            success=True,
            message="Certificate retrieved",
            phase=phase,
            data={
                "key_vault_name": self.settings.key_vault_name,
                "thumbprint": credential.thumbprint,
                "not_after": credential.not_after.isoformat(),
                "days_until_expiry": credential.days_until_expiry,
            },
        )

    def _run_graph_authentication(self, phase: DeploymentPhase) -> PhaseOutcome:
        self._ensure_graph_session()
        return PhaseOutcome(True, "Connected to Graph", phase)

    def _run_device_cleanup(self, phase: DeploymentPhase) -> PhaseOutcome:
        settings = self.settings
        device = self.context.device
        systems = [
            name for name, enabled in (
                ("entra", settings.cleanup_entra),
                ("intune", settings.cleanup_intune),
                ("autopilot", settings.cleanup_autopilot),
            )
            if enabled
        ]
        keys = device.directory_keys(
            settings.device_name_prefix, settings.device_name_serial_length
        )
        logger.info("Device cleanup planned", systems=systems, identity_keys=keys)
        return PhaseOutcome(
            True,
            "Cleanup planned",
            phase,
            {"systems": systems, "identity_keys": keys},
        )

    def _run_entra_cleanup(self, phase: DeploymentPhase) -> PhaseOutcome:
        return self._run_cleanup(
            phase, "entra", self.settings.cleanup_entra,
            self.coordinator.cleanup_directory_records,
        )

    def _run_intune_cleanup(self, phase: DeploymentPhase) -> PhaseOutcome:
        return self._run_cleanup(
            phase, "intune", self.settings.cleanup_intune,
            self.coordinator.cleanup_managed_device_records,
        )

    def _run_autopilot_cleanup(self, phase: DeploymentPhase) -> PhaseOutcome:
        return self._run_cleanup(
            phase, "autopilot", self.settings.cleanup_autopilot,
            self.coordinator.cleanup_provisioning_records,
        )

    def _run_cleanup(
        self,
        phase: DeploymentPhase,
        system_name: str,
        enabled: bool,
        cleanup: Callable[[DeploymentStateMachine], int],
    ) -> PhaseOutcome:
        if not enabled:
            logger.info("Cleanup disabled", system=system_name)
            return PhaseOutcome(True, f"{system_name} cleanup disabled", phase, {"removed": 0})

        self._ensure_graph_session()
        before = len(self.coordinator.removed_records)
        removed = cleanup(self.state_machine)
        names = [r.display_name for r in self.coordinator.removed_records[before:]]
        return PhaseOutcome(
            True,
            f"Removed {removed} {system_name} record(s)",
            phase,
            {"removed": removed, "removed_names": names},
        )

    def _run_group_validation(self, phase: DeploymentPhase) -> PhaseOutcome:
        group_name = self.settings.target_group_name
        if not group_name:
            return PhaseOutcome(True, "No target group configured", phase)

        self._ensure_graph_session()
        group = self.context.executor.execute(
            lambda: self.collaborators.groups.find_group(group_name),
            "groups.find_group",
        )
        if not group:
            raise ConfigurationError(f"Target group not found: {group_name}")

        return PhaseOutcome(
            True,
            f"Target group {group_name} found",
            phase,
            {"group_name": group_name, "group_id": group.get("id")},
        )

    def _run_device_registration(self, phase: DeploymentPhase) -> PhaseOutcome:
        self._ensure_graph_session()
        result = self.collaborators.registrar.register(self.context.device, self.settings)
        data = {"group_tag": self.settings.group_tag}
        if result is not None:
            data["registration"] = result if isinstance(result, (dict, str, int, bool)) else str(result)
        return PhaseOutcome(True, "Device registered", phase, data)

    def _run_oobe_launch(self, phase: DeploymentPhase) -> PhaseOutcome:
        self.collaborators.oobe_launcher.launch()
        return PhaseOutcome(True, "OOBE launched", phase)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _ensure_azure_session(self) -> SecretStore:
        if self._secret_store is not None:
            return self._secret_store
        try:
            self._secret_store = self.context.executor.execute(
                lambda: self.collaborators.authenticator.connect_azure(self.settings),
                "azure.connect",
            )
        except OperationFailedError as exc:
            if isinstance(exc, TransientNetworkError):
                raise
            raise AuthenticationError(f"Azure sign-in failed: {exc.message}") from exc
        logger.info("Azure session established", tenant_id=self.settings.tenant_id)
        return self._secret_store

    def _retrieve_credential(self) -> Credential:
        secret_store = self._ensure_azure_session()
        return self.validator.retrieve(
            secret_store,
            self.settings.certificate_secret_name,
            self.settings.certificate_password_secret_name,
        )

    def _ensure_graph_session(self) -> None:
        if self._graph_connected:
            return

        credential = self._pending_credential or self._retrieve_credential()
        self._pending_credential = None
        with credential:
            try:
                self.context.executor.execute(
                    lambda: self.collaborators.authenticator.connect_graph(
                        self.settings, credential
                    ),
                    "graph.connect",
                )
            except OperationFailedError as exc:
                if isinstance(exc, TransientNetworkError):
                    raise
                raise AuthenticationError(f"Graph connection failed: {exc.message}") from exc

        self._graph_connected = True
        logger.info("Graph session established", thumbprint=credential.thumbprint)

    def _clear_pending_credential(self) -> None:
        if self._pending_credential is not None:
            self._pending_credential.clear()
            self._pending_credential = None

    # ------------------------------------------------------------------
    # Failure and events
    # ------------------------------------------------------------------

    def _fail(self, phase: DeploymentPhase, exc: Exception) -> PhaseOutcome:
        message = f"{phase.display_name} failed: {exc}"
        logger.error(
            "Deployment halted",
            phase=phase.display_name,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        self.state_machine.record_error(message)
        self._emit(
            EventType.ERROR,
            phase,
            {"error_type": type(exc).__name__, "error_message": str(exc)},
        )
        return PhaseOutcome(
            success=False,
            message=message,
            phase=phase,
            data={"error_type": type(exc).__name__},
            cause=exc,
        )

    def _emit(
        self,
        event_type: EventType,
        phase: DeploymentPhase,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = DeploymentEvent(
            event_type=event_type,
            device_serial=self.context.device.serial_number,
            phase=phase.display_name,
            timestamp=self.context.clock.now(),
            details=details or {},
        )
        try:
            self.event_emitter.emit(event)
        except Exception:
            logger.exception("Failed to emit deployment event", event_type=event_type.value)
