"""Unit tests for checkpoint status inspection and deployment events."""

from datetime import timedelta

from structlog.testing import capture_logs

from src.enrollment.events import (
    DeploymentEvent,
    EventType,
    LoggingEventEmitter,
    NullEventEmitter,
)
from src.enrollment.results import PhaseOutcome
from src.enrollment.state import DeploymentPhase, DeploymentStateMachine, STATE_KEY
from src.enrollment.status import get_status


class TestGetStatus:
    def test_no_checkpoint(self, store, clock):
        assert get_status(store, clock=clock) is None

    def test_unreadable_checkpoint(self, store, clock):
        store.write(STATE_KEY, b"garbage")
        assert get_status(store, clock=clock) is None

    def test_inaccessible_checkpoint(self, store, clock, monkeypatch):
        def denied(key):
            raise PermissionError(13, "Access is denied", "deployment-state.json")

        DeploymentStateMachine(store, "TEST123", clock=clock).advance_to(
            DeploymentPhase.PRE_FLIGHT_CHECKS
        )
        monkeypatch.setattr(store, "read", denied)

        with capture_logs() as logs:
            assert get_status(store, clock=clock) is None

        assert logs[0]["event"] == "Could not read deployment state"
        assert logs[0]["log_level"] == "warning"

    def test_summarizes_progress(self, store, clock):
        machine = DeploymentStateMachine(store, "TEST123", clock=clock)
        for phase in (DeploymentPhase.PRE_FLIGHT_CHECKS, DeploymentPhase.MODULE_INSTALLATION):
            machine.advance_to(phase)
            machine.record_phase_result(phase, {"success": True})
        machine.record_cleaned_device("entra-1")
        clock.advance(timedelta(minutes=90))

        status = get_status(store, clock=clock)

        assert status.device_serial == "TEST123"
        assert status.current_phase == "ModuleInstallation"
        assert status.resume_phase == "ModuleInstallation"
        assert status.completed_phases == ["PreFlightChecks", "ModuleInstallation"]
        assert status.cleaned_device_count == 1
        assert status.checkpoint_age_seconds == 90 * 60
        assert status.resumable
        assert not status.is_failed and not status.is_completed

    def test_stale_checkpoint_reported_without_changes(self, store, clock):
        DeploymentStateMachine(store, "TEST123", clock=clock).advance_to(
            DeploymentPhase.ENTRA_CLEANUP
        )
        before = store.read(STATE_KEY)
        writes = store.writes
        clock.advance(timedelta(days=3))

        status = get_status(store, clock=clock)

        assert not status.resumable
        assert status.current_phase == "EntraCleanup"
        assert store.read(STATE_KEY) == before
        assert store.writes == writes


class TestEvents:
    def test_log_dict_flattens_details(self, clock):
        event = DeploymentEvent(
            event_type=EventType.PHASE_COMPLETED,
            device_serial="TEST123",
            phase="EntraCleanup",
            timestamp=clock.now(),
            details={"message": "Removed 1 entra record(s)"},
        )

        assert event.to_log_dict() == {
            "event_type": "phase_completed",
            "device_serial": "TEST123",
            "phase": "EntraCleanup",
            "timestamp": clock.now().isoformat(),
            "message": "Removed 1 entra record(s)",
        }

    def test_logging_emitter_uses_error_level_for_errors(self):
        event = DeploymentEvent(
            event_type=EventType.ERROR, device_serial="TEST123", phase="KeyVaultAccess"
        )

        with capture_logs() as logs:
            LoggingEventEmitter().emit(event)
            NullEventEmitter().emit(event)

        assert len(logs) == 1
        assert logs[0]["log_level"] == "error"
        assert logs[0]["phase"] == "KeyVaultAccess"


class TestPhaseOutcome:
    def test_to_result_merges_data(self):
        outcome = PhaseOutcome(True, "Removed 2 intune record(s)", DeploymentPhase.INTUNE_CLEANUP,
                               {"removed": 2})

        assert outcome.to_result() == {
            "success": True,
            "message": "Removed 2 intune record(s)",
            "removed": 2,
        }
