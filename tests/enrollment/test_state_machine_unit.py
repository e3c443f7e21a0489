"""Unit tests for DeploymentStateMachine and FileStateStore."""

import json
from datetime import datetime, timedelta

import pytest
from structlog.testing import capture_logs

from src.enrollment.errors import InvalidTransitionError
from src.enrollment.state import (
    DeploymentPhase,
    DeploymentState,
    DeploymentStateMachine,
    FileStateStore,
    STATE_KEY,
    StateStore,
)


SERIAL = "TEST123"


def _make_machine(store, clock, serial=SERIAL, **kwargs):
    return DeploymentStateMachine(store, serial, clock=clock, **kwargs)


def _persisted(store):
    return DeploymentState.model_validate_json(store.read(STATE_KEY))


# -----------------------------------------------------------------------------
# Load
# -----------------------------------------------------------------------------


class TestLoad:
    def test_fresh_state_is_saved_immediately(self, store, clock):
        machine = _make_machine(store, clock)

        assert not machine.is_resume
        assert machine.current_phase == DeploymentPhase.NOT_STARTED
        persisted = _persisted(store)
        assert persisted.device_serial == SERIAL
        assert persisted.started_at == clock.now()

    def test_resume_within_window(self, store, clock):
        machine = _make_machine(store, clock)
        machine.advance_to(DeploymentPhase.INTUNE_CLEANUP)

        clock.advance(timedelta(hours=23, minutes=59))
        with capture_logs() as logs:
            resumed = _make_machine(store, clock)

        assert resumed.is_resume
        assert resumed.current_phase == DeploymentPhase.INTUNE_CLEANUP
        assert any(log["event"] == "Resuming deployment" for log in logs)

    def test_checkpoint_exactly_at_max_age_is_stale(self, store, clock):
        _make_machine(store, clock).advance_to(DeploymentPhase.ENTRA_CLEANUP)

        clock.advance(timedelta(hours=24))
        machine = _make_machine(store, clock)

        assert not machine.is_resume
        assert machine.current_phase == DeploymentPhase.NOT_STARTED
        # The stale checkpoint is replaced on disk
        assert _persisted(store).current_phase == DeploymentPhase.NOT_STARTED

    def test_custom_max_age(self, store, clock):
        _make_machine(store, clock).advance_to(DeploymentPhase.ENTRA_CLEANUP)

        clock.advance(timedelta(hours=2))
        machine = _make_machine(store, clock, max_age=timedelta(hours=1))

        assert not machine.is_resume

    def test_foreign_serial_logs_warning(self, store, clock):
        _make_machine(store, clock, serial="OTHER999").advance_to(DeploymentPhase.OOBE_LAUNCH)

        with capture_logs() as logs:
            machine = _make_machine(store, clock)

        assert not machine.is_resume
        warnings = [log for log in logs if log["log_level"] == "warning"]
        assert warnings[0]["stored_serial"] == "OTHER999"

    def test_corrupt_checkpoint_degrades_to_fresh_state(self, store, clock):
        store.write(STATE_KEY, b"{not json")

        machine = _make_machine(store, clock)

        assert not machine.is_resume
        assert machine.current_phase == DeploymentPhase.NOT_STARTED

    def test_checkpoint_with_unknown_phase_is_discarded(self, store, clock):
        store.write(
            STATE_KEY,
            json.dumps({
                "device_serial": SERIAL,
                "current_phase": 42,
                "started_at": clock.now().isoformat(),
                "last_checkpoint": clock.now().isoformat(),
            }).encode("utf-8"),
        )

        machine = _make_machine(store, clock)

        assert not machine.is_resume

    def test_naive_timestamps_are_treated_as_utc(self, store, clock):
        naive = clock.now().replace(tzinfo=None) - timedelta(hours=1)
        store.write(
            STATE_KEY,
            json.dumps({
                "device_serial": SERIAL,
                "current_phase": int(DeploymentPhase.GROUP_VALIDATION),
                "started_at": naive.isoformat(),
                "last_checkpoint": naive.isoformat(),
            }).encode("utf-8"),
        )

        machine = _make_machine(store, clock)

        assert machine.is_resume
        assert machine.current_phase == DeploymentPhase.GROUP_VALIDATION

    def test_unreadable_store_degrades_to_fresh_state(self, clock):
        class BrokenReadStore:
            def __init__(self):
                self.written = {}

            def read(self, key):
                raise PermissionError("access denied")

            def write(self, key, data):
                self.written[key] = data

            def delete(self, key):
                self.written.pop(key, None)

        broken = BrokenReadStore()
        machine = _make_machine(broken, clock)

        assert not machine.is_resume
        assert STATE_KEY in broken.written


# -----------------------------------------------------------------------------
# Mutations
# -----------------------------------------------------------------------------


class TestMutations:
    def test_advance_clears_previous_error(self, store, clock):
        machine = _make_machine(store, clock)
        machine.advance_to(DeploymentPhase.KEY_VAULT_ACCESS)
        machine.record_error("KeyVaultAccess failed: Secret not found: enroll-cert")

        machine.advance_to(DeploymentPhase.KEY_VAULT_ACCESS)

        assert machine.current_phase == DeploymentPhase.KEY_VAULT_ACCESS
        assert machine.state.last_error is None
        assert machine.state.failed_from_phase is None

    def test_repeated_errors_keep_original_phase(self, store, clock):
        machine = _make_machine(store, clock)
        machine.advance_to(DeploymentPhase.DEVICE_REGISTRATION)

        machine.record_error("first")
        machine.record_error("second")

        assert machine.state.resume_phase == DeploymentPhase.DEVICE_REGISTRATION
        assert machine.state.last_error == "second"

    def test_record_cleaned_device_is_idempotent(self, store, clock):
        machine = _make_machine(store, clock)
        machine.record_cleaned_device("entra-1")
        writes = store.writes

        machine.record_cleaned_device("entra-1")

        assert machine.was_device_cleaned("entra-1")
        assert store.writes == writes

    def test_get_phase_result_missing(self, store, clock):
        machine = _make_machine(store, clock)
        assert machine.get_phase_result(DeploymentPhase.ENTRA_CLEANUP) is None

    def test_phase_results_keyed_by_display_name(self, store, clock):
        machine = _make_machine(store, clock)
        machine.record_phase_result(DeploymentPhase.OOBE_LAUNCH, {"success": True})

        assert "OOBELaunch" in _persisted(store).phase_results

    def test_unserializable_result_stored_as_text(self, store, clock):
        machine = _make_machine(store, clock)
        handle = object()

        machine.record_phase_result(
            DeploymentPhase.DEVICE_REGISTRATION, {"status": "registered", "handle": handle}
        )

        persisted = _persisted(store).phase_results["DeviceRegistration"].result
        assert persisted == {"status": "registered", "handle": str(handle)}
        machine.record_cleaned_device("entra-1")
        assert _persisted(store).cleaned_device_ids == {"entra-1"}

    def test_mark_completed(self, store, clock):
        machine = _make_machine(store, clock)
        machine.advance_to(DeploymentPhase.OOBE_LAUNCH)

        machine.mark_completed()

        assert _persisted(store).current_phase == DeploymentPhase.COMPLETED

    def test_completed_checkpoint_skips_every_phase(self, store, clock):
        machine = _make_machine(store, clock)
        machine.mark_completed()

        resumed = _make_machine(store, clock)

        assert resumed.should_skip(DeploymentPhase.OOBE_LAUNCH)
        assert not resumed.should_skip(DeploymentPhase.COMPLETED)

    def test_backward_advance_rejected_after_resume(self, store, clock):
        _make_machine(store, clock).advance_to(DeploymentPhase.AUTOPILOT_CLEANUP)
        resumed = _make_machine(store, clock)

        with pytest.raises(InvalidTransitionError) as exc_info:
            resumed.advance_to(DeploymentPhase.ENTRA_CLEANUP)

        assert exc_info.value.from_phase == "AutopilotCleanup"
        assert exc_info.value.to_phase == "EntraCleanup"

    def test_reset_deletes_checkpoint(self, store, clock):
        machine = _make_machine(store, clock)
        machine.advance_to(DeploymentPhase.GRAPH_AUTHENTICATION)
        machine.record_cleaned_device("intune-7")

        machine.reset()

        assert store.read(STATE_KEY) is None
        assert machine.current_phase == DeploymentPhase.NOT_STARTED
        assert machine.state.cleaned_device_ids == set()
        assert not machine.is_resume


# -----------------------------------------------------------------------------
# FileStateStore
# -----------------------------------------------------------------------------


class TestFileStateStore:
    def test_satisfies_protocol(self, tmp_path):
        assert isinstance(FileStateStore(tmp_path), StateStore)

    def test_write_read_delete(self, tmp_path):
        file_store = FileStateStore(tmp_path / "state")

        assert file_store.read("deployment-state") is None
        file_store.write("deployment-state", b'{"a": 1}')
        assert file_store.read("deployment-state") == b'{"a": 1}'
        assert file_store.path_for("deployment-state").name == "deployment-state.json"

        file_store.delete("deployment-state")
        assert file_store.read("deployment-state") is None
        file_store.delete("deployment-state")

    def test_overwrite_leaves_no_temp_files(self, tmp_path):
        file_store = FileStateStore(tmp_path)
        file_store.write("deployment-state", b"first")
        file_store.write("deployment-state", b"second")

        assert file_store.read("deployment-state") == b"second"
        assert [p.name for p in tmp_path.iterdir()] == ["deployment-state.json"]

    def test_machine_resumes_from_disk(self, tmp_path, clock):
        file_store = FileStateStore(tmp_path)
        machine = _make_machine(file_store, clock)
        machine.advance_to(DeploymentPhase.GROUP_VALIDATION)
        machine.record_cleaned_device("autopilot-3")

        clock.advance(timedelta(minutes=5))
        resumed = _make_machine(file_store, clock)

        assert resumed.is_resume
        assert resumed.current_phase == DeploymentPhase.GROUP_VALIDATION
        assert resumed.was_device_cleaned("autopilot-3")
        assert isinstance(resumed.state.last_checkpoint, datetime)
