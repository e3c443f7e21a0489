"""Deployment state machine with write-through checkpointing.

DeploymentStateMachine owns the single DeploymentState of a device. Every
mutation refreshes ``last_checkpoint`` and persists the whole state through
the StateStore before returning, so a process killed at any point leaves the
last completed mutation on disk.

On construction the machine loads any existing checkpoint. The checkpoint is
resumed only when it belongs to this device (same serial) and is younger
than ``max_age`` (24 hours by default). Stale, foreign or unreadable
checkpoints are discarded and the workflow starts from NOT_STARTED.

Resume semantics:
    should_skip(phase) is True only for phases ranked strictly below the
    resume phase. The phase the previous run stopped in is executed again,
    because the failure may have happened midway through it. Phase handlers
    must therefore be idempotent.
"""

from datetime import timedelta, timezone
from typing import Any, Optional

import structlog
from pydantic import ValidationError
from pydantic_core import to_jsonable_python

from src.enrollment.clock import Clock, SystemClock
from src.enrollment.errors import InvalidTransitionError
from src.enrollment.state.models import (
    DeploymentPhase,
    DeploymentState,
    PhaseResult,
)
from src.enrollment.state.repository import StateStore


logger = structlog.get_logger(__name__)

STATE_KEY = "deployment-state"
DEFAULT_MAX_AGE = timedelta(hours=24)


class DeploymentStateMachine:
    """Checkpointed phase tracker for one device.

    Attributes:
        store: Durable storage for the serialized state.
        device_serial: Serial of the live device.
        state: The current in-memory state (always equal to what was last
            persisted).

    Example:
        >>> machine = DeploymentStateMachine(FileStateStore(path), "5CG1234XYZ")
        >>> if not machine.should_skip(DeploymentPhase.ENTRA_CLEANUP):
        ...     machine.advance_to(DeploymentPhase.ENTRA_CLEANUP)
        ...     removed = coordinator.cleanup_directory_records(machine)
        ...     machine.record_phase_result(
        ...         DeploymentPhase.ENTRA_CLEANUP, {"removed": removed}
        ...     )
    """

    def __init__(
        self,
        store: StateStore,
        device_serial: str,
        clock: Optional[Clock] = None,
        max_age: timedelta = DEFAULT_MAX_AGE,
        key: str = STATE_KEY,
    ):
        self.store = store
        self.device_serial = device_serial
        self.clock = clock or SystemClock()
        self.max_age = max_age
        self.key = key
        self.state = self._fresh_state()
        self.load()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def current_phase(self) -> DeploymentPhase:
        return self.state.current_phase

    @property
    def is_resume(self) -> bool:
        return self.state.is_resume

    def should_skip(self, phase: DeploymentPhase) -> bool:
        """Return True when ``phase`` already finished in a resumed session.

        Always False for a fresh session. When resuming, only phases ranked
        strictly below the resume phase are skipped; the resume phase itself
        runs again.
        """
        if not self.state.is_resume:
            return False
        return self.state.resume_phase > phase

    def was_device_cleaned(self, record_id: str) -> bool:
        return record_id in self.state.cleaned_device_ids

    def get_phase_result(self, phase: DeploymentPhase) -> Optional[Any]:
        entry = self.state.phase_results.get(phase.display_name)
        return entry.result if entry is not None else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def advance_to(self, phase: DeploymentPhase) -> None:
        """Move the checkpoint to ``phase`` and clear the last error.

        Raises:
            InvalidTransitionError: ``phase`` ranks below the resume phase,
                or is the FAILED marker (use record_error()).
        """
        if phase == DeploymentPhase.FAILED:
            raise InvalidTransitionError(
                self.state.current_phase.display_name, phase.display_name
            )
        if phase < self.state.resume_phase:
            logger.warning(
                "Refusing to move checkpoint backwards",
                from_phase=self.state.resume_phase.display_name,
                to_phase=phase.display_name,
            )
            raise InvalidTransitionError(
                self.state.resume_phase.display_name, phase.display_name
            )

        from_phase = self.state.current_phase
        self.state.current_phase = phase
        self.state.failed_from_phase = None
        self.state.last_error = None
        self.save()

        logger.info(
            "Phase advanced",
            from_phase=from_phase.display_name,
            to_phase=phase.display_name,
        )

    def record_phase_result(self, phase: DeploymentPhase, result: Any) -> None:
        # Values the checkpoint cannot hold as JSON are stored as their str().
        self.state.phase_results[phase.display_name] = PhaseResult(
            result=to_jsonable_python(result, fallback=str),
            completed_at=self.clock.now(),
        )
        self.save()

    def record_cleaned_device(self, record_id: str) -> None:
        if record_id in self.state.cleaned_device_ids:
            return
        self.state.cleaned_device_ids.add(record_id)
        self.save()

    def record_error(self, message: str) -> None:
        """Record a fatal error and set the advisory FAILED marker.

        The phase that was running is kept in ``failed_from_phase`` so a
        resumed run continues from it.
        """
        if self.state.current_phase != DeploymentPhase.FAILED:
            self.state.failed_from_phase = self.state.current_phase
        self.state.current_phase = DeploymentPhase.FAILED
        self.state.last_error = message
        self.save()

        logger.error(
            "Deployment error recorded",
            failed_phase=self.state.resume_phase.display_name,
            error=message,
        )

    def mark_completed(self) -> None:
        self.state.current_phase = DeploymentPhase.COMPLETED
        self.state.failed_from_phase = None
        self.state.last_error = None
        self.save()
        logger.info("Deployment completed", device_serial=self.device_serial)

    def reset(self) -> None:
        """Discard all progress and delete the persisted checkpoint."""
        self.store.delete(self.key)
        self.state = self._fresh_state()
        logger.info("Deployment state reset", device_serial=self.device_serial)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> None:
        self.state.last_checkpoint = self.clock.now()
        self.store.write(self.key, self.state.model_dump_json().encode("utf-8"))

    def load(self) -> bool:
        """Load the persisted checkpoint if it is valid for this device.

        Any read or parse failure is treated as "no prior state".

        Returns:
            True when a checkpoint was resumed.
        """
        loaded = self._read_persisted()
        if loaded is not None and self._is_resumable(loaded):
            loaded.is_resume = True
            self.state = loaded
            logger.info(
                "Resuming deployment",
                device_serial=self.device_serial,
                resume_phase=loaded.resume_phase.display_name,
                last_checkpoint=loaded.last_checkpoint.isoformat(),
                cleaned_devices=len(loaded.cleaned_device_ids),
            )
            return True

        self.state = self._fresh_state()
        self.save()
        return False

    def _read_persisted(self) -> Optional[DeploymentState]:
        try:
            data = self.store.read(self.key)
        except OSError as exc:
            logger.warning("Could not read deployment state", error=str(exc))
            return None
        if data is None:
            return None
        try:
            loaded = DeploymentState.model_validate_json(data)
        except ValidationError as exc:
            logger.warning("Discarding unreadable deployment state", error=str(exc))
            return None

        if loaded.last_checkpoint.tzinfo is None:
            loaded.last_checkpoint = loaded.last_checkpoint.replace(tzinfo=timezone.utc)
        return loaded

    def _is_resumable(self, loaded: DeploymentState) -> bool:
        if loaded.device_serial != self.device_serial:
            logger.warning(
                "Discarding deployment state from another device",
                stored_serial=loaded.device_serial,
                device_serial=self.device_serial,
            )
            return False

        age = self.clock.now() - loaded.last_checkpoint
        if age >= self.max_age:
            logger.warning(
                "Discarding stale deployment state",
                age_hours=round(age.total_seconds() / 3600, 1),
                max_age_hours=self.max_age.total_seconds() / 3600,
            )
            return False
        return True

    def _fresh_state(self) -> DeploymentState:
        now = self.clock.now()
        return DeploymentState(
            device_serial=self.device_serial,
            started_at=now,
            last_checkpoint=now,
        )
