"""Read-only inspection of the persisted deployment checkpoint.

Unlike DeploymentStateMachine, get_status() never validates the checkpoint
against the live device and never writes: it reports whatever is on disk,
including stale or foreign checkpoints, so support staff can see what the
last run did.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import structlog
from pydantic import BaseModel, ValidationError

from src.enrollment.clock import Clock, SystemClock
from src.enrollment.state.machine import DEFAULT_MAX_AGE, STATE_KEY
from src.enrollment.state.models import DeploymentPhase, DeploymentState
from src.enrollment.state.repository import StateStore


logger = structlog.get_logger(__name__)


class DeploymentStatus(BaseModel):
    device_serial: str
    current_phase: str
    resume_phase: str
    started_at: datetime
    last_checkpoint: datetime
    checkpoint_age_seconds: int
    resumable: bool
    is_completed: bool
    is_failed: bool
    completed_phases: List[str]
    cleaned_device_count: int
    last_error: Optional[str] = None


def get_status(
    store: StateStore,
    clock: Optional[Clock] = None,
    key: str = STATE_KEY,
    max_age: timedelta = DEFAULT_MAX_AGE,
) -> Optional[DeploymentStatus]:
    """Summarize the persisted checkpoint.

    Returns:
        The status, or None when no readable checkpoint exists.
    """
    clock = clock or SystemClock()
    try:
        data = store.read(key)
    except OSError as exc:
        logger.warning("Could not read deployment state", error=str(exc))
        return None
    if data is None:
        return None
    try:
        state = DeploymentState.model_validate_json(data)
    except ValidationError as exc:
        logger.warning("Deployment state is unreadable", error=str(exc))
        return None

    last_checkpoint = state.last_checkpoint
    if last_checkpoint.tzinfo is None:
        last_checkpoint = last_checkpoint.replace(tzinfo=timezone.utc)
    age = clock.now() - last_checkpoint
    completed_phases = sorted(state.phase_results, key=_rank_of)
    return DeploymentStatus(
        device_serial=state.device_serial,
        current_phase=state.current_phase.display_name,
        resume_phase=state.resume_phase.display_name,
        started_at=state.started_at,
        last_checkpoint=last_checkpoint,
        checkpoint_age_seconds=max(0, int(age.total_seconds())),
        resumable=age < max_age,
        is_completed=state.current_phase == DeploymentPhase.COMPLETED,
        is_failed=state.current_phase == DeploymentPhase.FAILED,
        completed_phases=completed_phases,
        cleaned_device_count=len(state.cleaned_device_ids),
        last_error=state.last_error,
    )


def _rank_of(display_name: str) -> int:
    for phase in DeploymentPhase:
        if phase.display_name == display_name:
            return int(phase)
    return len(DeploymentPhase) + 100
