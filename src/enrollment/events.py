"""Deployment event emission for observability.

The orchestrator emits an event at each notable point of a run:
- PHASE_STARTED / PHASE_SKIPPED / PHASE_COMPLETED: phase progression
- ERROR: a fatal error halted the run
- COMPLETION: the workflow reached the Completed phase

The emitter abstraction keeps the orchestrator independent of where events
go. LoggingEventEmitter writes them as structured log entries; other sinks
(an OOBE status screen, a local event log) can implement EventEmitter.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

import structlog
from pydantic import BaseModel, Field


logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    PHASE_STARTED = "phase_started"
    PHASE_SKIPPED = "phase_skipped"
    PHASE_COMPLETED = "phase_completed"
    ERROR = "error"
    COMPLETION = "completion"


class DeploymentEvent(BaseModel):
    """Structured event emitted during a deployment run.

    Attributes:
        event_type: The category of event.
        device_serial: Serial of the device being enrolled.
        phase: Display name of the phase the event refers to.
        timestamp: When the event occurred (UTC).
        details: Additional context specific to the event type.
    """

    event_type: EventType
    device_serial: str
    phase: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    details: Dict[str, Any] = Field(default_factory=dict)

    def to_log_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "device_serial": self.device_serial,
            "phase": self.phase,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }


class EventEmitter(ABC):
    """Publishes deployment events.

    Implementations must not raise: a failing sink should never halt the
    deployment.
    """

    @abstractmethod
    def emit(self, event: DeploymentEvent) -> None:
        ...


class LoggingEventEmitter(EventEmitter):
    """Emits events as structured log entries."""

    def emit(self, event: DeploymentEvent) -> None:
        if event.event_type == EventType.ERROR:
            logger.error("Deployment event", **event.to_log_dict())
        else:
            logger.info("Deployment event", **event.to_log_dict())


class NullEventEmitter(EventEmitter):
    """Discards events."""

    def emit(self, event: DeploymentEvent) -> None:
        pass

