"""Outcome record for phases and whole deployment runs."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from src.enrollment.state.models import DeploymentPhase


@dataclass(frozen=True)
class PhaseOutcome:
    """Result of running a phase (or the whole workflow).

    Attributes:
        success: Whether the phase finished without a fatal error.
        message: Human-readable summary.
        phase: The phase the outcome belongs to.
        data: Structured details recorded in the checkpoint.
        cause: The fatal error, when ``success`` is False.
    """

    success: bool
    message: str
    phase: DeploymentPhase
    data: Dict[str, Any] = field(default_factory=dict)
    cause: Optional[BaseException] = None

    def to_result(self) -> Dict[str, Any]:
        """Serializable form stored as the phase result."""
        return {"success": self.success, "message": self.message, **self.data}
