"""Explicit execution context threaded through every component.

Holds what would otherwise be process-wide globals: validated settings, the
live device identity, the clock, the blocking sleep function and the shared
retry executor.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from src.enrollment.clock import Clock, SystemClock
from src.enrollment.config import EnrollmentSettings
from src.enrollment.device import DeviceIdentity, detect_device_identity
from src.enrollment.retry import RetryExecutor


@dataclass
class DeploymentContext:
    settings: EnrollmentSettings
    device: DeviceIdentity
    executor: RetryExecutor
    clock: Clock = field(default_factory=SystemClock)
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def create(
        cls,
        settings: EnrollmentSettings,
        device: Optional[DeviceIdentity] = None,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "DeploymentContext":
        """Build a context, detecting the device identity when not given."""
        executor = RetryExecutor(
            policy=settings.retry,
            retryable_patterns=settings.retryable_patterns,
            sleep=sleep,
        )
        return cls(
            settings=settings,
            device=device or detect_device_identity(),
            executor=executor,
            clock=clock or SystemClock(),
            sleep=sleep,
        )
