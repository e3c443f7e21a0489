"""Stale device record cleanup across the three remote systems.

A device that is being re-enrolled usually still has records left over from
its previous life: a directory (Entra) device object, a managed (Intune)
device, and a provisioning (Autopilot) identity. Those records block or
confuse the new enrollment, so each is found by the device's identity keys
and removed before registration.

Every pass follows the same rules:
- no usable identity key means no query at all (never an unscoped search)
- results are de-duplicated by remote id
- ids already recorded in the deployment state are not removed again
- a failed removal is logged and the pass moves on to the next record
- after a pass that removed anything, one propagation wait lets the remote
  system settle before later phases depend on the records being gone
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field

from src.enrollment.context import DeploymentContext
from src.enrollment.errors import CleanupError, CleanupQueryError, EnrollmentError
from src.enrollment.state.machine import DeploymentStateMachine


logger = structlog.get_logger(__name__)

_DISPLAY_NAME_FIELDS = (
    "display_name",
    "displayName",
    "device_name",
    "deviceName",
    "serial_number",
    "serialNumber",
)


class DeviceRecordService(Protocol):
    """Remote system holding device records."""

    def find_by_identity(self, key: str) -> List[Any]:
        """Return records matching ``key`` as dicts, RemoteRecords or SDK objects."""
        ...

    def remove(self, record_id: str) -> None:
        ...


# The three systems expose the same capability.
DirectoryService = DeviceRecordService
DeviceManagementService = DeviceRecordService
ProvisioningService = DeviceRecordService


class RemoteRecord(BaseModel):
    """A device record returned by a remote system."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    display_name: str = ""

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["RemoteRecord"]:
        """Normalize a service result; returns None when it has no id."""
        if isinstance(raw, RemoteRecord):
            return raw
        if isinstance(raw, dict):
            record_id = raw.get("id")
            names = [raw.get(name) for name in _DISPLAY_NAME_FIELDS]
            extra = {k: v for k, v in raw.items() if k not in ("id", "display_name")}
        else:
            # SDK model objects expose the same fields as attributes
            record_id = getattr(raw, "id", None)
            names = [getattr(raw, name, None) for name in _DISPLAY_NAME_FIELDS]
            extra = {}
        if not record_id:
            return None
        display_name = next((name for name in names if name), "")
        return cls(id=str(record_id), display_name=str(display_name), **extra)


@dataclass(frozen=True)
class CleanupRecord:
    """A record removed during a cleanup pass."""

    system_name: str
    remote_id: str
    display_name: str
    removed_at: datetime


@dataclass
class _CleanupTarget:
    system_name: str
    service: DeviceRecordService
    identity_keys: List[str] = field(default_factory=list)


class CleanupCoordinator:
    """Removes stale records of this device from each remote system.

    Attributes:
        context: Execution context (settings, device identity, executor).
        removed_records: Every record removed through this coordinator.
    """

    def __init__(
        self,
        context: DeploymentContext,
        directory: DirectoryService,
        device_management: DeviceManagementService,
        provisioning: ProvisioningService,
    ):
        self.context = context
        self.directory = directory
        self.device_management = device_management
        self.provisioning = provisioning
        self.removed_records: List[CleanupRecord] = []

    def cleanup_directory_records(self, state: DeploymentStateMachine) -> int:
        """Remove directory (Entra) device objects for this device."""
        settings = self.context.settings
        keys = self.context.device.directory_keys(
            settings.device_name_prefix,
            settings.device_name_serial_length,
        )
        return self._run_pass(_CleanupTarget("entra", self.directory, keys), state)

    def cleanup_managed_device_records(self, state: DeploymentStateMachine) -> int:
        """Remove managed (Intune) device records for this device."""
        return self._run_pass(
            _CleanupTarget("intune", self.device_management, self._serial_keys()),
            state,
        )

    def cleanup_provisioning_records(self, state: DeploymentStateMachine) -> int:
        """Remove provisioning (Autopilot) identities for this device."""
        return self._run_pass(
            _CleanupTarget("autopilot", self.provisioning, self._serial_keys()),
            state,
        )

    def _serial_keys(self) -> List[str]:
        device = self.context.device
        return [device.serial_number.strip()] if device.has_usable_serial else []

    def _run_pass(self, target: _CleanupTarget, state: DeploymentStateMachine) -> int:
        name = target.system_name
        if not target.identity_keys:
            logger.warning(
                "Skipping cleanup, device identity unknown",
                system=name,
                serial_number=self.context.device.serial_number,
            )
            return 0

        candidates = self._find_candidates(target)
        logger.info(
            "Cleanup candidates found",
            system=name,
            identity_keys=target.identity_keys,
            candidates=len(candidates),
        )

        removed = 0
        for record in candidates:
            if state.was_device_cleaned(record.id):
                logger.info(
                    "Record already removed in this session",
                    system=name,
                    record_id=record.id,
                )
                continue
            try:
                self._remove(target, record)
            except CleanupError as exc:
                logger.warning(
                    "Failed to remove device record",
                    system=name,
                    record_id=exc.record_id,
                    display_name=record.display_name,
                    error=exc.message,
                )
                continue

            state.record_cleaned_device(record.id)
            self.removed_records.append(
                CleanupRecord(
                    system_name=name,
                    remote_id=record.id,
                    display_name=record.display_name,
                    removed_at=self.context.clock.now(),
                )
            )
            removed += 1

        if removed > 0:
            delay = self.context.settings.propagation_delay_for(name)
            if delay > 0:
                logger.info("Waiting for removal to propagate", system=name, seconds=delay)
                self.context.sleep(delay)

        logger.info("Cleanup pass finished", system=name, removed=removed)
        return removed

    def _find_candidates(self, target: _CleanupTarget) -> List[RemoteRecord]:
        executor = self.context.executor
        name = target.system_name
        found: Dict[str, RemoteRecord] = {}
        failures: List[EnrollmentError] = []

        for key in target.identity_keys:
            try:
                raw_records = executor.execute(
                    lambda key=key: target.service.find_by_identity(key),
                    f"{name}.find_by_identity",
                )
            except EnrollmentError as exc:
                logger.warning("Cleanup query failed", system=name, key=key, error=exc.message)
                failures.append(exc)
                continue

            for raw in raw_records or []:
                record = RemoteRecord.from_raw(raw)
                if record is None:
                    logger.warning("Ignoring record without id", system=name, key=key)
                    continue
                found.setdefault(record.id, record)

        if failures and len(failures) == len(target.identity_keys):
            raise CleanupQueryError(
                name, f"Cannot query {name} for device records: {failures[-1].message}"
            ) from failures[-1]
        return list(found.values())

    def _remove(self, target: _CleanupTarget, record: RemoteRecord) -> None:
        try:
            self.context.executor.execute(
                lambda: target.service.remove(record.id),
                f"{target.system_name}.remove",
            )
        except EnrollmentError as exc:
            raise CleanupError(
                target.system_name,
                record.id,
                f"Could not remove {target.system_name} record {record.id}: {exc.message}",
            ) from exc
