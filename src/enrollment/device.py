"""Local device identity.

The hardware serial number is the primary key used to correlate this machine
with remote records; the computer name is secondary. Firmware on white-box
hardware often reports placeholder serials, which must never be used as a
query key because they match unrelated devices.
"""

import platform
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import structlog

logger = structlog.get_logger(__name__)

PLACEHOLDER_SERIALS = {
    "",
    "0",
    "none",
    "default string",
    "system serial number",
    "to be filled by o.e.m.",
    "to be filled by oem",
    "not specified",
    "not applicable",
    "chassis serial number",
    "invalid",
}

_LINUX_SERIAL_PATH = Path("/sys/class/dmi/id/product_serial")


def is_placeholder_serial(serial: Optional[str]) -> bool:
    if serial is None:
        return True
    normalized = serial.strip().lower()
    return normalized in PLACEHOLDER_SERIALS or set(normalized) <= {"0", " "}


@dataclass(frozen=True)
class DeviceIdentity:
    """Identity keys of the live device.

    Attributes:
        serial_number: Hardware serial reported by firmware.
        computer_name: Current host name.
    """

    serial_number: str
    computer_name: str = ""

    @property
    def has_usable_serial(self) -> bool:
        return not is_placeholder_serial(self.serial_number)

    def convention_name(
        self,
        prefix: Optional[str],
        serial_length: Optional[int] = None,
    ) -> Optional[str]:
        """Return the name the naming convention would give this device.

        The convention is ``prefix`` followed by the trailing
        ``serial_length`` characters of the serial (the whole serial when no
        length is set), truncated to the 15-character NetBIOS limit.
        """
        if not prefix or not self.has_usable_serial:
            return None
        serial = self.serial_number.strip().upper()
        suffix = serial[-serial_length:] if serial_length else serial
        return f"{prefix}{suffix}"[:15]

    def directory_keys(
        self,
        prefix: Optional[str] = None,
        serial_length: Optional[int] = None,
    ) -> List[str]:
        """Identity keys for directory lookups, de-duplicated, in priority order."""
        if not self.has_usable_serial:
            return []
        candidates = [
            self.serial_number.strip(),
            self.computer_name.strip(),
            self.convention_name(prefix, serial_length),
        ]
        keys: List[str] = []
        for candidate in candidates:
            if candidate and candidate.upper() not in (k.upper() for k in keys):
                keys.append(candidate)
        return keys


def _read_windows_serial() -> Optional[str]:
    try:
        result = subprocess.run(
            [
                "powershell",
                "-NoProfile",
                "-Command",
                "(Get-CimInstance -ClassName Win32_BIOS).SerialNumber",
            ],
            capture_output=True,
            text=True,
            timeout=30,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.warning("Serial number query failed", error=str(exc))
        return None
    if result.returncode != 0:
        logger.warning("Serial number query failed", stderr=result.stderr.strip())
        return None
    return result.stdout.strip()


def _read_linux_serial() -> Optional[str]:
    try:
        return _LINUX_SERIAL_PATH.read_text(encoding="utf-8").strip()
    except OSError as exc:
        logger.warning("Serial number not readable", path=str(_LINUX_SERIAL_PATH), error=str(exc))
        return None


def detect_device_identity() -> DeviceIdentity:
    """Read the serial number and computer name of the local machine."""
    if platform.system() == "Windows":
        serial = _read_windows_serial()
    else:
        serial = _read_linux_serial()

    identity = DeviceIdentity(
        serial_number=(serial or "").strip(),
        computer_name=socket.gethostname().split(".")[0].upper(),
    )
    logger.info(
        "Device identity detected",
        serial_number=identity.serial_number,
        computer_name=identity.computer_name,
        usable_serial=identity.has_usable_serial,
    )
    return identity
