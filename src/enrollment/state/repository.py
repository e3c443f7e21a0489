"""Durable storage for the deployment checkpoint.

The state machine depends on the StateStore protocol only. FileStateStore is
the production implementation: one JSON file per key under a base directory,
written through a temporary file and an atomic replace so an interrupted
write never leaves a truncated checkpoint behind.

No file locking is performed. Running two deployments on the same device at
the same time is unsupported.
"""

import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@runtime_checkable
class StateStore(Protocol):
    """Key-value storage for serialized deployment state."""

    def read(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when nothing is stored."""
        ...

    def write(self, key: str, data: bytes) -> None:
        """Store ``data`` under ``key``, replacing any previous value."""
        ...

    def delete(self, key: str) -> None:
        """Remove ``key``; a missing key is not an error."""
        ...


class FileStateStore:
    """File-backed StateStore.

    Attributes:
        base_dir: Directory holding ``<key>.json`` files.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def path_for(self, key: str) -> Path:
        return self.base_dir / f"{key}.json"

    def read(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def write(self, key: str, data: bytes) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            dir=str(path.parent), prefix=f".{key}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        if path.exists():
            path.unlink()
            logger.debug("State file deleted", path=str(path))
