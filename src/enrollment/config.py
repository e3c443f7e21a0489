"""Enrollment configuration using pydantic-settings.

This module defines the EnrollmentSettings class that reads configuration
from environment variables with the ENROLLMENT_ prefix, optionally layered
under values from a JSON settings file. Nested models use ``__`` as the
environment delimiter (e.g. ENROLLMENT_RETRY__MAX_ATTEMPTS=5).

Required fields:
- tenant_id: Directory tenant the device enrolls into
- client_id: Application id used for certificate authentication
- key_vault_name: Vault holding the authentication certificate
"""

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, List, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.enrollment.errors import ConfigurationError
from src.enrollment.retry import DEFAULT_RETRYABLE_PATTERNS, RetryPolicy


logger = structlog.get_logger(__name__)

_KEY_VAULT_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9-]{1,22}[A-Za-z0-9]$")
_DEVICE_NAME_PREFIX = re.compile(r"^[A-Za-z0-9-]{1,12}$")
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _default_state_dir() -> Path:
    base = os.environ.get("ProgramData") or tempfile.gettempdir()
    return Path(base) / "AutopilotEnrollment"


class PropagationDelays(BaseModel):
    """Seconds to wait after a cleanup pass that removed records."""

    entra_cleanup: int = Field(default=30, ge=0, le=300)
    intune_cleanup: int = Field(default=30, ge=0, le=300)
    autopilot_cleanup: int = Field(default=60, ge=0, le=300)


class EnrollmentSettings(BaseSettings):
    """Enrollment workflow configuration.

    All environment variables are prefixed with ENROLLMENT_ (e.g.,
    ENROLLMENT_TENANT_ID).
    """

    model_config = SettingsConfigDict(
        env_prefix="ENROLLMENT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Tenant and authentication
    # -------------------------------------------------------------------------
    tenant_id: str
    client_id: str

    key_vault_name: str
    certificate_secret_name: str = "autopilot-enrollment-cert"
    certificate_password_secret_name: str = "autopilot-enrollment-cert-password"

    # Days before expiry at which a still-valid certificate triggers a warning
    certificate_expiry_warning_days: int = Field(default=30, ge=1, le=365)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------
    group_tag: Optional[str] = None
    target_group_name: Optional[str] = None

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------
    cleanup_entra: bool = True
    cleanup_intune: bool = True
    cleanup_autopilot: bool = True

    # Naming convention: prefix + trailing serial characters (e.g. WAU1234)
    device_name_prefix: Optional[str] = None
    device_name_serial_length: Optional[int] = Field(default=None, ge=1, le=14)

    propagation_delays: PropagationDelays = Field(default_factory=PropagationDelays)

    # -------------------------------------------------------------------------
    # Resilience
    # -------------------------------------------------------------------------
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    retryable_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_PATTERNS)
    )

    # -------------------------------------------------------------------------
    # State and logging
    # -------------------------------------------------------------------------
    state_dir: Path = Field(default_factory=_default_state_dir)
    checkpoint_max_age_hours: int = Field(default=24, ge=1, le=168)

    log_level: str = "INFO"
    log_json: bool = True

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("tenant_id", "client_id", "certificate_secret_name",
                     "certificate_password_secret_name")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v.strip()

    @field_validator("key_vault_name")
    @classmethod
    def validate_key_vault_name(cls, v: str) -> str:
        """Vault names are 3-24 alphanumerics and hyphens, starting with a letter."""
        if not _KEY_VAULT_NAME.match(v or ""):
            raise ValueError(f"invalid key vault name: {v!r}")
        return v

    @field_validator("device_name_prefix")
    @classmethod
    def validate_device_name_prefix(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not _DEVICE_NAME_PREFIX.match(v):
            raise ValueError(f"invalid device name prefix: {v!r}")
        return v.upper()

    @field_validator("retryable_patterns")
    @classmethod
    def validate_patterns(cls, v: List[str]) -> List[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid retryable pattern {pattern!r}: {exc}") from exc
        return v or list(DEFAULT_RETRYABLE_PATTERNS)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        return level

    def propagation_delay_for(self, system_name: str) -> int:
        """Return the propagation delay in seconds for a cleanup system."""
        return {
            "entra": self.propagation_delays.entra_cleanup,
            "intune": self.propagation_delays.intune_cleanup,
            "autopilot": self.propagation_delays.autopilot_cleanup,
        }[system_name]


def load_settings(config_file: Optional[Path] = None, **overrides: Any) -> EnrollmentSettings:
    """Build settings from an optional JSON file, the environment and overrides.

    Values from the file and explicit overrides take precedence over
    environment variables.

    Raises:
        ConfigurationError: The file cannot be read or parsed, or the
            resulting settings fail validation.
    """
    values: dict = {}
    if config_file is not None:
        try:
            values = json.loads(Path(config_file).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(
                f"Cannot read settings file {config_file}: {exc}"
            ) from exc
        if not isinstance(values, dict):
            raise ConfigurationError(
                f"Settings file {config_file} must contain a JSON object"
            )

    values.update(overrides)
    try:
        return EnrollmentSettings(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid enrollment settings: {exc}") from exc


def _redact(value: Optional[str], visible_chars: int = 4) -> Optional[str]:
    if value is None:
        return None
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def log_configuration(settings: EnrollmentSettings) -> None:
    """Log the effective configuration with identifiers redacted."""
    logger.info(
        "Enrollment configuration",
        tenant_id=_redact(settings.tenant_id),
        client_id=_redact(settings.client_id),
        key_vault_name=settings.key_vault_name,
        certificate_secret_name=settings.certificate_secret_name,
        target_group_name=settings.target_group_name,
        group_tag=settings.group_tag,
        cleanup_entra=settings.cleanup_entra,
        cleanup_intune=settings.cleanup_intune,
        cleanup_autopilot=settings.cleanup_autopilot,
        device_name_prefix=settings.device_name_prefix,
        retry_max_attempts=settings.retry.max_attempts,
        retry_initial_delay_ms=settings.retry.initial_delay_ms,
        retry_backoff_multiplier=settings.retry.backoff_multiplier,
        propagation_delays=settings.propagation_delays.model_dump(),
        state_dir=str(settings.state_dir),
        checkpoint_max_age_hours=settings.checkpoint_max_age_hours,
    )
