"""Pytest configuration and shared fakes for all tests."""

import base64
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    NoEncryption,
    pkcs12,
)
from cryptography.x509.oid import NameOID

from src.enrollment.config import EnrollmentSettings
from src.enrollment.context import DeploymentContext
from src.enrollment.device import DeviceIdentity
from src.enrollment.events import DeploymentEvent, EventEmitter
from src.enrollment.retry import RetryExecutor


FIXED_NOW = datetime(2026, 3, 2, 8, 30, 0, tzinfo=timezone.utc)


class InMemoryStateStore:
    """StateStore keeping serialized state in a dict."""

    def __init__(self) -> None:
        self.data: Dict[str, bytes] = {}
        self.writes = 0

    def read(self, key: str) -> Optional[bytes]:
        return self.data.get(key)

    def write(self, key: str, data: bytes) -> None:
        self.data[key] = data
        self.writes += 1

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FakeClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta


class RecordingEventEmitter(EventEmitter):
    """Keeps emitted events in memory, in order."""

    def __init__(self) -> None:
        self.events: List[DeploymentEvent] = []

    def emit(self, event: DeploymentEvent) -> None:
        self.events.append(event)


class RecordingSleep:
    """Sleep replacement that records requested durations."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def build_pkcs12_secret(
    not_before: datetime,
    not_after: datetime,
    password: str = "s3cret-pfx",
    include_key: bool = True,
    common_name: str = "enrollment-app",
) -> str:
    """Return a base64 PKCS#12 bundle for a self-signed certificate."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    encryption = (
        BestAvailableEncryption(password.encode("utf-8")) if password else NoEncryption()
    )
    bundle = pkcs12.serialize_key_and_certificates(
        b"enrollment",
        key if include_key else None,
        certificate,
        None,
        encryption,
    )
    return base64.b64encode(bundle).decode("ascii")


def make_settings(tmp_dir: Any = "/tmp/enrollment-tests", **overrides: Any) -> EnrollmentSettings:
    values: Dict[str, Any] = {
        "tenant_id": "11111111-2222-3333-4444-555555555555",
        "client_id": "66666666-7777-8888-9999-000000000000",
        "key_vault_name": "kv-enroll-test",
        "certificate_secret_name": "enroll-cert",
        "certificate_password_secret_name": "enroll-cert-password",
        "retry": {"max_attempts": 3, "initial_delay_ms": 100, "backoff_multiplier": 2.0},
        "propagation_delays": {
            "entra_cleanup": 15,
            "intune_cleanup": 20,
            "autopilot_cleanup": 45,
        },
        "state_dir": str(tmp_dir),
    }
    values.update(overrides)
    return EnrollmentSettings(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def device() -> DeviceIdentity:
    return DeviceIdentity(serial_number="TEST123", computer_name="WAU1234")


@pytest.fixture
def settings(tmp_path) -> EnrollmentSettings:
    return make_settings(tmp_path)


@pytest.fixture
def settings_factory(tmp_path) -> Callable[..., EnrollmentSettings]:
    """Build settings with overrides on top of the test defaults."""

    def factory(**overrides: Any) -> EnrollmentSettings:
        return make_settings(tmp_path, **overrides)

    return factory


@pytest.fixture
def context(settings, device, clock, sleeps) -> DeploymentContext:
    return DeploymentContext(
        settings=settings,
        device=device,
        executor=RetryExecutor(settings.retry, settings.retryable_patterns, sleep=sleeps),
        clock=clock,
        sleep=sleeps,
    )


@pytest.fixture
def pkcs12_factory() -> Callable[..., str]:
    return build_pkcs12_secret


@pytest.fixture
def emitter() -> RecordingEventEmitter:
    return RecordingEventEmitter()
