"""Certificate retrieval and lifecycle validation.

The authentication certificate lives in the secret store as two secrets: a
base64-encoded PKCS#12 bundle and the bundle's password. The validator
fetches both through the retry executor, decodes the bundle, and checks that
the result is usable right now: it must carry a private key and the current
time must fall inside its validity window. Certificates close to expiry are
accepted with a warning.

The raw bundle bytes and the password are overwritten before retrieve()
returns, whatever the outcome. The returned Credential still holds live key
material; callers clear it with Credential.clear() or use it as a context
manager.
"""

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

import structlog
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import pkcs12

from src.enrollment.clock import Clock, SystemClock
from src.enrollment.errors import (
    CertificateDecodeError,
    CertificateExpiredError,
    CertificateNotYetValidError,
    NoPrivateKeyError,
    SecretNotFoundError,
)
from src.enrollment.retry import RetryExecutor


logger = structlog.get_logger(__name__)

DEFAULT_EXPIRY_WARNING_DAYS = 30


class SecretStore(Protocol):
    def get_secret(self, name: str) -> Optional[str]:
        """Return the plaintext secret value, or None when it does not exist."""
        ...


@dataclass(eq=False)
class Credential:
    """A decoded, validated authentication certificate.

    Attributes:
        subject: RFC 4514 subject of the certificate.
        thumbprint: Upper-case hex SHA-1 fingerprint.
        not_before: Start of the validity window (UTC).
        not_after: End of the validity window (UTC).
        has_private_key: Whether the bundle carried a private key.
        days_until_expiry: Whole days left at validation time.
        private_key: Live private key object; None once cleared.
        certificate: Live certificate object; None once cleared.
    """

    subject: str
    thumbprint: str
    not_before: datetime
    not_after: datetime
    has_private_key: bool
    days_until_expiry: int = 0
    private_key: Any = field(default=None, repr=False)
    certificate: Optional[x509.Certificate] = field(default=None, repr=False)

    @property
    def is_cleared(self) -> bool:
        return self.private_key is None and self.certificate is None

    def clear(self) -> None:
        """Drop references to the key material."""
        self.private_key = None
        self.certificate = None

    def __enter__(self) -> "Credential":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.clear()


def _scrub(buffer: bytearray) -> None:
    for index in range(len(buffer)):
        buffer[index] = 0


class CertificateLifecycleValidator:
    """Turns two secret-store entries into a validated Credential."""

    def __init__(
        self,
        executor: RetryExecutor,
        clock: Optional[Clock] = None,
        expiry_warning_days: int = DEFAULT_EXPIRY_WARNING_DAYS,
    ):
        self.executor = executor
        self.clock = clock or SystemClock()
        self.expiry_warning_days = expiry_warning_days

    def retrieve(
        self,
        secret_store: SecretStore,
        cert_secret_name: str,
        password_secret_name: str,
    ) -> Credential:
        """Fetch, decode and validate the authentication certificate.

        Args:
            secret_store: Vault holding both secrets.
            cert_secret_name: Secret containing the base64 PKCS#12 bundle.
            password_secret_name: Secret containing the bundle password.

        Returns:
            A validated Credential the caller must clear after use.

        Raises:
            SecretNotFoundError: Either secret is missing.
            CertificateDecodeError: The bundle is corrupt or the password
                is wrong.
            NoPrivateKeyError: The bundle has no private key.
            CertificateNotYetValidError: The validity window has not started.
            CertificateExpiredError: The validity window has ended.
        """
        encoded_bundle = self._fetch_secret(secret_store, cert_secret_name)
        password_value = self._fetch_secret(secret_store, password_secret_name)
        if not encoded_bundle:
            raise SecretNotFoundError(cert_secret_name)

        bundle = bytearray()
        password = bytearray(password_value.encode("utf-8"))
        try:
            try:
                bundle = bytearray(base64.b64decode(encoded_bundle, validate=True))
            except (binascii.Error, ValueError) as exc:
                raise CertificateDecodeError(
                    f"Certificate secret {cert_secret_name} is not valid base64"
                ) from exc
            credential = self._decode(bundle, password)
        finally:
            _scrub(bundle)
            _scrub(password)
            del encoded_bundle, password_value

        try:
            self._validate(credential)
        except Exception:
            credential.clear()
            raise
        return credential

    def _fetch_secret(self, secret_store: SecretStore, name: str) -> str:
        def get() -> Optional[str]:
            try:
                return secret_store.get_secret(name)
            except KeyError as exc:
                raise SecretNotFoundError(name) from exc

        value = self.executor.execute(get, f"secret_store.get_secret[{name}]")
        if value is None:
            raise SecretNotFoundError(name)
        return value

    def _decode(self, bundle: bytearray, password: bytearray) -> Credential:
        try:
            private_key, certificate, _ = pkcs12.load_key_and_certificates(
                bytes(bundle), bytes(password) or None
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise CertificateDecodeError(
                "Certificate bundle could not be decoded (corrupt data or wrong password)"
            ) from exc

        if certificate is None:
            raise CertificateDecodeError("Certificate bundle contains no certificate")

        return Credential(
            subject=certificate.subject.rfc4514_string(),
            thumbprint=certificate.fingerprint(hashes.SHA1()).hex().upper(),
            not_before=certificate.not_valid_before_utc,
            not_after=certificate.not_valid_after_utc,
            has_private_key=private_key is not None,
            private_key=private_key,
            certificate=certificate,
        )

    def _validate(self, credential: Credential) -> None:
        if not credential.has_private_key:
            raise NoPrivateKeyError(
                f"Certificate {credential.thumbprint} has no private key"
            )

        now = self.clock.now()
        if now < credential.not_before:
            raise CertificateNotYetValidError(
                f"Certificate {credential.thumbprint} is not valid until "
                f"{credential.not_before.isoformat()}"
            )
        if now > credential.not_after:
            raise CertificateExpiredError(
                f"Certificate {credential.thumbprint} expired on "
                f"{credential.not_after.isoformat()}"
            )

        remaining = credential.not_after - now
        credential.days_until_expiry = remaining.days
        if remaining <= timedelta(days=self.expiry_warning_days):
            logger.warning(
                "Certificate expires soon",
                thumbprint=credential.thumbprint,
                days_until_expiry=remaining.days,
                not_after=credential.not_after.isoformat(),
            )

        logger.info(
            "Certificate validated",
            subject=credential.subject,
            thumbprint=credential.thumbprint,
            not_after=credential.not_after.isoformat(),
        )
