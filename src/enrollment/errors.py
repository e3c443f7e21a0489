"""Error taxonomy for the enrollment workflow.

Every error raised by the enrollment core derives from EnrollmentError and
carries an ErrorKind. The retry executor and the cleanup coordinator branch
on that kind rather than on exception types:

- TRANSIENT: retried per policy, fatal after exhaustion
- AUTHENTICATION, CONFIGURATION, CERTIFICATE: fatal, never retried
- FATAL: anything else that cannot be retried

CleanupError is the one recoverable error; the coordinator logs it and moves
on to the next record.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure classifications."""

    TRANSIENT = "transient"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    CERTIFICATE = "certificate"
    FATAL = "fatal"


class EnrollmentError(Exception):
    """Base class for enrollment errors.

    Attributes:
        message: Human-readable error description.
        kind: Classification consumed by the retry layer.
        attempts: Number of attempts made when the error surfaced from the
            retry executor, None otherwise.
    """

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str):
        self.message = message
        self.attempts: Optional[int] = None
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


class ConfigurationError(EnrollmentError):
    """Raised when settings are missing or invalid."""

    kind = ErrorKind.CONFIGURATION


class AuthenticationError(EnrollmentError):
    """Raised when a connection to a remote tenant cannot be established."""

    kind = ErrorKind.AUTHENTICATION


class OperationFailedError(EnrollmentError):
    """Raised when an operation fails with an error that cannot be retried.

    Attributes:
        operation: Name of the operation that failed.
        attempts: Number of attempts made before giving up.
    """

    def __init__(self, operation: str, attempts: int, message: str):
        super().__init__(message)
        self.operation = operation
        self.attempts = attempts


class TransientNetworkError(OperationFailedError):
    """Raised when a transient failure persists through every retry."""

    kind = ErrorKind.TRANSIENT


class CertificateError(EnrollmentError):
    """Base class for certificate lifecycle failures."""

    kind = ErrorKind.CERTIFICATE


class SecretNotFoundError(CertificateError):
    """Raised when a secret is absent from the secret store."""

    def __init__(self, secret_name: str):
        self.secret_name = secret_name
        super().__init__(f"Secret not found: {secret_name}")


class CertificateDecodeError(CertificateError):
    """Raised when the certificate bundle cannot be decoded."""


class CertificateExpiredError(CertificateError):
    """Raised when the certificate's validity period has ended."""


class CertificateNotYetValidError(CertificateError):
    """Raised when the certificate's validity period has not started."""


class NoPrivateKeyError(CertificateError):
    """Raised when the certificate bundle carries no private key."""


class CleanupError(EnrollmentError):
    """Raised when a single remote record cannot be removed.

    Recoverable: the coordinator logs it and continues with the next record.

    Attributes:
        system_name: The remote system the record belongs to.
        record_id: Identifier of the record that could not be removed.
    """

    def __init__(self, system_name: str, record_id: str, message: str):
        self.system_name = system_name
        self.record_id = record_id
        super().__init__(message)


class CleanupQueryError(EnrollmentError):
    """Raised when a remote system cannot be queried for stale records."""

    def __init__(self, system_name: str, message: str):
        self.system_name = system_name
        super().__init__(message)


class InvalidTransitionError(EnrollmentError):
    """Raised when a phase change would move the checkpoint backwards."""

    def __init__(self, from_phase: str, to_phase: str):
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(f"Invalid transition from {from_phase} to {to_phase}")
