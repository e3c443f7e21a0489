"""Bounded retry with exponential backoff.

The RetryExecutor runs a zero-argument callable up to ``max_attempts`` times.
Failures are classified with classify_error(); only TRANSIENT failures are
retried. The delay after failed attempt ``n`` is
``initial_delay_ms * backoff_multiplier ** (n - 1)`` milliseconds, so the
first attempt runs immediately and the first retry waits ``initial_delay_ms``.

Example:
    >>> executor = RetryExecutor(RetryPolicy(max_attempts=5))
    >>> devices = executor.execute(
    ...     lambda: service.find_by_identity("5CG1234XYZ"),
    ...     "autopilot.find_by_identity",
    ... )
"""

import re
import time
from typing import Callable, Iterable, List, NoReturn, Optional, Pattern, Sequence, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from src.enrollment.errors import (
    EnrollmentError,
    ErrorKind,
    OperationFailedError,
    TransientNetworkError,
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Matched case-insensitively against "<ExceptionType>: <message> <status_code>"
DEFAULT_RETRYABLE_PATTERNS: List[str] = [
    r"time[d]?\s?out",
    r"connection",
    r"network",
    r"\b429\b",
    r"\b503\b",
    r"\b504\b",
    r"throttl",
    r"too many requests",
    r"service unavailable",
    r"gateway time-?out",
    r"temporar(y|ily)",
    r"transient",
    r"try again",
]


class RetryPolicy(BaseModel):
    """Retry limits for a single invocation.

    Attributes:
        max_attempts: Total invocations allowed, including the first.
        initial_delay_ms: Delay before the first retry.
        backoff_multiplier: Growth factor applied to each further retry.
        max_delay_ms: Optional ceiling on a single delay; None leaves
            growth uncapped.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=10)
    initial_delay_ms: int = Field(default=1000, ge=100, le=60000)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=5.0)
    max_delay_ms: Optional[int] = Field(default=None, ge=100)

    def delay_ms(self, failed_attempt: int) -> int:
        """Return the delay to wait after the given failed attempt (1-based)."""
        delay = int(self.initial_delay_ms * self.backoff_multiplier ** (failed_attempt - 1))
        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)
        return delay


def compile_patterns(patterns: Optional[Iterable[str]]) -> List[Pattern[str]]:
    """Compile retryable patterns, falling back to the defaults when empty."""
    source = list(patterns) if patterns else DEFAULT_RETRYABLE_PATTERNS
    return [re.compile(pattern, re.IGNORECASE) for pattern in source]


def _describe(exc: BaseException) -> str:
    parts = [f"{type(exc).__name__}: {exc}"]
    status_code = getattr(exc, "status_code", None)
    if status_code is None:
        response = getattr(exc, "response", None)
        status_code = getattr(response, "status_code", None)
    if status_code is not None:
        parts.append(str(status_code))
    return " ".join(parts)


def classify_error(
    exc: BaseException,
    patterns: Optional[Sequence[Pattern[str]]] = None,
) -> ErrorKind:
    """Classify a failure into one of the ErrorKind values.

    Enrollment errors carry their own kind. Timeouts and connection errors
    from the standard library are transient. Anything else is transient only
    when its description matches one of the retryable patterns.
    """
    if isinstance(exc, EnrollmentError):
        return exc.kind
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT

    compiled = patterns if patterns is not None else compile_patterns(None)
    description = _describe(exc)
    if any(pattern.search(description) for pattern in compiled):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


class RetryExecutor:
    """Runs operations with bounded retries and exponential backoff.

    Attributes:
        policy: Default policy used when execute() is not given one.
        retryable_patterns: Default patterns used for classification.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        retryable_patterns: Optional[Iterable[str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self.retryable_patterns = list(retryable_patterns or DEFAULT_RETRYABLE_PATTERNS)
        self._sleep = sleep

    def execute(
        self,
        operation: Callable[[], T],
        name: str,
        policy: Optional[RetryPolicy] = None,
        retryable_patterns: Optional[Iterable[str]] = None,
    ) -> T:
        """Run ``operation`` until it succeeds or retrying stops.

        Args:
            operation: Zero-argument callable to invoke.
            name: Operation name used in log records and errors.
            policy: Overrides the executor's default policy.
            retryable_patterns: Overrides the executor's default patterns.

        Returns:
            Whatever ``operation`` returns on its successful attempt.

        Raises:
            TransientNetworkError: A transient failure persisted through
                ``max_attempts`` attempts.
            EnrollmentError: A non-retryable enrollment error, re-raised
                unchanged with ``attempts`` set.
            OperationFailedError: Any other non-retryable failure.
        """
        policy = policy or self.policy
        patterns = compile_patterns(retryable_patterns or self.retryable_patterns)

        attempt = 0
        while True:
            attempt += 1
            logger.debug(
                "Attempting operation",
                operation=name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
            )
            try:
                result = operation()
            except Exception as exc:
                kind = classify_error(exc, patterns)
                retryable = kind == ErrorKind.TRANSIENT

                if retryable and attempt < policy.max_attempts:
                    delay_ms = policy.delay_ms(attempt)
                    logger.info(
                        "Operation failed, retrying",
                        operation=name,
                        attempt=attempt,
                        delay_ms=delay_ms,
                        error=str(exc),
                    )
                    self._sleep(delay_ms / 1000.0)
                    continue

                logger.error(
                    "Operation failed",
                    operation=name,
                    attempts=attempt,
                    retryable=retryable,
                    error_kind=kind.value,
                    error=str(exc),
                )
                self._raise_terminal(exc, name, attempt, retryable)

            logger.debug("Operation succeeded", operation=name, attempts=attempt)
            return result

    @staticmethod
    def _raise_terminal(
        exc: Exception,
        name: str,
        attempts: int,
        retryable: bool,
    ) -> NoReturn:
        if retryable:
            raise TransientNetworkError(
                operation=name,
                attempts=attempts,
                message=f"{name} failed after {attempts} attempts: {exc}",
            ) from exc
        if isinstance(exc, EnrollmentError):
            exc.attempts = attempts
            raise exc
        raise OperationFailedError(
            operation=name,
            attempts=attempts,
            message=f"{name} failed: {exc}",
        ) from exc
