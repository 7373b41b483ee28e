# backend/codeweave/core/error_recovery.py
import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .exceptions import (
    AlreadyResolvedError,
    ApplyError,
    AuthenticationError,
    ExtractionError,
    GroupRejectedError,
    PathSecurityError,
    PlanCancelledError,
    PlanningError,
    ProviderConnectionError,
    ProviderError,
    RateLimitError,
    UnknownOperationError,
)
from .operation_extractor import DEFAULT_MATCHER_ORDER
from .project_models import (
    ErrorDiagnostic,
    ErrorKind,
    FailureClass,
    RecoveryAction,
    RecoveryDecision,
    RetryContext,
    Task,
)

logger = logging.getLogger(__name__)

# Message fragments that mark an otherwise untyped error as transient.
TRANSIENT_CONNECTION_PATTERNS: Tuple[str, ...] = (
    "econnreset",
    "etimedout",
    "econnrefused",
    "connection reset",
    "connection refused",
    "network error",
    "timed out",
)
TRANSIENT_PROVIDER_PATTERNS: Tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "503",
    "service unavailable",
    "temporarily unavailable",
    "overloaded",
    "try again later",
)


def _matches(message: str, patterns: Sequence[str]) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in patterns)


def classify_error(error: BaseException) -> Tuple[FailureClass, ErrorKind]:
    """
    Maps an exception raised while executing a task onto a failure class and kind.
    Anything not recognised is Permanent.
    """
    message = str(error)
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return FailureClass.TRANSIENT, ErrorKind.TIMEOUT
    if isinstance(error, RateLimitError):
        return FailureClass.TRANSIENT, ErrorKind.RATE_LIMIT
    if isinstance(error, AuthenticationError):
        return FailureClass.PERMANENT, ErrorKind.AUTHENTICATION
    if isinstance(error, ProviderConnectionError):
        return FailureClass.TRANSIENT, ErrorKind.CONNECTION
    if isinstance(error, ProviderError):
        status = error.status_code
        if status is not None:
            if status == 429:
                return FailureClass.TRANSIENT, ErrorKind.RATE_LIMIT
            if status >= 500:
                return FailureClass.TRANSIENT, ErrorKind.PROVIDER
            if status in (401, 403):
                return FailureClass.PERMANENT, ErrorKind.AUTHENTICATION
            return FailureClass.PERMANENT, ErrorKind.PROVIDER
        if _matches(message, TRANSIENT_PROVIDER_PATTERNS):
            return FailureClass.TRANSIENT, ErrorKind.PROVIDER
        if _matches(message, TRANSIENT_CONNECTION_PATTERNS):
            return FailureClass.TRANSIENT, ErrorKind.CONNECTION
        return (FailureClass.TRANSIENT if error.retryable else FailureClass.PERMANENT), ErrorKind.PROVIDER
    if isinstance(error, ExtractionError):
        return FailureClass.TRANSIENT, ErrorKind.EXTRACTION
    if isinstance(error, PathSecurityError):
        return FailureClass.PERMANENT, ErrorKind.SECURITY
    if isinstance(error, ApplyError):
        return FailureClass.PERMANENT, ErrorKind.CONFLICT if error.is_conflict else ErrorKind.APPLY
    if isinstance(error, GroupRejectedError):
        return FailureClass.PERMANENT, ErrorKind.REJECTED
    if isinstance(error, PlanCancelledError):
        return FailureClass.PERMANENT, ErrorKind.CANCELLED
    if isinstance(error, PlanningError):
        return FailureClass.PERMANENT, ErrorKind.PLANNING
    if isinstance(error, (AlreadyResolvedError, UnknownOperationError, ValidationError, ValueError)):
        return FailureClass.PERMANENT, ErrorKind.VALIDATION
    if isinstance(error, ConnectionError) or _matches(message, TRANSIENT_CONNECTION_PATTERNS):
        return FailureClass.TRANSIENT, ErrorKind.CONNECTION
    if _matches(message, TRANSIENT_PROVIDER_PATTERNS):
        return FailureClass.TRANSIENT, ErrorKind.PROVIDER
    return FailureClass.PERMANENT, ErrorKind.UNKNOWN


def rotate_matcher_order(order: Sequence[str], steps: int) -> List[str]:
    """Rotates the extraction matcher order left by `steps` positions."""
    order = list(order)
    if not order:
        return order
    steps %= len(order)
    return order[steps:] + order[:steps]


class ErrorRecoveryController:
    """
    Decides what happens after a task stage fails: retry with an adjusted
    context, or fail the task with a structured diagnostic.

    Retries are counted on the task itself (`Task.attempts`), so the bound holds
    across every stage of one task and the counter never resets.
    """
    def __init__(self, max_retries: int = 2, retry_delay_seconds: float = 1.0,
                 matcher_order: Optional[Sequence[str]] = None):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.matcher_order = list(matcher_order or DEFAULT_MATCHER_ORDER)

    def backoff_delay(self, retry_number: int) -> float:
        """Exponential backoff for the n-th retry (1-based)."""
        return self.retry_delay_seconds * (2 ** max(retry_number - 1, 0))

    def decide(self, task: Task, error: BaseException) -> RecoveryDecision:
        """
        Produces a RecoveryDecision for a failure of `task`.

        Args:
            task: The failing task. `task.attempts` is the number of executions started so far.
            error: The exception raised by the failing stage.
        """
        failure_class, kind = classify_error(error)
        message = str(error) or error.__class__.__name__
        retries_used = max(task.attempts - 1, 0)

        if failure_class == FailureClass.TRANSIENT and retries_used < self.max_retries:
            retry_number = retries_used + 1
            retry_context = RetryContext(
                attempt=task.attempts + 1,
                failure_kind=kind,
                failure_message=message,
                narrow_prompt=kind == ErrorKind.TIMEOUT,
                format_reminder=kind == ErrorKind.EXTRACTION,
                extraction_order=rotate_matcher_order(self.matcher_order, retry_number) if kind == ErrorKind.EXTRACTION else None,
            )
            delay = self.backoff_delay(retry_number)
            logger.warning(f"Task '{task.id}' failed with transient {kind.value} error (retry {retry_number}/{self.max_retries} in {delay:.1f}s): {message}")
            return RecoveryDecision(
                action=RecoveryAction.RETRY,
                failure_class=failure_class,
                diagnostic=ErrorDiagnostic(kind=kind, message=message),
                attempt=task.attempts,
                max_retries=self.max_retries,
                delay_seconds=delay,
                retry_context=retry_context,
            )

        if failure_class == FailureClass.TRANSIENT:
            message = f"Retry limit ({self.max_retries}) exceeded. Last error: {message}"
            failure_class = FailureClass.PERMANENT
        logger.error(f"Task '{task.id}' failed permanently ({kind.value}): {message}")
        return RecoveryDecision(
            action=RecoveryAction.FAIL,
            failure_class=failure_class,
            diagnostic=ErrorDiagnostic(kind=kind, message=message),
            attempt=task.attempts,
            max_retries=self.max_retries,
        )
