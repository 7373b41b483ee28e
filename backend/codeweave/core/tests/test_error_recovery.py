# backend/codeweave/core/tests/test_error_recovery.py
import pytest

from codeweave.core.error_recovery import ErrorRecoveryController, classify_error, rotate_matcher_order
from codeweave.core.exceptions import (
    ApplyError,
    AuthenticationError,
    CyclicDependencyError,
    ExtractionError,
    GroupRejectedError,
    PathSecurityError,
    PlanCancelledError,
    ProviderConnectionError,
    ProviderError,
    RateLimitError,
    TaskTimeoutError,
)
from codeweave.core.operation_extractor import DEFAULT_MATCHER_ORDER
from codeweave.core.project_models import ErrorKind, FailureClass, RecoveryAction, Task, TaskType

# --- Pytest Fixtures ---

@pytest.fixture
def controller() -> ErrorRecoveryController:
    return ErrorRecoveryController(max_retries=2, retry_delay_seconds=1.0)

@pytest.fixture
def task() -> Task:
    return Task(id="task1", type=TaskType.FILE_CREATION, description="create files", attempts=1)

# --- Test Cases ---

@pytest.mark.parametrize("error, expected", [
    (TaskTimeoutError("slow", 30), (FailureClass.TRANSIENT, ErrorKind.TIMEOUT)),
    (RateLimitError("slow down"), (FailureClass.TRANSIENT, ErrorKind.RATE_LIMIT)),
    (AuthenticationError("bad key"), (FailureClass.PERMANENT, ErrorKind.AUTHENTICATION)),
    (ProviderConnectionError("reset"), (FailureClass.TRANSIENT, ErrorKind.CONNECTION)),
    (ProviderError("boom", status_code=503), (FailureClass.TRANSIENT, ErrorKind.PROVIDER)),
    (ProviderError("bad request", status_code=400), (FailureClass.PERMANENT, ErrorKind.PROVIDER)),
    (ProviderError("forbidden", status_code=403), (FailureClass.PERMANENT, ErrorKind.AUTHENTICATION)),
    (ProviderError("Service Unavailable"), (FailureClass.TRANSIENT, ErrorKind.PROVIDER)),
    (ProviderError("weird", retryable=False), (FailureClass.PERMANENT, ErrorKind.PROVIDER)),
    (ExtractionError("no operations"), (FailureClass.TRANSIENT, ErrorKind.EXTRACTION)),
    (PathSecurityError("escape", "../x"), (FailureClass.PERMANENT, ErrorKind.SECURITY)),
    (ApplyError("disk full"), (FailureClass.PERMANENT, ErrorKind.APPLY)),
    (ApplyError("stuck", conflicted_paths=["a.txt"]), (FailureClass.PERMANENT, ErrorKind.CONFLICT)),
    (GroupRejectedError("no"), (FailureClass.PERMANENT, ErrorKind.REJECTED)),
    (PlanCancelledError("stop"), (FailureClass.PERMANENT, ErrorKind.CANCELLED)),
    (CyclicDependencyError(["a", "b", "a"]), (FailureClass.PERMANENT, ErrorKind.PLANNING)),
    (ConnectionResetError("peer reset"), (FailureClass.TRANSIENT, ErrorKind.CONNECTION)),
    (RuntimeError("socket: ECONNRESET"), (FailureClass.TRANSIENT, ErrorKind.CONNECTION)),
    (RuntimeError("model is overloaded"), (FailureClass.TRANSIENT, ErrorKind.PROVIDER)),
    (KeyError("nope"), (FailureClass.PERMANENT, ErrorKind.UNKNOWN)),
])
def test_classify_error(error, expected):
    assert classify_error(error) == expected


def test_rotate_matcher_order():
    assert rotate_matcher_order(["a", "b", "c"], 1) == ["b", "c", "a"]
    assert rotate_matcher_order(["a", "b", "c"], 4) == ["b", "c", "a"]
    assert rotate_matcher_order([], 2) == []


class TestDecide:
    def test_transient_failure_is_retried(self, controller: ErrorRecoveryController, task: Task):
        decision = controller.decide(task, RateLimitError("429"))

        assert decision.action == RecoveryAction.RETRY
        assert decision.delay_seconds == 1.0
        assert decision.retry_context.attempt == 2
        assert decision.retry_context.failure_kind == ErrorKind.RATE_LIMIT

    def test_backoff_doubles(self, controller: ErrorRecoveryController, task: Task):
        task.attempts = 2
        assert controller.decide(task, RateLimitError("429")).delay_seconds == 2.0

    def test_timeout_narrows_prompt(self, controller: ErrorRecoveryController, task: Task):
        context = controller.decide(task, TaskTimeoutError("slow")).retry_context
        assert context.narrow_prompt is True
        assert context.format_reminder is False
        assert context.extraction_order is None

    def test_extraction_failure_rotates_matchers(self, controller: ErrorRecoveryController, task: Task):
        context = controller.decide(task, ExtractionError("nothing found")).retry_context
        assert context.format_reminder is True
        assert context.extraction_order == rotate_matcher_order(DEFAULT_MATCHER_ORDER, 1)

    def test_retry_limit_converts_to_permanent(self, controller: ErrorRecoveryController, task: Task):
        task.attempts = 3  # Initial attempt plus two retries already used.
        decision = controller.decide(task, RateLimitError("still limited"))

        assert decision.action == RecoveryAction.FAIL
        assert decision.failure_class == FailureClass.PERMANENT
        assert decision.diagnostic.kind == ErrorKind.RATE_LIMIT
        assert decision.diagnostic.message.startswith("Retry limit (2) exceeded.")

    def test_permanent_failure_is_not_retried(self, controller: ErrorRecoveryController, task: Task):
        decision = controller.decide(task, AuthenticationError("bad key"))
        assert decision.action == RecoveryAction.FAIL
        assert decision.diagnostic.kind == ErrorKind.AUTHENTICATION
        assert decision.retry_context is None

    def test_zero_retries(self, task: Task):
        decision = ErrorRecoveryController(max_retries=0).decide(task, RateLimitError("429"))
        assert decision.action == RecoveryAction.FAIL

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            ErrorRecoveryController(max_retries=-1)
