# backend/codeweave/core/exceptions.py
from typing import List, Optional


class CoreError(Exception):
    """Base exception for all custom errors raised within the codeweave core modules."""
    pass


class PlanningError(CoreError):
    """
    Raised by the TaskPlanner when the collaborator's decomposition is structurally
    invalid (missing fields, unknown task types, dangling dependencies).
    Fatal for the whole plan: no task is executed.
    """
    pass


class CyclicDependencyError(PlanningError):
    """
    Raised by the TaskPlanner when the dependency graph of a plan contains a cycle.

    The `cycle` attribute lists the task ids that form the loop, with the first id
    repeated at the end (e.g. ["task1", "task2", "task1"]).
    """
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency detected between tasks: {' -> '.join(self.cycle)}")


class ExtractionError(CoreError):
    """
    Raised for a single response fragment that could not be turned into a file
    operation, or when a file-producing task yielded no operations at all.
    Recoverable: the task continues with whatever was extracted successfully.
    """
    def __init__(self, message: str, fragment: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.fragment = fragment


class PathSecurityError(CoreError, ValueError):
    """
    Raised when a path would resolve outside the workspace root (or into a
    protected directory). Fatal for that one operation only; the operation is
    dropped and never reaches the filesystem.
    """
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class ApplyError(CoreError):
    """
    Raised when writing an operation to the workspace fails. The applier compensates
    the group first; `conflicted_paths` is non-empty when that compensation itself
    failed and the files need manual resolution.
    """
    def __init__(self, message: str, path: Optional[str] = None, operation_id: Optional[str] = None,
                 group_id: Optional[str] = None, conflicted_paths: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.path = path
        self.operation_id = operation_id
        self.group_id = group_id
        self.conflicted_paths = list(conflicted_paths or [])

    @property
    def is_conflict(self) -> bool:
        return bool(self.conflicted_paths)


class ProviderError(CoreError):
    """
    Raised by AI collaborator adapters when a generation request fails.

    Carries an optional HTTP status code, the provider name and a `retryable`
    hint that the ErrorRecoveryController honours.
    """
    def __init__(self, message: str, status_code: Optional[int] = None,
                 provider: Optional[str] = None, retryable: bool = True):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider = provider
        self.retryable = retryable


class RateLimitError(ProviderError):
    """Provider rejected the request because of rate limiting or quota (HTTP 429)."""
    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message, status_code=429, provider=provider, retryable=True)


class AuthenticationError(ProviderError):
    """Provider rejected the credentials (HTTP 401/403). Never retried."""
    def __init__(self, message: str, status_code: Optional[int] = 401, provider: Optional[str] = None):
        super().__init__(message, status_code=status_code, provider=provider, retryable=False)


class ProviderConnectionError(ProviderError):
    """The provider could not be reached (DNS, refused or reset connection)."""
    pass


class TaskTimeoutError(CoreError, TimeoutError):
    """
    Raised when a task execution (or a planning call) exceeds its configured time
    budget. Routed through the ErrorRecoveryController as a transient failure.
    """
    def __init__(self, message: str, timeout_seconds: Optional[float] = None):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class AlreadyResolvedError(CoreError):
    """
    Raised by the OperationStagingStore (and the applier) when an operation or group
    is no longer in a mutable state, e.g. a duplicate accept from the approval UI.
    """
    def __init__(self, message: str, item_id: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message)
        self.item_id = item_id
        self.status = status


class UnknownOperationError(CoreError, KeyError):
    """Raised when an operation or group id is not known to the staging store."""
    def __init__(self, item_id: str):
        super().__init__(item_id)
        self.item_id = item_id

    def __str__(self) -> str:
        return f"Unknown operation or group id: '{self.item_id}'"


class GroupRejectedError(CoreError):
    """Raised when the reviewer rejected every operation a task proposed."""
    def __init__(self, message: str, group_ids: Optional[List[str]] = None):
        super().__init__(message)
        self.group_ids = list(group_ids or [])


class PlanCancelledError(CoreError):
    """
    Raised when a plan is cancelled by the user. Checked at task boundaries; the
    currently running task's collaborator result is discarded.
    """
    pass
