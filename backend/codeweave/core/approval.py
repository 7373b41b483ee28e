# backend/codeweave/core/approval.py
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Union

from .project_models import FileOperation, OperationDiff, OperationGroup
from .staging_store import OperationStagingStore

logger = logging.getLogger(__name__)


class ReviewActions:
    """
    The review calls available to an approval gateway, bound to the staging store.
    Stale or duplicate calls raise AlreadyResolvedError; unknown ids raise UnknownOperationError.
    """
    def __init__(self, staging_store: OperationStagingStore):
        self._store = staging_store

    def accept_operation(self, operation_id: str) -> FileOperation:
        return self._store.accept_operation(operation_id)

    def reject_operation(self, operation_id: str) -> FileOperation:
        return self._store.reject_operation(operation_id)

    def accept_all(self, group_id: str) -> OperationGroup:
        return self._store.accept_all(group_id)

    def reject_all(self, group_id: str) -> OperationGroup:
        return self._store.reject_all(group_id)

    def get_diff(self, operation_id: str) -> OperationDiff:
        return self._store.get_diff(operation_id)


class ApprovalGateway(Protocol):
    """Reviews one staged group. Operations still Proposed afterwards are treated as rejected."""
    async def review(self, group: OperationGroup, diffs: List[OperationDiff], actions: ReviewActions) -> None:
        ...


class AutoApproveGateway:
    """Accepts every operation it is shown. Used for headless runs."""
    async def review(self, group: OperationGroup, diffs: List[OperationDiff], actions: ReviewActions) -> None:
        logger.info(f"Auto-approving group '{group.id}' ({len(group.operations)} operation(s)).")
        actions.accept_all(group.id)


ReviewCallback = Callable[[OperationGroup, List[OperationDiff], ReviewActions], Union[None, Awaitable[None]]]


class CallbackApprovalGateway:
    """
    Delegates the review to a UI callback. The callback may be a plain function
    or a coroutine function; it resolves operations through `actions`.
    """
    def __init__(self, callback: ReviewCallback):
        self.callback = callback

    async def review(self, group: OperationGroup, diffs: List[OperationDiff], actions: ReviewActions) -> None:
        result: Optional[Any] = self.callback(group, diffs, actions)
        if inspect.isawaitable(result):
            await result
