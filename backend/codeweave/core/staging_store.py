# backend/codeweave/core/staging_store.py
import logging
import threading
from typing import Callable, Dict, List, Optional, Sequence

from .exceptions import AlreadyResolvedError, UnknownOperationError
from .patch_generator import PatchGenerator
from .project_models import (
    FileOperation,
    FileOperationStatus,
    FileOperationType,
    OperationDiff,
    OperationGroup,
    OperationGroupStatus,
    TERMINAL_GROUP_STATUSES,
)

logger = logging.getLogger(__name__)

_MUTABLE_GROUP_STATUSES = {OperationGroupStatus.PROPOSED, OperationGroupStatus.PARTIALLY_RESOLVED}


class IdAllocator:
    """
    Hands out globally unique, monotonically increasing ids per prefix
    (`op-1`, `op-2`, `grp-1`, ...). Safe to share between concurrently running plans.
    """
    def __init__(self):
        self._counters: Dict[str, int] = {}
        self._lock = threading.Lock()

    def next_id(self, prefix: str) -> str:
        with self._lock:
            value = self._counters.get(prefix, 0) + 1
            self._counters[prefix] = value
        return f"{prefix}-{value}"


class OperationStagingStore:
    """
    Holds extracted operations until they are reviewed and applied.

    Operations are grouped into OperationGroups (the unit of approval and of
    atomic application), given ids from the shared IdAllocator and diffed against
    the current workspace content on request. The store reads the workspace
    through `read_file` but never writes to it; the applier records its outcomes
    back here through the `mark_*` methods.
    """
    def __init__(self, id_allocator: IdAllocator, read_file: Callable[[str], str],
                 split_groups_by_directory: bool = False,
                 hash_file: Optional[Callable[[str], Optional[str]]] = None):
        """
        Args:
            id_allocator: Shared id source.
            read_file: Filesystem read callable; must raise FileNotFoundError for missing files.
            split_groups_by_directory: Put operations under different top-level
                                       directories into separate groups.
            hash_file: Optional content-hash callable. When given, the hash of each
                       Update/Delete target is recorded at staging time so the
                       applier can detect edits made after review.
        """
        self.id_allocator = id_allocator
        self._read_file = read_file
        self.split_groups_by_directory = split_groups_by_directory
        self._hash_file = hash_file
        self._groups: Dict[str, OperationGroup] = {}
        self._operations: Dict[str, FileOperation] = {}
        self._diffs: Dict[str, OperationDiff] = {}
        self._lock = threading.RLock()

    # --- Staging ---

    def _group_key(self, operation: FileOperation) -> str:
        if operation.group_hint:
            return f"hint:{operation.group_hint}"
        if self.split_groups_by_directory:
            head = operation.path.split("/", 1)[0] if "/" in operation.path else ""
            return f"dir:{head}"
        return "default"

    def _base_hash(self, operation: FileOperation) -> Optional[str]:
        if self._hash_file is None or operation.type == FileOperationType.ADD:
            return None
        return self._hash_file(operation.path)

    def stage(self, operations: Sequence[FileOperation], task_id: Optional[str] = None,
              description: str = "", plan_id: Optional[str] = None) -> List[OperationGroup]:
        """
        Stages extracted operations as one or more new groups, preserving response order.

        Returns:
            The new groups, in order of their first operation. Empty if `operations` is empty.
        """
        buckets: Dict[str, List[FileOperation]] = {}
        for operation in operations:
            buckets.setdefault(self._group_key(operation), []).append(operation)

        groups: List[OperationGroup] = []
        with self._lock:
            for key, bucket in buckets.items():
                group_id = self.id_allocator.next_id("grp")
                label = key.split(":", 1)[1] if ":" in key else ""
                group_description = description
                if len(buckets) > 1:
                    group_description = f"{description} [{label or 'workspace root'}]".strip()
                staged_ops = []
                for operation in bucket:
                    staged = operation.model_copy(update={
                        "id": self.id_allocator.next_id("op"),
                        "group_id": group_id,
                        "task_id": task_id,
                        "status": FileOperationStatus.PROPOSED,
                        "base_hash": self._base_hash(operation),
                    })
                    self._operations[staged.id] = staged
                    staged_ops.append(staged)
                group = OperationGroup(id=group_id, description=group_description, task_id=task_id,
                                       plan_id=plan_id, operations=staged_ops)
                self._groups[group_id] = group
                groups.append(group)
                logger.info(f"Staged group '{group_id}' with {len(staged_ops)} operation(s) for task '{task_id}'.")
        return groups

    # --- Lookup ---

    def get_operation(self, operation_id: str) -> FileOperation:
        with self._lock:
            operation = self._operations.get(operation_id)
        if operation is None:
            raise UnknownOperationError(operation_id)
        return operation

    def get_group(self, group_id: str) -> OperationGroup:
        with self._lock:
            group = self._groups.get(group_id)
        if group is None:
            raise UnknownOperationError(group_id)
        return group

    def pending_groups(self) -> List[OperationGroup]:
        """Groups that still have at least one Proposed operation."""
        with self._lock:
            return [g for g in self._groups.values() if g.status in _MUTABLE_GROUP_STATUSES]

    def groups_for_task(self, task_id: str, plan_id: Optional[str] = None) -> List[OperationGroup]:
        with self._lock:
            return [g for g in self._groups.values()
                    if g.task_id == task_id and (plan_id is None or g.plan_id == plan_id)]

    def is_ready_for_apply(self, group_id: str) -> bool:
        return self.get_group(group_id).status == OperationGroupStatus.ACCEPTED

    # --- Review actions ---

    def _resolve_operation(self, operation_id: str, new_status: FileOperationStatus) -> FileOperation:
        with self._lock:
            operation = self.get_operation(operation_id)
            if operation.status != FileOperationStatus.PROPOSED:
                raise AlreadyResolvedError(
                    f"Operation '{operation_id}' is already {operation.status.value}.",
                    item_id=operation_id, status=operation.status.value,
                )
            operation.transition_to(new_status)
        logger.info(f"Operation '{operation_id}' ({operation.path}) {new_status.value}.")
        return operation

    def _resolve_group(self, group_id: str, new_status: FileOperationStatus) -> OperationGroup:
        with self._lock:
            group = self.get_group(group_id)
            if group.status not in _MUTABLE_GROUP_STATUSES:
                raise AlreadyResolvedError(
                    f"Group '{group_id}' is already {group.status.value}.",
                    item_id=group_id, status=group.status.value,
                )
            for operation in group.proposed_operations:
                operation.transition_to(new_status)
        logger.info(f"All pending operations of group '{group_id}' {new_status.value}.")
        return group

    def accept_operation(self, operation_id: str) -> FileOperation:
        """
        Raises:
            UnknownOperationError: If the id is unknown.
            AlreadyResolvedError: If the operation is no longer Proposed.
        """
        return self._resolve_operation(operation_id, FileOperationStatus.ACCEPTED)

    def reject_operation(self, operation_id: str) -> FileOperation:
        return self._resolve_operation(operation_id, FileOperationStatus.REJECTED)

    def accept_all(self, group_id: str) -> OperationGroup:
        """Accepts every still-Proposed operation of the group."""
        return self._resolve_group(group_id, FileOperationStatus.ACCEPTED)

    def reject_all(self, group_id: str) -> OperationGroup:
        return self._resolve_group(group_id, FileOperationStatus.REJECTED)

    # --- Diffs ---

    def _current_content(self, path: str) -> str:
        try:
            return self._read_file(path)
        except FileNotFoundError:
            return ""

    def get_diff(self, operation_id: str) -> OperationDiff:
        """
        Returns the diff of an operation against the current workspace content.
        Adds are diffed against empty content, Deletes against an empty target.
        The result is cached per operation.
        """
        operation = self.get_operation(operation_id)
        with self._lock:
            cached = self._diffs.get(operation_id)
        if cached is not None:
            return cached

        original = "" if operation.type == FileOperationType.ADD else self._current_content(operation.path)
        new = "" if operation.type == FileOperationType.DELETE else (operation.content or "")
        unified = PatchGenerator.create_diff(original, new, operation.path)
        added, removed = PatchGenerator.diff_stats(unified)
        diff = OperationDiff(
            operation_id=operation_id,
            path=operation.path,
            type=operation.type,
            unified_diff=unified,
            chunks=PatchGenerator.line_chunks(original, new),
            added_lines=added,
            removed_lines=removed,
        )
        with self._lock:
            self._diffs[operation_id] = diff
        return diff

    def get_group_diffs(self, group_id: str) -> List[OperationDiff]:
        return [self.get_diff(op.id) for op in self.get_group(group_id).operations]

    # --- Outcomes recorded by the applier ---

    def _mark(self, operation_id: str, new_status: FileOperationStatus) -> None:
        with self._lock:
            operation = self.get_operation(operation_id)
            try:
                operation.transition_to(new_status)
            except ValueError as e:
                raise AlreadyResolvedError(str(e), item_id=operation_id, status=operation.status.value) from e

    def mark_applied(self, operation_id: str) -> None:
        self._mark(operation_id, FileOperationStatus.APPLIED)

    def mark_rolled_back(self, operation_id: str) -> None:
        self._mark(operation_id, FileOperationStatus.ROLLED_BACK)

    def mark_conflicted(self, operation_id: str) -> None:
        self._mark(operation_id, FileOperationStatus.CONFLICTED)

    def archive(self, group_id: str) -> OperationGroup:
        """
        Removes a terminal group (and its operations) from the store.

        Raises:
            ValueError: If the group is still open for review or application.
        """
        with self._lock:
            group = self.get_group(group_id)
            if group.status not in TERMINAL_GROUP_STATUSES:
                raise ValueError(f"Group '{group_id}' is still {group.status.value} and cannot be archived.")
            del self._groups[group_id]
            for operation in group.operations:
                self._operations.pop(operation.id, None)
                self._diffs.pop(operation.id, None)
        logger.debug(f"Archived group '{group_id}' ({group.status.value}).")
        return group
