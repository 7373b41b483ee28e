# backend/codeweave/core/transactional_applier.py
import dataclasses
import logging
from typing import Iterator, List, Optional

from .exceptions import AlreadyResolvedError, ApplyError
from .file_system_manager import FileSystemManager
from .project_models import (
    ApplyResult,
    FileOperation,
    FileOperationStatus,
    FileOperationType,
    OperationGroupStatus,
)
from .staging_store import OperationStagingStore

logger = logging.getLogger(__name__)

# Application order within a group; stable within a type.
APPLY_ORDER = {FileOperationType.ADD: 0, FileOperationType.UPDATE: 1, FileOperationType.DELETE: 2}

@dataclasses.dataclass(frozen=True)
class SnapshotEntry:
    """Pre-image of one path, captured before the operation touched it."""
    operation_id: str
    path: str
    existed: bool
    previous_content: Optional[str] = None


class WriteAheadLog:
    """In-memory log of pre-image snapshots for one group application."""
    def __init__(self, group_id: str):
        self.group_id = group_id
        self._entries: List[SnapshotEntry] = []

    def record(self, entry: SnapshotEntry) -> None:
        self._entries.append(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def reversed_entries(self) -> Iterator[SnapshotEntry]:
        return reversed(self._entries)


class TransactionalApplier:
    """
    Commits an accepted OperationGroup to the workspace as one unit.

    The only component that writes to the workspace. Before each write the
    current state of the target path is recorded in a write-ahead log; if any
    write fails, the log is replayed in reverse to restore the pre-images.
    """
    def __init__(self, file_system_manager: FileSystemManager, staging_store: OperationStagingStore):
        self.fs = file_system_manager
        self.store = staging_store

    def _check_unchanged(self, operation: FileOperation) -> None:
        """Refuses to overwrite a target whose content changed after the operation was staged."""
        if operation.base_hash is None:
            return
        if self.fs.get_file_hash(operation.path) != operation.base_hash:
            raise ApplyError(f"'{operation.path}' changed after it was staged for review.",
                             path=operation.path, operation_id=operation.id, group_id=operation.group_id)

    def _snapshot(self, operation: FileOperation) -> SnapshotEntry:
        if self.fs.file_exists(operation.path):
            return SnapshotEntry(operation.id, operation.path, True, self.fs.read_file(operation.path))
        return SnapshotEntry(operation.id, operation.path, False)

    def _write(self, operation: FileOperation) -> None:
        if operation.type == FileOperationType.DELETE:
            self.fs.delete_file(operation.path)
        else:
            self.fs.write_file(operation.path, operation.content or "")

    def apply_group(self, group_id: str) -> ApplyResult:
        """
        Applies every Accepted operation of the group in Add -> Update -> Delete order.

        Args:
            group_id: Id of a group whose status is Accepted.

        Returns:
            An ApplyResult with status APPLIED, ROLLED_BACK or CONFLICTED.

        Raises:
            AlreadyResolvedError: If the group is not ready for application (still
                                  Proposed or already terminal). Nothing is written.
            UnknownOperationError: If the group id is unknown.
        """
        group = self.store.get_group(group_id)
        if not self.store.is_ready_for_apply(group_id):
            raise AlreadyResolvedError(
                f"Group '{group_id}' is {group.status.value}, not ready for apply.",
                item_id=group_id, status=group.status.value,
            )

        operations = sorted(group.accepted_operations, key=lambda op: APPLY_ORDER[op.type])
        wal = WriteAheadLog(group_id)
        logger.info(f"Applying group '{group_id}' ({len(operations)} operation(s)).")

        failure: Optional[ApplyError] = None
        applied_paths: List[str] = []
        for operation in operations:
            try:
                self._check_unchanged(operation)
                wal.record(self._snapshot(operation))
                self._write(operation)
            except Exception as e:  # Encoding errors included, not just OSError.
                logger.error(f"Failed to apply {operation.type.value} '{operation.path}' (operation '{operation.id}'): {e}")
                failure = ApplyError(f"Failed to apply {operation.type.value} to '{operation.path}': {e}",
                                     path=operation.path, operation_id=operation.id, group_id=group_id)
                break
            self.store.mark_applied(operation.id)
            applied_paths.append(operation.path)

        if failure is None:
            logger.info(f"Group '{group_id}' applied: {applied_paths}")
            return ApplyResult(group_id=group_id, status=OperationGroupStatus.APPLIED, applied_paths=applied_paths)

        return self._compensate(group_id, operations, wal, failure)

    def _compensate(self, group_id: str, operations: List[FileOperation], wal: WriteAheadLog,
                    failure: ApplyError) -> ApplyResult:
        """Replays the log in reverse. Entries that cannot be restored leave their operation Conflicted."""
        logger.warning(f"Rolling back group '{group_id}': replaying {len(wal)} snapshot(s).")
        conflicted_ops: List[str] = []
        conflicted_paths: List[str] = []
        rolled_back_paths: List[str] = []

        for entry in wal.reversed_entries():
            try:
                if entry.existed:
                    self.fs.write_file(entry.path, entry.previous_content or "")
                else:
                    self.fs.delete_file(entry.path)
                if entry.path not in rolled_back_paths:
                    rolled_back_paths.append(entry.path)
            except Exception:
                logger.exception(f"Could not restore '{entry.path}' during rollback of group '{group_id}'")
                conflicted_ops.append(entry.operation_id)
                if entry.path not in conflicted_paths:
                    conflicted_paths.append(entry.path)

        for operation in operations:
            if operation.status not in (FileOperationStatus.ACCEPTED, FileOperationStatus.APPLIED):
                continue
            if operation.id in conflicted_ops:
                self.store.mark_conflicted(operation.id)
            else:
                self.store.mark_rolled_back(operation.id)

        rolled_back_paths = [p for p in rolled_back_paths if p not in conflicted_paths]
        status = self.store.get_group(group_id).status
        if status == OperationGroupStatus.CONFLICTED:
            logger.error(f"Group '{group_id}' is CONFLICTED; manual resolution required for: {conflicted_paths}")
        else:
            logger.info(f"Group '{group_id}' rolled back cleanly.")

        return ApplyResult(
            group_id=group_id,
            status=status,
            rolled_back_paths=rolled_back_paths,
            conflicted_paths=conflicted_paths,
            error=failure.message,
        )

    def raise_for_result(self, result: ApplyResult) -> None:
        """Raises ApplyError for a group that did not end Applied."""
        if result.status == OperationGroupStatus.APPLIED:
            return
        raise ApplyError(result.error or f"Group '{result.group_id}' was {result.status.value}.",
                         path=(result.conflicted_paths or result.rolled_back_paths or [None])[0],
                         group_id=result.group_id, conflicted_paths=result.conflicted_paths)
