# backend/codeweave/core/tests/test_staging_store.py
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from codeweave.core.exceptions import AlreadyResolvedError, UnknownOperationError
from codeweave.core.file_system_manager import FileSystemManager
from codeweave.core.project_models import (
    FileOperation,
    FileOperationStatus,
    FileOperationType,
    OperationGroupStatus,
)
from codeweave.core.staging_store import IdAllocator, OperationStagingStore
from codeweave.core.transactional_applier import TransactionalApplier

# --- Pytest Fixtures ---

@pytest.fixture
def fs_manager(tmp_path: Path) -> FileSystemManager:
    return FileSystemManager(tmp_path)

@pytest.fixture
def store(fs_manager: FileSystemManager) -> OperationStagingStore:
    return OperationStagingStore(IdAllocator(), fs_manager.read_file)


def add(path: str, content: str = "x\n", hint=None) -> FileOperation:
    return FileOperation(type=FileOperationType.ADD, path=path, content=content, group_hint=hint)

# --- Test Cases ---

def test_id_allocator_is_monotonic_per_prefix():
    allocator = IdAllocator()
    assert [allocator.next_id("op") for _ in range(3)] == ["op-1", "op-2", "op-3"]
    assert allocator.next_id("grp") == "grp-1"


class TestStaging:
    def test_stage_assigns_ids_and_single_default_group(self, store: OperationStagingStore):
        groups = store.stage([add("a.txt"), add("b.txt")], task_id="task1", description="make files", plan_id="plan-1")

        assert len(groups) == 1
        group = groups[0]
        assert group.id == "grp-1"
        assert [op.id for op in group.operations] == ["op-1", "op-2"]
        assert all(op.group_id == "grp-1" and op.task_id == "task1" for op in group.operations)
        assert group.status == OperationGroupStatus.PROPOSED
        assert store.pending_groups() == [group]

    def test_stage_does_not_mutate_input(self, store: OperationStagingStore):
        original = add("a.txt")
        store.stage([original])
        assert original.id is None

    def test_group_hints_split_groups(self, store: OperationStagingStore):
        groups = store.stage([add("api/a.py", hint="backend"), add("web/b.js", hint="frontend"), add("api/c.py", hint="backend")])
        assert [[op.path for op in g.operations] for g in groups] == [["api/a.py", "api/c.py"], ["web/b.js"]]

    def test_split_by_directory(self, fs_manager: FileSystemManager):
        store = OperationStagingStore(IdAllocator(), fs_manager.read_file, split_groups_by_directory=True)
        groups = store.stage([add("api/a.py"), add("README.md"), add("api/b.py")])
        assert [[op.path for op in g.operations] for g in groups] == [["api/a.py", "api/b.py"], ["README.md"]]

    def test_stage_nothing(self, store: OperationStagingStore):
        assert store.stage([]) == []

    def test_groups_for_task_is_scoped_to_plan(self, store: OperationStagingStore):
        store.stage([add("a.txt")], task_id="task1", plan_id="plan-1")
        store.stage([add("b.txt")], task_id="task1", plan_id="plan-2")
        assert [g.operations[0].path for g in store.groups_for_task("task1", "plan-2")] == ["b.txt"]
        assert len(store.groups_for_task("task1")) == 2


class TestReview:
    def test_accept_and_reject_individually(self, store: OperationStagingStore):
        group = store.stage([add("a.txt"), add("b.txt")])[0]
        store.accept_operation("op-1")
        assert store.get_group(group.id).status == OperationGroupStatus.PARTIALLY_RESOLVED
        store.reject_operation("op-2")
        assert store.get_group(group.id).status == OperationGroupStatus.ACCEPTED
        assert store.is_ready_for_apply(group.id)

    def test_duplicate_accept_raises_already_resolved(self, store: OperationStagingStore):
        store.stage([add("a.txt")])
        store.accept_operation("op-1")
        with pytest.raises(AlreadyResolvedError) as exc_info:
            store.accept_operation("op-1")
        assert exc_info.value.status == FileOperationStatus.ACCEPTED.value

    def test_accept_all_after_partial_reject(self, store: OperationStagingStore):
        group = store.stage([add("a.txt"), add("b.txt")])[0]
        store.reject_operation("op-1")
        store.accept_all(group.id)
        assert [op.status for op in group.operations] == [FileOperationStatus.REJECTED, FileOperationStatus.ACCEPTED]

    def test_reject_all_then_accept_all_raises(self, store: OperationStagingStore):
        group = store.stage([add("a.txt")])[0]
        store.reject_all(group.id)
        assert group.status == OperationGroupStatus.REJECTED
        assert not store.is_ready_for_apply(group.id)
        with pytest.raises(AlreadyResolvedError):
            store.accept_all(group.id)

    def test_unknown_ids_raise(self, store: OperationStagingStore):
        with pytest.raises(UnknownOperationError):
            store.accept_operation("op-404")
        with pytest.raises(KeyError):
            store.get_group("grp-404")


class TestDiffs:
    def test_add_diff_against_empty(self, store: OperationStagingStore):
        store.stage([add("new.txt", "one\ntwo\n")])
        diff = store.get_diff("op-1")
        assert (diff.added_lines, diff.removed_lines) == (2, 0)
        assert diff.type == FileOperationType.ADD

    def test_update_diff_against_current_content(self, store: OperationStagingStore, fs_manager: FileSystemManager):
        fs_manager.write_file("app.py", "a = 1\nb = 2\n")
        store.stage([FileOperation(type=FileOperationType.UPDATE, path="app.py", content="a = 1\nb = 3\n")])
        diff = store.get_diff("op-1")
        assert (diff.added_lines, diff.removed_lines) == (1, 1)
        assert "+b = 3" in diff.unified_diff

    def test_delete_diff_removes_everything(self, store: OperationStagingStore, fs_manager: FileSystemManager):
        fs_manager.write_file("old.py", "x\ny\nz\n")
        store.stage([FileOperation(type=FileOperationType.DELETE, path="old.py")])
        diff = store.get_diff("op-1")
        assert (diff.added_lines, diff.removed_lines) == (0, 3)

    def test_diff_is_cached(self):
        read_file = MagicMock(return_value="old\n")
        store = OperationStagingStore(IdAllocator(), read_file)
        store.stage([FileOperation(type=FileOperationType.UPDATE, path="f.txt", content="new\n")])
        first = store.get_diff("op-1")
        second = store.get_diff("op-1")
        assert first is second
        read_file.assert_called_once_with("f.txt")

    def test_missing_file_reads_as_empty(self):
        store = OperationStagingStore(IdAllocator(), MagicMock(side_effect=FileNotFoundError("gone")))
        store.stage([FileOperation(type=FileOperationType.UPDATE, path="f.txt", content="new\n")])
        assert store.get_diff("op-1").added_lines == 1


class TestOutcomes:
    def test_mark_applied_requires_accepted(self, store: OperationStagingStore):
        store.stage([add("a.txt")])
        with pytest.raises(AlreadyResolvedError):
            store.mark_applied("op-1")

    def test_archive_only_terminal_groups(self, store: OperationStagingStore):
        group = store.stage([add("a.txt")])[0]
        with pytest.raises(ValueError):
            store.archive(group.id)
        store.accept_all(group.id)
        store.mark_applied("op-1")
        store.archive(group.id)
        with pytest.raises(UnknownOperationError):
            store.get_operation("op-1")

    def test_applied_group_cannot_be_accepted_again(self, store: OperationStagingStore, fs_manager: FileSystemManager):
        group = store.stage([add("a.txt", "one\n"), add("b.txt", "two\n")])[0]
        store.accept_all(group.id)
        TransactionalApplier(fs_manager, store).apply_group(group.id)
        assert group.status == OperationGroupStatus.APPLIED

        with patch.object(fs_manager, "write_file") as write_file, \
             patch.object(fs_manager, "delete_file") as delete_file:
            with pytest.raises(AlreadyResolvedError):
                store.accept_all(group.id)
            with pytest.raises(AlreadyResolvedError):
                store.accept_operation(group.operations[0].id)
            with pytest.raises(AlreadyResolvedError):
                store.reject_all(group.id)

        write_file.assert_not_called()
        delete_file.assert_not_called()
        assert group.status == OperationGroupStatus.APPLIED
        assert fs_manager.read_file("a.txt") == "one\n"
