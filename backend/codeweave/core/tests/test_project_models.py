# backend/codeweave/core/tests/test_project_models.py
import pytest
from pydantic import ValidationError

from codeweave.core.project_models import (
    FileOperation,
    FileOperationStatus,
    FileOperationType,
    OperationGroup,
    OperationGroupStatus,
    Task,
    TaskPlan,
    TaskPriority,
    TaskStatus,
    TaskType,
)


def _task(task_id: str, depends_on=None) -> Task:
    return Task(id=task_id, type=TaskType.FILE_CREATION, description=f"do {task_id}", depends_on=depends_on or [])


def _op(status: FileOperationStatus) -> FileOperation:
    return FileOperation(id="op", type=FileOperationType.ADD, path="a.txt", content="x", status=status)


class TestTaskLifecycle:
    def test_happy_path(self):
        task = _task("t1")
        for status in (TaskStatus.READY, TaskStatus.RUNNING, TaskStatus.COMPLETED):
            task.transition_to(status)
        assert task.is_terminal

    @pytest.mark.parametrize("start, target", [
        (TaskStatus.READY, TaskStatus.PENDING),
        (TaskStatus.PENDING, TaskStatus.RUNNING),
        (TaskStatus.COMPLETED, TaskStatus.RUNNING),
        (TaskStatus.FAILED, TaskStatus.READY),
        (TaskStatus.RUNNING, TaskStatus.SKIPPED),
    ])
    def test_illegal_transitions_raise(self, start, target):
        task = _task("t1")
        task.status = start
        with pytest.raises(ValueError):
            task.transition_to(target)

    def test_depends_on_alias(self):
        task = Task.model_validate({"id": "t2", "type": "ANALYSIS", "description": "d", "dependsOn": ["t1"]})
        assert task.depends_on == ["t1"]

    def test_priority_rank_orders_high_first(self):
        assert TaskPriority.HIGH.rank < TaskPriority.MEDIUM.rank < TaskPriority.LOW.rank


def test_transitive_dependents_in_declaration_order():
    plan = TaskPlan(id="plan-1", goal="g", tasks=[
        _task("a"),
        _task("b", ["a"]),
        _task("c", ["b"]),
        _task("d"),
        _task("e", ["c", "d"]),
    ])
    assert [t.id for t in plan.transitive_dependents("a")] == ["b", "c", "e"]
    assert [t.id for t in plan.transitive_dependents("d")] == ["e"]
    assert plan.transitive_dependents("e") == []


class TestFileOperation:
    def test_add_requires_content(self):
        with pytest.raises(ValidationError):
            FileOperation(type=FileOperationType.ADD, path="a.txt")

    def test_delete_needs_no_content(self):
        op = FileOperation(type=FileOperationType.DELETE, path="a.txt")
        assert op.content is None
        assert op.status == FileOperationStatus.PROPOSED

    def test_rejected_operation_is_final(self):
        op = _op(FileOperationStatus.REJECTED)
        with pytest.raises(ValueError):
            op.transition_to(FileOperationStatus.ACCEPTED)


class TestOperationGroupStatus:
    @pytest.mark.parametrize("statuses, expected", [
        ([FileOperationStatus.PROPOSED, FileOperationStatus.PROPOSED], OperationGroupStatus.PROPOSED),
        ([FileOperationStatus.ACCEPTED, FileOperationStatus.PROPOSED], OperationGroupStatus.PARTIALLY_RESOLVED),
        ([FileOperationStatus.ACCEPTED, FileOperationStatus.REJECTED], OperationGroupStatus.ACCEPTED),
        ([FileOperationStatus.REJECTED, FileOperationStatus.REJECTED], OperationGroupStatus.REJECTED),
        ([FileOperationStatus.APPLIED, FileOperationStatus.REJECTED], OperationGroupStatus.APPLIED),
        ([FileOperationStatus.APPLIED, FileOperationStatus.ROLLED_BACK], OperationGroupStatus.ROLLED_BACK),
        ([FileOperationStatus.ROLLED_BACK, FileOperationStatus.CONFLICTED], OperationGroupStatus.CONFLICTED),
    ])
    def test_aggregate(self, statuses, expected):
        group = OperationGroup(id="grp-1", operations=[_op(s) for s in statuses])
        assert group.status == expected

    def test_status_is_serialized(self):
        group = OperationGroup(id="grp-1", operations=[_op(FileOperationStatus.PROPOSED)])
        assert group.model_dump()["status"] == OperationGroupStatus.PROPOSED
