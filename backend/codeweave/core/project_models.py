# backend/codeweave/core/project_models.py
import logging
from enum import Enum
from typing import List, Dict, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

logger = logging.getLogger(__name__)


# --- Task Enums ---

class TaskType(str, Enum):
    """The kinds of subtask a plan may contain."""
    FILE_CREATION = "FILE_CREATION"
    FILE_MODIFICATION = "FILE_MODIFICATION"
    ANALYSIS = "ANALYSIS"
    REFACTOR = "REFACTOR"
    OTHER = "OTHER"


# Task types whose response is expected to contain at least one file operation.
FILE_PRODUCING_TASK_TYPES: Set[TaskType] = {
    TaskType.FILE_CREATION,
    TaskType.FILE_MODIFICATION,
    TaskType.REFACTOR,
}


class TaskPriority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """Sort key: lower rank is scheduled first."""
        return {"HIGH": 0, "MEDIUM": 1, "LOW": 2}[self.value]


class TaskStatus(str, Enum):
    """
    Lifecycle of a task inside a plan. Transitions are monotonic; see TASK_TRANSITIONS.
    """
    PENDING = "PENDING"        # Waiting for dependencies.
    READY = "READY"            # Every dependency is Completed.
    RUNNING = "RUNNING"        # The single in-flight task of the plan.
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"        # A transitive dependency failed, or the plan was cancelled.


TASK_TRANSITIONS: Dict[TaskStatus, Set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.READY, TaskStatus.SKIPPED},
    TaskStatus.READY: {TaskStatus.RUNNING, TaskStatus.SKIPPED},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.SKIPPED: set(),
}

TERMINAL_TASK_STATUSES: Set[TaskStatus] = {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED}


# --- Failure classification ---

class ErrorKind(str, Enum):
    """Normalized kind of a stage failure, reported in diagnostics."""
    PROVIDER = "provider_error"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    EXTRACTION = "extraction"
    PLANNING = "planning"
    VALIDATION = "validation"
    SECURITY = "security"
    APPLY = "apply"
    CONFLICT = "conflict"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    FAIL = "fail"


# --- Results ---

class TaskResult(BaseModel):
    """Outcome of one task execution, kept on the plan for prompts and the final report."""
    success: bool
    message: str = ""
    operation_ids: List[str] = Field(default_factory=list)
    artifacts: List[str] = Field(default_factory=list)  # Workspace paths written by the task.
    output: Optional[str] = None                         # Raw collaborator response (analysis tasks).
    error_kind: Optional[ErrorKind] = None


class Task(BaseModel):
    """
    A single subtask of a TaskPlan. Only `status` (and the retry counter) changes
    after the plan has been validated.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: TaskType
    description: str
    priority: TaskPriority = TaskPriority.MEDIUM
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    status: TaskStatus = TaskStatus.PENDING
    declaration_index: int = 0  # Position in the planner response, used to break priority ties.
    attempts: int = 0           # Number of executions started (monotonic).

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @property
    def produces_files(self) -> bool:
        return self.type in FILE_PRODUCING_TASK_TYPES

    def transition_to(self, new_status: TaskStatus) -> None:
        """
        Moves the task to `new_status`, enforcing the monotonic lifecycle.

        Raises:
            ValueError: If the transition is not allowed (e.g. re-entering PENDING).
        """
        if new_status not in TASK_TRANSITIONS[self.status]:
            raise ValueError(f"Illegal task transition for '{self.id}': {self.status.value} -> {new_status.value}")
        logger.debug(f"Task '{self.id}': {self.status.value} -> {new_status.value}")
        self.status = new_status


class TaskPlan(BaseModel):
    """A validated, acyclic set of subtasks derived from one user request."""
    id: str
    goal: str
    original_request: str = ""
    tasks: List[Task] = Field(default_factory=list)
    context_required: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    results: Dict[str, TaskResult] = Field(default_factory=dict)

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def direct_dependents(self, task_id: str) -> List[Task]:
        return [task for task in self.tasks if task_id in task.depends_on]

    def transitive_dependents(self, task_id: str) -> List[Task]:
        """Returns every task that depends on `task_id` directly or indirectly, in declaration order."""
        found: Set[str] = set()
        frontier = [task_id]
        while frontier:
            current = frontier.pop()
            for dependent in self.direct_dependents(current):
                if dependent.id not in found:
                    found.add(dependent.id)
                    frontier.append(dependent.id)
        return [task for task in self.tasks if task.id in found]

    @property
    def is_finished(self) -> bool:
        return all(task.is_terminal for task in self.tasks)


# --- File operations ---

class FileOperationType(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class FileOperationStatus(str, Enum):
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    CONFLICTED = "conflicted"


OPERATION_TRANSITIONS: Dict[FileOperationStatus, Set[FileOperationStatus]] = {
    FileOperationStatus.PROPOSED: {FileOperationStatus.ACCEPTED, FileOperationStatus.REJECTED},
    FileOperationStatus.ACCEPTED: {FileOperationStatus.APPLIED, FileOperationStatus.ROLLED_BACK, FileOperationStatus.CONFLICTED},
    # An applied operation is only revisited by a compensating rollback of its group.
    FileOperationStatus.APPLIED: {FileOperationStatus.ROLLED_BACK, FileOperationStatus.CONFLICTED},
    FileOperationStatus.REJECTED: set(),
    FileOperationStatus.ROLLED_BACK: set(),
    FileOperationStatus.CONFLICTED: set(),
}


class FileOperation(BaseModel):
    """
    A single proposed change to one workspace file. Created by the extractor
    (without ids); ids and the group id are assigned by the staging store.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    type: FileOperationType
    path: str                                   # Workspace-relative, '/'-separated, normalized.
    content: Optional[str] = None
    group_id: Optional[str] = Field(default=None, alias="groupId")
    status: FileOperationStatus = FileOperationStatus.PROPOSED
    task_id: Optional[str] = None
    source_format: Optional[str] = None         # Name of the matcher that produced it.
    group_hint: Optional[str] = None            # Explicit grouping signal found in the response.
    description: Optional[str] = None
    base_hash: Optional[str] = None             # SHA-256 of the target when staged; None if it did not exist.

    @model_validator(mode='after')
    def check_content(self) -> 'FileOperation':
        """Add and Update operations must carry the full new content."""
        if self.type != FileOperationType.DELETE and self.content is None:
            raise ValueError(f"{self.type.value} operation for '{self.path}' requires content.")
        return self

    def transition_to(self, new_status: FileOperationStatus) -> None:
        if new_status not in OPERATION_TRANSITIONS[self.status]:
            raise ValueError(f"Illegal operation transition for '{self.id}': {self.status.value} -> {new_status.value}")
        self.status = new_status


class OperationGroupStatus(str, Enum):
    PROPOSED = "proposed"
    PARTIALLY_RESOLVED = "partially_resolved"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    CONFLICTED = "conflicted"


TERMINAL_GROUP_STATUSES: Set[OperationGroupStatus] = {
    OperationGroupStatus.REJECTED,
    OperationGroupStatus.APPLIED,
    OperationGroupStatus.ROLLED_BACK,
    OperationGroupStatus.CONFLICTED,
}


class OperationGroup(BaseModel):
    """The atomic unit of approval and application for a batch of related file operations."""
    id: str
    description: str = ""
    task_id: Optional[str] = None
    plan_id: Optional[str] = None
    operations: List[FileOperation] = Field(default_factory=list)

    @computed_field  # type: ignore[misc]
    @property
    def status(self) -> OperationGroupStatus:
        """Aggregate of the operation statuses."""
        statuses = [op.status for op in self.operations]
        if not statuses:
            return OperationGroupStatus.REJECTED
        if FileOperationStatus.CONFLICTED in statuses:
            return OperationGroupStatus.CONFLICTED
        if FileOperationStatus.ROLLED_BACK in statuses:
            return OperationGroupStatus.ROLLED_BACK
        if FileOperationStatus.APPLIED in statuses:
            return OperationGroupStatus.APPLIED
        proposed = statuses.count(FileOperationStatus.PROPOSED)
        if proposed == len(statuses):
            return OperationGroupStatus.PROPOSED
        if proposed:
            return OperationGroupStatus.PARTIALLY_RESOLVED
        if FileOperationStatus.ACCEPTED in statuses:
            return OperationGroupStatus.ACCEPTED
        return OperationGroupStatus.REJECTED

    @property
    def accepted_operations(self) -> List[FileOperation]:
        return [op for op in self.operations if op.status == FileOperationStatus.ACCEPTED]

    @property
    def proposed_operations(self) -> List[FileOperation]:
        return [op for op in self.operations if op.status == FileOperationStatus.PROPOSED]


# --- Extraction / diff records ---

class ExtractionDiagnostic(BaseModel):
    """Why a response fragment was dropped."""
    fragment_kind: str
    reason: str
    excerpt: str = ""
    path: Optional[str] = None


class ExtractionResult(BaseModel):
    operations: List[FileOperation] = Field(default_factory=list)
    diagnostics: List[ExtractionDiagnostic] = Field(default_factory=list)


class DiffChunk(BaseModel):
    """One run of lines, shaped like the `diffLines` chunks shown by the approval UI."""
    added: bool = False
    removed: bool = False
    value: str


class OperationDiff(BaseModel):
    operation_id: str
    path: str
    type: FileOperationType
    unified_diff: str = ""
    chunks: List[DiffChunk] = Field(default_factory=list)
    added_lines: int = 0
    removed_lines: int = 0


class ApplyResult(BaseModel):
    group_id: str
    status: OperationGroupStatus
    applied_paths: List[str] = Field(default_factory=list)
    rolled_back_paths: List[str] = Field(default_factory=list)
    conflicted_paths: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def requires_manual_resolution(self) -> bool:
        return self.status == OperationGroupStatus.CONFLICTED


# --- Recovery ---

class RetryContext(BaseModel):
    """Adjustments applied to the next attempt of a task after a transient failure."""
    attempt: int
    failure_kind: ErrorKind
    failure_message: str = ""
    narrow_prompt: bool = False
    format_reminder: bool = False
    extraction_order: Optional[List[str]] = None


class ErrorDiagnostic(BaseModel):
    kind: ErrorKind
    message: str


class RecoveryDecision(BaseModel):
    action: RecoveryAction
    failure_class: FailureClass
    diagnostic: ErrorDiagnostic
    attempt: int = 0
    max_retries: int = 0
    delay_seconds: float = 0.0
    retry_context: Optional[RetryContext] = None


# --- Execution context ---

class ExecutionContext(BaseModel):
    """
    Ephemeral bundle used to build the prompt for the running task.
    Discarded as soon as the task leaves RUNNING.
    """
    task_id: str
    goal: str
    files: Dict[str, str] = Field(default_factory=dict)          # path -> content
    workspace_listing: List[str] = Field(default_factory=list)
    dependency_results: Dict[str, TaskResult] = Field(default_factory=dict)
    retry: Optional[RetryContext] = None


# --- Reports ---

class FailedTaskReport(BaseModel):
    task_id: str
    description: str
    error_kind: ErrorKind
    error: str


class ConflictReport(BaseModel):
    group_id: str
    task_id: Optional[str] = None
    paths: List[str] = Field(default_factory=list)
    message: str = "Rollback failed partway; these files require manual resolution."


class PlanReport(BaseModel):
    plan_id: str
    goal: str
    status: str  # COMPLETED | PARTIALLY_COMPLETED | FAILED | CANCELLED
    task_statuses: Dict[str, TaskStatus] = Field(default_factory=dict)
    execution_order: List[str] = Field(default_factory=list)
    failed_tasks: List[FailedTaskReport] = Field(default_factory=list)
    conflicted_groups: List[ConflictReport] = Field(default_factory=list)
    modified_files: List[str] = Field(default_factory=list)
    summary: str = ""
