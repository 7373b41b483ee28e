# backend/codeweave/core/dependency_scheduler.py
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .approval import ApprovalGateway, ReviewActions
from .context_manager import ContextManager, WorkspaceIndex
from .error_recovery import ErrorRecoveryController
from .exceptions import ExtractionError, GroupRejectedError, PlanCancelledError, TaskTimeoutError
from .operation_extractor import FileOperationExtractor
from .project_models import (
    ConflictReport,
    ErrorKind,
    FailedTaskReport,
    FileOperationStatus,
    OperationGroup,
    OperationGroupStatus,
    PlanReport,
    RecoveryAction,
    RetryContext,
    Task,
    TaskPlan,
    TaskResult,
    TaskStatus,
)
from .prompts import TASK_SYSTEM_PROMPT
from .staging_store import OperationStagingStore
from .transactional_applier import TransactionalApplier

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], None]  # func(progress_data: Dict)

PLAN_COMPLETED = "COMPLETED"
PLAN_PARTIALLY_COMPLETED = "PARTIALLY_COMPLETED"
PLAN_FAILED = "FAILED"
PLAN_CANCELLED = "CANCELLED"


class DependencyScheduler:
    """
    Walks a validated TaskPlan one task at a time.

    A task becomes Ready only once every dependency is Completed. Among Ready
    tasks the highest priority wins, ties broken by declaration order. A failed
    task skips all of its transitive dependents without running them.

    Each task runs the pipeline: build context -> call the collaborator (under a
    timeout) -> extract operations -> stage -> review -> apply. Failures from any
    stage go through the ErrorRecoveryController, which either retries the task
    with an adjusted context or fails it.
    """
    def __init__(self,
                 collaborator,
                 extractor: FileOperationExtractor,
                 staging_store: OperationStagingStore,
                 applier: TransactionalApplier,
                 recovery: ErrorRecoveryController,
                 context_manager: ContextManager,
                 workspace_index: WorkspaceIndex,
                 approval_gateway: ApprovalGateway,
                 task_timeout_seconds: float = 300,
                 task_temperature: float = 0.4,
                 progress_callback: Optional[ProgressCallback] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.collaborator = collaborator
        self.extractor = extractor
        self.store = staging_store
        self.applier = applier
        self.recovery = recovery
        self.context_manager = context_manager
        self.workspace_index = workspace_index
        self.approval_gateway = approval_gateway
        self.task_timeout_seconds = task_timeout_seconds
        self.task_temperature = task_temperature
        self.progress_callback = progress_callback
        self._sleep = sleep

    # --- State machine helpers ---

    def _notify(self, task: Task, message: str = "") -> None:
        if self.progress_callback:
            self.progress_callback({"task_id": task.id, "status": task.status.value, "message": message})

    def _transition(self, task: Task, new_status: TaskStatus, message: str = "") -> None:
        task.transition_to(new_status)
        logger.info(f"Task '{task.id}' -> {new_status.value}{': ' + message if message else ''}")
        self._notify(task, message)

    def promote_ready(self, plan: TaskPlan) -> List[Task]:
        """Moves every Pending task whose dependencies are all Completed to Ready."""
        promoted = []
        for task in plan.tasks:
            if task.status != TaskStatus.PENDING:
                continue
            if all(plan.get_task(dep).status == TaskStatus.COMPLETED for dep in task.depends_on):
                self._transition(task, TaskStatus.READY)
                promoted.append(task)
        return promoted

    @staticmethod
    def select_next(plan: TaskPlan) -> Optional[Task]:
        """Highest-priority Ready task; ties broken by declaration order."""
        ready = [task for task in plan.tasks if task.status == TaskStatus.READY]
        if not ready:
            return None
        return min(ready, key=lambda t: (t.priority.rank, t.declaration_index))

    def _skip(self, plan: TaskPlan, task: Task, reason: str) -> None:
        self._transition(task, TaskStatus.SKIPPED, reason)
        plan.results[task.id] = TaskResult(success=False, message=reason)

    def skip_dependents(self, plan: TaskPlan, failed_task: Task) -> List[str]:
        skipped = []
        for dependent in plan.transitive_dependents(failed_task.id):
            if not dependent.is_terminal:
                self._skip(plan, dependent, f"Dependency '{failed_task.id}' did not complete.")
                skipped.append(dependent.id)
        return skipped

    # --- Plan loop ---

    async def run(self, plan: TaskPlan, cancel_event: Optional[asyncio.Event] = None) -> PlanReport:
        """
        Executes the plan until no task is Pending, Ready or Running.

        Args:
            plan: A validated plan with every task Pending.
            cancel_event: Plan-scoped cancellation flag, checked at task boundaries.

        Returns:
            The PlanReport.
        """
        execution_order: List[str] = []
        cancelled = False
        logger.info(f"Starting plan '{plan.id}' ({len(plan.tasks)} task(s)): {plan.goal}")
        self.promote_ready(plan)

        while True:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            task = self.select_next(plan)
            if task is None:
                break

            self._transition(task, TaskStatus.RUNNING)
            execution_order.append(task.id)
            result = await self.execute_task(plan, task, cancel_event)
            plan.results[task.id] = result

            if result.success:
                self._transition(task, TaskStatus.COMPLETED, result.message)
                self.promote_ready(plan)
            else:
                self._transition(task, TaskStatus.FAILED, result.message)
                self.skip_dependents(plan, task)
                if result.error_kind == ErrorKind.CANCELLED:
                    cancelled = True
                    break

        for task in plan.tasks:
            if not task.is_terminal:
                reason = "Plan cancelled." if cancelled else "Never became ready."
                if not cancelled:
                    logger.warning(f"Task '{task.id}' left {task.status.value} at end of plan; skipping.")
                self._skip(plan, task, reason)

        report = self.build_report(plan, execution_order, cancelled)
        logger.info(f"Plan '{plan.id}' finished: {report.status}")
        return report

    # --- Task pipeline ---

    async def execute_task(self, plan: TaskPlan, task: Task, cancel_event: Optional[asyncio.Event] = None) -> TaskResult:
        """Runs one task to a terminal result, retrying transient failures as decided by the recovery controller."""
        retry: Optional[RetryContext] = None
        while True:
            task.attempts += 1
            try:
                return await self._attempt(plan, task, retry, cancel_event)
            except Exception as e:
                decision = self.recovery.decide(task, e)
                if decision.action == RecoveryAction.RETRY:
                    self._notify(task, f"Retrying after {decision.diagnostic.kind.value}: {decision.diagnostic.message}")
                    if decision.delay_seconds > 0:
                        await self._sleep(decision.delay_seconds)
                    retry = decision.retry_context
                    continue
                return TaskResult(success=False, message=decision.diagnostic.message, error_kind=decision.diagnostic.kind)

    async def _generate(self, task: Task, prompt: str, generation_context: Dict[str, Any],
                        cancel_event: Optional[asyncio.Event]) -> str:
        """
        Awaits the collaborator, bounded by the task timeout and raced against the
        plan's cancel event. Whichever loses is cancelled.

        Raises:
            TaskTimeoutError: If no response arrived within `task_timeout_seconds`.
            PlanCancelledError: If the plan was cancelled while waiting.
        """
        generation = asyncio.ensure_future(self.collaborator.generate(prompt, generation_context))
        waiters = {generation}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(waiters, timeout=self.task_timeout_seconds,
                                         return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        if generation in done:
            return generation.result()
        if cancel_waiter is not None and cancel_waiter in done:
            logger.info(f"Task '{task.id}': collaborator call cancelled with the plan.")
            raise PlanCancelledError(f"Plan cancelled while task '{task.id}' was running; its result was discarded.")
        raise TaskTimeoutError(f"Task '{task.id}' exceeded {self.task_timeout_seconds}s.", self.task_timeout_seconds)

    async def _attempt(self, plan: TaskPlan, task: Task, retry: Optional[RetryContext],
                       cancel_event: Optional[asyncio.Event]) -> TaskResult:
        if retry is not None and cancel_event is not None and cancel_event.is_set():
            raise PlanCancelledError(f"Plan cancelled before retrying task '{task.id}'.")
        context = self.context_manager.build_execution_context(plan, task, retry)
        prompt = self.context_manager.build_prompt(task, context)
        generation_context = {"system_prompt": TASK_SYSTEM_PROMPT, "temperature": self.task_temperature, "task_id": task.id}

        logger.info(f"Task '{task.id}' attempt {task.attempts}: requesting collaborator response.")
        response = await self._generate(task, prompt, generation_context, cancel_event)
        if cancel_event is not None and cancel_event.is_set():
            raise PlanCancelledError(f"Plan cancelled while task '{task.id}' was running; its result was discarded.")

        extraction_order = retry.extraction_order if retry and retry.extraction_order else None
        extraction = self.extractor.extract(response, self.workspace_index.known_paths(), extraction_order)
        for diagnostic in extraction.diagnostics:
            logger.debug(f"Task '{task.id}' extraction diagnostic: {diagnostic.reason} [{diagnostic.excerpt}]")

        if not extraction.operations:
            if task.produces_files:
                raise ExtractionError(f"No file operations could be extracted for task '{task.id}'.", fragment=response[:200])
            return TaskResult(success=True, message="Completed without file changes.", output=response)

        groups = self.store.stage(extraction.operations, task_id=task.id, description=task.description, plan_id=plan.id)
        applied_paths, operation_ids = await self._review_and_apply(task, groups)
        return TaskResult(
            success=True,
            message=f"Applied {len(operation_ids)} file operation(s).",
            operation_ids=operation_ids,
            artifacts=applied_paths,
            output=None if task.produces_files else response,
        )

    async def _review_and_apply(self, task: Task, groups: List[OperationGroup]) -> Tuple[List[str], List[str]]:
        """
        Sends each group to the approval gateway, then applies the accepted ones in order.

        Raises:
            GroupRejectedError: If every group of the task was rejected.
            ApplyError: If a group could not be applied (it has been rolled back, or is Conflicted).
        """
        try:
            actions = ReviewActions(self.store)
            for group in groups:
                await self.approval_gateway.review(group, self.store.get_group_diffs(group.id), actions)
                for operation in self.store.get_group(group.id).proposed_operations:
                    self.store.reject_operation(operation.id)

            to_apply = [g for g in groups if g.status == OperationGroupStatus.ACCEPTED]
            if not to_apply:
                raise GroupRejectedError(f"All proposed changes for task '{task.id}' were rejected.", [g.id for g in groups])

            applied_paths: List[str] = []
            operation_ids: List[str] = []
            for group in to_apply:
                result = self.applier.apply_group(group.id)
                self.applier.raise_for_result(result)
                applied_paths.extend(p for p in result.applied_paths if p not in applied_paths)
                operation_ids.extend(op.id for op in group.operations if op.status == FileOperationStatus.APPLIED)
            return applied_paths, operation_ids
        except Exception:
            self._discard_unapplied(task, groups)
            raise

    def _discard_unapplied(self, task: Task, groups: List[OperationGroup]) -> None:
        """Closes this attempt's groups that will never be applied, so a retry does not leave them open."""
        for group in groups:
            for operation in group.operations:
                if operation.status == FileOperationStatus.PROPOSED:
                    self.store.reject_operation(operation.id)
                elif operation.status == FileOperationStatus.ACCEPTED:
                    self.store.mark_rolled_back(operation.id)
            logger.debug(f"Task '{task.id}': group '{group.id}' closed as {group.status.value}.")

    # --- Reporting ---

    def build_report(self, plan: TaskPlan, execution_order: List[str], cancelled: bool = False) -> PlanReport:
        failed: List[FailedTaskReport] = []
        conflicts: List[ConflictReport] = []
        modified: List[str] = []
        for task in plan.tasks:
            result = plan.results.get(task.id)
            if task.status == TaskStatus.FAILED and result is not None:
                failed.append(FailedTaskReport(
                    task_id=task.id,
                    description=task.description,
                    error_kind=result.error_kind or ErrorKind.UNKNOWN,
                    error=result.message,
                ))
            for group in self.store.groups_for_task(task.id, plan.id):
                if group.status == OperationGroupStatus.APPLIED:
                    modified.extend(op.path for op in group.operations if op.status == FileOperationStatus.APPLIED and op.path not in modified)
                elif group.status == OperationGroupStatus.CONFLICTED:
                    conflicts.append(ConflictReport(
                        group_id=group.id,
                        task_id=task.id,
                        paths=[op.path for op in group.operations if op.status == FileOperationStatus.CONFLICTED],
                    ))

        completed = [t for t in plan.tasks if t.status == TaskStatus.COMPLETED]
        if cancelled:
            status = PLAN_CANCELLED
        elif len(completed) == len(plan.tasks):
            status = PLAN_COMPLETED
        elif completed:
            status = PLAN_PARTIALLY_COMPLETED
        else:
            status = PLAN_FAILED

        lines = [
            f"Plan: {plan.goal}",
            f"Status: {status}",
            f"Completed {len(completed)}/{len(plan.tasks)} tasks",
        ]
        if modified:
            lines.append("Modified files:")
            lines.extend(f"- {path}" for path in modified)
        if failed:
            lines.append("Failed tasks:")
            lines.extend(f"- {f.task_id}: {f.description} ({f.error_kind.value}: {f.error})" for f in failed)
        skipped = [t.id for t in plan.tasks if t.status == TaskStatus.SKIPPED]
        if skipped:
            lines.append(f"Skipped tasks: {', '.join(skipped)}")
        if conflicts:
            lines.append("Manual resolution required:")
            lines.extend(f"- group {c.group_id}: {', '.join(c.paths)}" for c in conflicts)

        return PlanReport(
            plan_id=plan.id,
            goal=plan.goal,
            status=status,
            task_statuses={t.id: t.status for t in plan.tasks},
            execution_order=execution_order,
            failed_tasks=failed,
            conflicted_groups=conflicts,
            modified_files=modified,
            summary="\n".join(lines),
        )
