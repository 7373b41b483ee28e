# backend/codeweave/core/orchestrator.py
import asyncio
import dataclasses
import logging
from pathlib import Path
from typing import Dict, Optional

from .approval import ApprovalGateway, AutoApproveGateway
from .config_manager import ConfigManager, OrchestratorSettings
from .context_manager import ContextManager, WorkspaceIndex
from .dependency_scheduler import DependencyScheduler, ProgressCallback
from .error_recovery import ErrorRecoveryController
from .file_system_manager import FileSystemManager
from .llm_client import BaseChatClient, LlmClient
from .openai_client import OpenAIClient
from .operation_extractor import FileOperationExtractor
from .project_models import TERMINAL_GROUP_STATUSES, OperationGroupStatus, PlanReport, TaskPlan
from .staging_store import IdAllocator, OperationStagingStore
from .task_planner import TaskPlanner
from .transactional_applier import TransactionalApplier

logger = logging.getLogger(__name__)


def create_collaborator(settings: OrchestratorSettings, config_manager: ConfigManager) -> BaseChatClient:
    """
    Builds the AI collaborator adapter for the configured provider.

    Raises:
        ValueError: If the provider's API key is not set.
    """
    api_key = config_manager.get_api_key(settings.provider)
    if settings.provider == "openai":
        return OpenAIClient(api_key=api_key, model=settings.resolved_model, api_base=settings.resolved_api_base)
    return LlmClient(api_key=api_key, model=settings.resolved_model, api_base=settings.resolved_api_base)


@dataclasses.dataclass
class OrchestratorServices:
    """
    Every collaborator a plan needs, passed around explicitly. The IdAllocator
    may be shared between several service bundles.
    """
    settings: OrchestratorSettings
    file_system: FileSystemManager
    workspace_index: WorkspaceIndex
    collaborator: BaseChatClient
    id_allocator: IdAllocator
    extractor: FileOperationExtractor
    staging_store: OperationStagingStore
    applier: TransactionalApplier
    recovery: ErrorRecoveryController
    context_manager: ContextManager
    approval_gateway: ApprovalGateway

    @classmethod
    def create(cls, workspace_root: str | Path, collaborator: BaseChatClient,
               settings: Optional[OrchestratorSettings] = None,
               approval_gateway: Optional[ApprovalGateway] = None,
               id_allocator: Optional[IdAllocator] = None) -> "OrchestratorServices":
        settings = settings or OrchestratorSettings()
        file_system = FileSystemManager(workspace_root)
        index = WorkspaceIndex(file_system)
        allocator = id_allocator or IdAllocator()
        store = OperationStagingStore(allocator, file_system.read_file, settings.split_groups_by_directory,
                                      hash_file=file_system.get_file_hash)
        return cls(
            settings=settings,
            file_system=file_system,
            workspace_index=index,
            collaborator=collaborator,
            id_allocator=allocator,
            extractor=FileOperationExtractor(settings.extraction_order, workspace_root=file_system.workspace_root),
            staging_store=store,
            applier=TransactionalApplier(file_system, store),
            recovery=ErrorRecoveryController(settings.max_task_retries, settings.retry_delay_seconds, settings.extraction_order),
            context_manager=ContextManager(file_system, index, settings.max_context_chars, settings.max_context_files),
            approval_gateway=approval_gateway or AutoApproveGateway(),
        )


class CodingOrchestrator:
    """
    Top-level entry point: plans a request, runs the plan and reports the outcome.
    Concurrent `handle_request` calls are independent plans.
    """
    def __init__(self, services: OrchestratorServices, progress_callback: Optional[ProgressCallback] = None):
        self.services = services
        self.progress_callback = progress_callback
        self.planner = TaskPlanner(
            services.collaborator,
            services.id_allocator,
            temperature=services.settings.planner_temperature,
            timeout_seconds=services.settings.task_timeout_seconds,
        )
        self._cancel_events: Dict[str, asyncio.Event] = {}

    def _create_scheduler(self) -> DependencyScheduler:
        s = self.services
        return DependencyScheduler(
            collaborator=s.collaborator,
            extractor=s.extractor,
            staging_store=s.staging_store,
            applier=s.applier,
            recovery=s.recovery,
            context_manager=s.context_manager,
            workspace_index=s.workspace_index,
            approval_gateway=s.approval_gateway,
            task_timeout_seconds=s.settings.task_timeout_seconds,
            task_temperature=s.settings.task_temperature,
            progress_callback=self.progress_callback,
        )

    async def handle_request(self, request: str, seed_context: str = "") -> PlanReport:
        """
        Plans and executes one request.

        Raises:
            PlanningError: If the plan is invalid (CyclicDependencyError for cycles). Nothing is executed.
            ProviderError: If the planning call fails.
            TaskTimeoutError: If the planning call times out.
        """
        plan = await self.planner.create_plan(request, self.services.workspace_index.listing(), seed_context)
        cancel_event = asyncio.Event()
        self._cancel_events[plan.id] = cancel_event
        try:
            report = await self._create_scheduler().run(plan, cancel_event)
        finally:
            self._cancel_events.pop(plan.id, None)
        self._archive_finished_groups(plan)
        return report

    def _archive_finished_groups(self, plan: TaskPlan) -> None:
        """Drops the plan's terminal groups from the store; Conflicted groups stay for manual resolution."""
        store = self.services.staging_store
        for task in plan.tasks:
            for group in store.groups_for_task(task.id, plan.id):
                if group.status in TERMINAL_GROUP_STATUSES and group.status != OperationGroupStatus.CONFLICTED:
                    store.archive(group.id)

    @property
    def active_plan_ids(self):
        return list(self._cancel_events)

    def cancel(self, plan_id: Optional[str] = None) -> bool:
        """
        Requests cancellation of one running plan, or of every running plan when
        `plan_id` is None. Takes effect at the next task boundary.

        Returns:
            True if at least one plan was signalled.
        """
        targets = [plan_id] if plan_id else list(self._cancel_events)
        signalled = False
        for pid in targets:
            event = self._cancel_events.get(pid)
            if event is not None:
                event.set()
                signalled = True
                logger.info(f"Cancellation requested for plan '{pid}'.")
        return signalled
