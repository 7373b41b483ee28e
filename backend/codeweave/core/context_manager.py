# backend/codeweave/core/context_manager.py
import logging
import posixpath
import re
from typing import Dict, List, Optional, Set, Tuple

from .file_system_manager import FileSystemManager
from .operation_extractor import clean_path_token, looks_like_path
from .project_models import ExecutionContext, RetryContext, Task, TaskPlan, TaskResult, TaskType
from .prompts import (
    ANALYSIS_FORMAT_INSTRUCTIONS,
    FILE_FORMAT_INSTRUCTIONS,
    FORMAT_REMINDER,
    NARROW_PROMPT_NOTE,
    TASK_PROMPT,
)

logger = logging.getLogger(__name__)

MAX_LISTING_ENTRIES = 200
MAX_OUTPUT_CHARS_IN_PROMPT = 2000

# Relevance scores for context files; higher is included first.
SCORE_DEPENDENCY_ARTIFACT = 100
SCORE_MENTIONED_IN_TASK = 90
SCORE_PLANNER_REQUESTED = 80
SCORE_OTHER_ARTIFACT = 50

_WORD_REGEX = re.compile(r"[^\s,;()]+")


class WorkspaceIndex:
    """
    The workspace metadata collaborator: which paths exist right now.
    Every call re-lists the workspace, so results reflect the last applied group.
    """
    def __init__(self, file_system_manager: FileSystemManager):
        self.fs = file_system_manager

    def known_paths(self) -> Set[str]:
        return set(self.fs.list_files())

    def listing(self, limit: int = MAX_LISTING_ENTRIES) -> List[str]:
        files = self.fs.list_files()
        if len(files) > limit:
            logger.debug(f"Workspace listing truncated from {len(files)} to {limit} entries.")
        return files[:limit]


class ContextManager:
    """
    Builds the ExecutionContext and the prompt for the running task.

    Candidate files are scored by relevance (outputs of prerequisite tasks first,
    then files named in the task description, then files the planner asked for)
    and added until the file-count or character budget is exhausted.
    """
    def __init__(self, file_system_manager: FileSystemManager, workspace_index: WorkspaceIndex,
                 max_context_chars: int = 25000, max_context_files: int = 20):
        self.fs = file_system_manager
        self.index = workspace_index
        self.max_context_chars = max_context_chars
        self.max_context_files = max_context_files

    def _score_candidates(self, plan: TaskPlan, task: Task, known: Set[str]) -> List[Tuple[int, str]]:
        scores: Dict[str, int] = {}

        def offer(path: str, score: int) -> None:
            if path in known and score > scores.get(path, -1):
                scores[path] = score

        for task_id, result in plan.results.items():
            score = SCORE_DEPENDENCY_ARTIFACT if task_id in task.depends_on else SCORE_OTHER_ARTIFACT
            for path in result.artifacts:
                offer(path, score)
        for token in _WORD_REGEX.findall(task.description):
            token = clean_path_token(token).rstrip(".")
            if looks_like_path(token):
                offer(posixpath.normpath(token.replace("\\", "/")), SCORE_MENTIONED_IN_TASK)
        for path in plan.context_required:
            offer(path.replace("\\", "/"), SCORE_PLANNER_REQUESTED)

        # Stable: equal scores keep insertion order.
        return sorted(((score, path) for path, score in scores.items()), key=lambda item: -item[0])

    def gather_files(self, plan: TaskPlan, task: Task, char_budget: Optional[int] = None) -> Dict[str, str]:
        """Reads the highest-scored candidate files within the context budget."""
        budget = self.max_context_chars if char_budget is None else char_budget
        known = self.index.known_paths()
        files: Dict[str, str] = {}
        used = 0
        for score, path in self._score_candidates(plan, task, known):
            if len(files) >= self.max_context_files:
                break
            try:
                content = self.fs.read_file(path)
            except (FileNotFoundError, RuntimeError, ValueError) as e:
                logger.warning(f"Skipping context file '{path}': {e}")
                continue
            if used + len(content) > budget:
                logger.debug(f"Context budget reached; skipping '{path}' ({len(content)} chars, score {score}).")
                continue
            files[path] = content
            used += len(content)
        logger.debug(f"Gathered {len(files)} context file(s), {used} chars, for task '{task.id}'.")
        return files

    def build_execution_context(self, plan: TaskPlan, task: Task, retry: Optional[RetryContext] = None) -> ExecutionContext:
        char_budget = self.max_context_chars // 2 if retry and retry.narrow_prompt else self.max_context_chars
        return ExecutionContext(
            task_id=task.id,
            goal=plan.goal,
            files=self.gather_files(plan, task, char_budget),
            workspace_listing=self.index.listing(),
            dependency_results={dep: plan.results[dep] for dep in task.depends_on if dep in plan.results},
            retry=retry,
        )

    @staticmethod
    def _format_dependency_result(task_id: str, result: TaskResult) -> str:
        line = f"- {task_id}: {result.message or ('completed' if result.success else 'failed')}"
        if result.artifacts:
            line += f" (files: {', '.join(result.artifacts)})"
        if result.output:
            output = result.output[:MAX_OUTPUT_CHARS_IN_PROMPT]
            line += f"\n  Output:\n{output}"
        return line

    def build_prompt(self, task: Task, context: ExecutionContext) -> str:
        """Renders the task prompt from an ExecutionContext."""
        dependency_results = "\n".join(
            self._format_dependency_result(task_id, result) for task_id, result in context.dependency_results.items()
        ) or "(none)"
        listing = "\n".join(f"- {path}" for path in context.workspace_listing) or "(empty workspace)"
        file_contents = "\n\n".join(
            f"--- File: `{path}` ---\n```\n{content}\n```" for path, content in context.files.items()
        ) or "(none)"

        retry_note = ""
        if context.retry:
            retry_note = f"\n**Note:** Attempt {context.retry.attempt}. The previous attempt failed ({context.retry.failure_kind.value}): {context.retry.failure_message}\n"
            if context.retry.format_reminder:
                retry_note += FORMAT_REMINDER
            if context.retry.narrow_prompt:
                retry_note += NARROW_PROMPT_NOTE

        instructions = ANALYSIS_FORMAT_INSTRUCTIONS if task.type in (TaskType.ANALYSIS, TaskType.OTHER) else FILE_FORMAT_INSTRUCTIONS
        return TASK_PROMPT.format(
            goal=context.goal,
            task_id=task.id,
            task_type=task.type.value,
            task_description=task.description,
            dependency_results=dependency_results,
            workspace_listing=listing,
            file_contents=file_contents,
            retry_note=retry_note,
            format_instructions=instructions,
        )
