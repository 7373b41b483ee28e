# backend/codeweave/core/task_planner.py
import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from json_repair import repair_json

from .exceptions import CyclicDependencyError, PlanningError, TaskTimeoutError
from .project_models import Task, TaskPlan, TaskPriority, TaskType
from .prompts import PLANNER_REQUEST_PROMPT, PLANNER_SYSTEM_PROMPT
from .staging_store import IdAllocator

logger = logging.getLogger(__name__)

# Type names the collaborator commonly uses instead of the enumerated ones.
TASK_TYPE_SYNONYMS: Dict[str, TaskType] = {
    "CODE_GENERATION": TaskType.FILE_CREATION,
    "CREATE": TaskType.FILE_CREATION,
    "FILE_CREATE": TaskType.FILE_CREATION,
    "CODE_MODIFICATION": TaskType.FILE_MODIFICATION,
    "MODIFY": TaskType.FILE_MODIFICATION,
    "FILE_UPDATE": TaskType.FILE_MODIFICATION,
    "CODE_ANALYSIS": TaskType.ANALYSIS,
    "REFACTORING": TaskType.REFACTOR,
    "TEST_GENERATION": TaskType.OTHER,
    "DOCUMENTATION": TaskType.OTHER,
    "EXPLANATION": TaskType.OTHER,
}

_JSON_FENCE_REGEX = re.compile(r"```(?:json)?\s*(\{.*?\}|\[.*?\])\s*```", re.DOTALL | re.IGNORECASE)


def extract_json_payload(response_text: str) -> Any:
    """
    Locates and parses the JSON document in a planner response.

    Looks for a ```json fence first, then for the outermost {...} span, and
    falls back to json_repair when the JSON is malformed.

    Raises:
        PlanningError: If nothing parseable is found.
    """
    text = (response_text or "").strip()
    if not text:
        raise PlanningError("Planner response was empty.")

    fence = _JSON_FENCE_REGEX.search(text)
    if fence:
        candidate = fence.group(1)
    else:
        starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
        start = min(starts) if starts else -1
        end = text.rfind("]" if start >= 0 and text[start] == "[" else "}")
        candidate = text[start:end + 1] if 0 <= start < end else text

    try:
        return json.loads(candidate, strict=False)
    except json.JSONDecodeError:
        logger.warning("Planner JSON decode failed, attempting repair.")
    try:
        repaired = repair_json(candidate)
        data = json.loads(repaired) if isinstance(repaired, str) else repaired
    except (ValueError, TypeError) as e:
        raise PlanningError(f"Planner response is not valid JSON: {e}") from e
    if data in ("", None, {}, []):
        raise PlanningError("Planner response did not contain a JSON plan.")
    logger.info("Repaired malformed planner JSON.")
    return data


def _coerce_task_type(raw: Any, task_id: str) -> TaskType:
    if not isinstance(raw, str) or not raw.strip():
        raise PlanningError(f"Task '{task_id}' has no type.")
    key = raw.strip().upper().replace("-", "_").replace(" ", "_")
    if key in TaskType.__members__:
        return TaskType[key]
    if key in TASK_TYPE_SYNONYMS:
        return TASK_TYPE_SYNONYMS[key]
    raise PlanningError(f"Task '{task_id}' has unknown type '{raw}'. Allowed: {[t.value for t in TaskType]}")


def _coerce_priority(raw: Any, task_id: str) -> TaskPriority:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return TaskPriority.MEDIUM
    key = str(raw).strip().upper()
    if key in TaskPriority.__members__:
        return TaskPriority[key]
    logger.warning(f"Task '{task_id}' has unknown priority '{raw}'; using MEDIUM.")
    return TaskPriority.MEDIUM


def _coerce_dependencies(raw: Any, task_id: str) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, (str, int)):
        raw = [raw]
    if not isinstance(raw, list):
        raise PlanningError(f"Task '{task_id}' has malformed dependencies: {raw!r}")
    deps: List[str] = []
    for dep in raw:
        if not isinstance(dep, (str, int)) or not str(dep).strip():
            raise PlanningError(f"Task '{task_id}' has a malformed dependency entry: {dep!r}")
        if str(dep).strip() not in deps:
            deps.append(str(dep).strip())
    return deps


def _string_list(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return [raw] if raw.strip() else []
    if not isinstance(raw, list):
        return []
    return [str(item) for item in raw if isinstance(item, (str, int))]


def find_cycle(tasks: Sequence[Task]) -> Optional[List[str]]:
    """
    Depth-first search with recursion-stack marking over the `depends_on` edges.
    Iterative; chain length is not bounded by the recursion limit.

    Returns:
        The first cycle found as a list of ids with the start id repeated at the
        end (e.g. ["task1", "task2", "task1"]), or None if the graph is acyclic.
    """
    graph = {task.id: task.depends_on for task in tasks}
    visited: set = set()

    for task in tasks:
        if task.id in visited:
            continue
        visited.add(task.id)
        path: List[str] = [task.id]
        on_stack = {task.id}
        pending = [iter(graph.get(task.id, []))]
        while pending:
            dep = next(pending[-1], None)
            if dep is None:
                pending.pop()
                on_stack.discard(path.pop())
                continue
            if dep in on_stack:
                return path[path.index(dep):] + [dep]
            if dep not in visited:
                visited.add(dep)
                on_stack.add(dep)
                path.append(dep)
                pending.append(iter(graph.get(dep, [])))
    return None


class TaskPlanner:
    """
    Turns a natural-language request into a validated, acyclic TaskPlan.

    The collaborator is asked once for a decomposition; its output is treated as
    untrusted input and validated before any task is scheduled.
    """
    def __init__(self, collaborator, id_allocator: IdAllocator, temperature: float = 0.2,
                 timeout_seconds: Optional[float] = None):
        """
        Args:
            collaborator: AI collaborator exposing `async generate(prompt, context) -> str`.
            id_allocator: Source of plan ids.
            temperature: Sampling temperature for the planning call.
            timeout_seconds: Optional time budget for the planning call.
        """
        self.collaborator = collaborator
        self.id_allocator = id_allocator
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds

    def build_prompt(self, request: str, workspace_listing: Sequence[str] = (), seed_context: str = "") -> str:
        listing = "\n".join(f"- {path}" for path in workspace_listing) or "(empty workspace)"
        seed = f"**Additional Context:**\n{seed_context}" if seed_context else ""
        return PLANNER_REQUEST_PROMPT.format(user_request=request, workspace_listing=listing, seed_context=seed)

    async def create_plan(self, request: str, workspace_listing: Sequence[str] = (),
                          seed_context: str = "") -> TaskPlan:
        """
        Asks the collaborator for a decomposition of `request` and validates it.

        Raises:
            PlanningError: If the response is structurally invalid.
            CyclicDependencyError: If the dependency graph has a cycle.
            ProviderError: If the collaborator call fails.
            TaskTimeoutError: If the collaborator exceeds `timeout_seconds`.
        """
        if not request or not request.strip():
            raise PlanningError("Cannot plan an empty request.")
        prompt = self.build_prompt(request, workspace_listing, seed_context)
        context = {"system_prompt": PLANNER_SYSTEM_PROMPT, "temperature": self.temperature, "purpose": "planning"}
        logger.info(f"Requesting plan for: '{request[:80]}'")
        try:
            response = await asyncio.wait_for(self.collaborator.generate(prompt, context), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TaskTimeoutError(f"Planning call exceeded {self.timeout_seconds}s.", self.timeout_seconds) from e
        return self.parse_plan(response, request)

    def parse_plan(self, response_text: str, request: str = "") -> TaskPlan:
        """
        Validates a raw planner response and builds a TaskPlan with every task Pending.
        """
        data = extract_json_payload(response_text)
        if isinstance(data, list):
            data = {"taskBreakdown": data}
        if not isinstance(data, dict):
            raise PlanningError(f"Planner response must be a JSON object, got {type(data).__name__}.")

        raw_tasks = data.get("taskBreakdown", data.get("tasks"))
        if not isinstance(raw_tasks, list) or not raw_tasks:
            raise PlanningError("Planner response contains no tasks.")

        tasks: List[Task] = []
        seen_ids: set = set()
        for index, descriptor in enumerate(raw_tasks):
            if not isinstance(descriptor, dict):
                raise PlanningError(f"Task descriptor #{index + 1} is not an object.")
            raw_id = descriptor.get("id")
            task_id = str(raw_id).strip() if raw_id is not None and str(raw_id).strip() else f"task-{index + 1}"
            if task_id in seen_ids:
                raise PlanningError(f"Duplicate task id '{task_id}'.")
            seen_ids.add(task_id)

            description = descriptor.get("description")
            if not isinstance(description, str) or not description.strip():
                raise PlanningError(f"Task '{task_id}' has no description.")

            raw_deps = descriptor.get("dependencies", descriptor.get("dependsOn", descriptor.get("depends_on")))
            depends_on = _coerce_dependencies(raw_deps, task_id)
            if task_id in depends_on:
                raise PlanningError(f"Task '{task_id}' depends on itself.")

            tasks.append(Task(
                id=task_id,
                type=_coerce_task_type(descriptor.get("type"), task_id),
                description=description.strip(),
                priority=_coerce_priority(descriptor.get("priority"), task_id),
                depends_on=depends_on,
                declaration_index=index,
            ))

        for task in tasks:
            dangling = [dep for dep in task.depends_on if dep not in seen_ids]
            if dangling:
                raise PlanningError(f"Task '{task.id}' depends on unknown task(s): {dangling}")

        cycle = find_cycle(tasks)
        if cycle:
            logger.error(f"Rejecting plan: cycle {' -> '.join(cycle)}")
            raise CyclicDependencyError(cycle)

        goal = data.get("mainGoal") or data.get("goal") or request
        plan = TaskPlan(
            id=self.id_allocator.next_id("plan"),
            goal=str(goal).strip(),
            original_request=request,
            tasks=tasks,
            context_required=_string_list(data.get("contextRequired")),
            risks=_string_list(data.get("risksAndConsiderations")),
        )
        logger.info(f"Plan '{plan.id}' validated with {len(tasks)} task(s): {[t.id for t in tasks]}")
        return plan
