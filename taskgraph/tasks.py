"""Task lifecycle operations: add, remove, status changes and next-task selection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .dependencies import expand_range
from .graph import DependencyGraph
from .models import (
    DEFAULT_PRIORITY,
    PRIORITIES,
    STATUSES,
    Subtask,
    Task,
    TaskRef,
    parse_ref_list,
)
from .move import SnapshotSink, move_task
from .results import BatchResult, ErrorKind, OperationResult, TaskGraphError
from .store import TaskStore, WorkItem

logger = logging.getLogger(__name__)

# Statuses that never count as blocked, whatever their prerequisites.
SETTLED_STATUSES = ("done", "cancelled", "deferred")
PRIORITY_RANK = {"high": 3, "medium": 2, "low": 1}


def normalize_priority(raw: str | None) -> tuple[str, str | None]:
    """Return ``(priority, warning)``; unknown values fall back to medium."""
    if raw is None or str(raw).strip() == "":
        return DEFAULT_PRIORITY, None
    value = str(raw).strip().lower()
    if value in PRIORITIES:
        return value, None
    return DEFAULT_PRIORITY, (
        f"Invalid priority '{raw}'. Using default priority '{DEFAULT_PRIORITY}' instead "
        f"(valid: {', '.join(PRIORITIES)})"
    )


def _check_status(status: str) -> None:
    if status not in STATUSES:
        raise TaskGraphError(
            ErrorKind.INVALID_VALUE,
            f"Invalid status '{status}'. Valid statuses: {', '.join(STATUSES)}",
        )


def _resolve_dependencies(store: TaskStore, tag: str, raw: str | list | None) -> list[TaskRef]:
    if not raw:
        return []
    deps: list[TaskRef] = []
    for dep in parse_ref_list(raw):
        if not store.has_item(tag, dep):
            raise TaskGraphError(
                ErrorKind.NOT_FOUND, f"Dependency {dep.label()} not found in tag '{tag}'"
            )
        if dep not in deps:
            deps.append(dep)
    return deps


# ----------------------------------------------------------------------
# Creation
# ----------------------------------------------------------------------


def add_task(
    store: TaskStore,
    tag: str,
    title: str,
    description: str = "",
    details: str = "",
    test_strategy: str = "",
    priority: str | None = None,
    dependencies: str | list | None = None,
    status: str = "pending",
    metadata: dict[str, str] | None = None,
) -> OperationResult:
    """Create a task with the next free id in ``tag``."""
    try:
        if not title or not title.strip():
            raise TaskGraphError(ErrorKind.INVALID_VALUE, "Task title is required")
        _check_status(status)
        deps = _resolve_dependencies(store, tag, dependencies)
        prio, warning = normalize_priority(priority)
        task = Task(
            id=store.next_task_id(tag),
            title=title.strip(),
            description=description,
            details=details,
            test_strategy=test_strategy,
            status=status,
            priority=prio,
            dependencies=deps,
            metadata={str(k): str(v) for k, v in (metadata or {}).items()},
            tags=[tag],
        )
        store.insert_task(tag, task)
    except TaskGraphError as e:
        return e.to_result()

    result = OperationResult.success(f"Task {task.id} added successfully", task=task.ref)
    if warning:
        logger.warning("%s", warning)
        result.warnings.append(warning)
    logger.info("[%s] Added task %d: %s", tag, task.id, task.title)
    return result


def add_subtask(
    store: TaskStore,
    tag: str,
    parent_id: int | str,
    title: str | None = None,
    description: str = "",
    details: str = "",
    status: str = "pending",
    priority: str | None = None,
    dependencies: str | list | None = None,
    task_id: int | str | None = None,
    snapshots: SnapshotSink | None = None,
) -> OperationResult:
    """Append a new subtask, or convert an existing task into one (``task_id``)."""
    try:
        parent_ref = TaskRef.parse(parent_id)
        if parent_ref.is_subtask:
            raise TaskGraphError(
                ErrorKind.INVALID_ID, f"Parent must be a task ID, got {parent_ref}"
            )
        parent = store.get_task(tag, parent_ref.task_id)
        if task_id is not None:
            destination = parent.ref.child(len(parent.subtasks) + 1)
            logger.info("[%s] Converting task %s to subtask %s", tag, task_id, destination)
            return move_task(store, tag, task_id, destination, snapshots)
        if not title or not title.strip():
            raise TaskGraphError(
                ErrorKind.INVALID_VALUE, "Either --task-id or --title must be provided"
            )
        _check_status(status)
        deps = _resolve_dependencies(store, tag, dependencies)
        warning = None
        if priority is not None:
            priority, warning = normalize_priority(priority)
        subtask = Subtask(
            id=len(parent.subtasks) + 1,
            title=title.strip(),
            description=description,
            details=details,
            status=status,
            priority=priority,
            dependencies=deps,
        )
        parent.subtasks.append(subtask)
    except TaskGraphError as e:
        return e.to_result()

    ref = parent.ref.child(subtask.id)
    result = OperationResult.success(f"Subtask {ref} successfully created", subtask=ref)
    if warning:
        result.warnings.append(warning)
    logger.info("[%s] Added subtask %s: %s", tag, ref, subtask.title)
    return result


# ----------------------------------------------------------------------
# Removal
# ----------------------------------------------------------------------


def _dependents_of(
    store: TaskStore, tag: str, targets: set[TaskRef], skip_task: int | None = None
) -> list[TaskRef]:
    found = [
        owner
        for owner, item in store.iter_items(tag)
        if owner.task_id != skip_task and any(d in targets for d in item.dependencies)
    ]
    return sorted(found, key=TaskRef.sort_key)


def _remove_one(store: TaskStore, tag: str, ref: TaskRef) -> OperationResult:
    if ref.is_subtask:
        store.get_subtask(tag, ref)
        dependents = [d for d in _dependents_of(store, tag, {ref}) if d != ref]
        store.remove_subtask(tag, ref)
        result = OperationResult.success(
            f"Subtask {ref} successfully removed", removed=ref, dependents=dependents
        )
    else:
        task = store.get_task(tag, ref.task_id)
        removed = {ref} | {ref.child(s.id) for s in task.subtasks}
        dependents = _dependents_of(store, tag, removed, skip_task=ref.task_id)
        store.delete_task(tag, ref.task_id)
        store.rewrite_references(tag, {r: None for r in removed})
        message = f"Task {ref} removed successfully"
        if task.subtasks:
            message += f" (and {len(task.subtasks)} subtasks)"
        result = OperationResult.success(message, removed=ref, dependents=dependents)

    if dependents:
        listed = ", ".join(str(d) for d in dependents)
        result.warnings.append(
            f"Warning: {ref} was referenced by dependent tasks {listed}; references removed"
        )
    logger.info("[%s] %s", tag, result.message)
    return result


def _removal_targets(
    store: TaskStore,
    tag: str,
    ids: str | list | None,
    from_id: int | str | None,
    to_id: int | str | None,
    all_tasks: bool,
) -> list[TaskRef]:
    if all_tasks:
        return [t.ref for t in store.tasks(tag)]
    if from_id is not None or to_id is not None:
        if from_id is None or to_id is None:
            raise TaskGraphError(
                ErrorKind.INVALID_VALUE, "Both --from and --to are required for a range"
            )
        refs = [r for r in expand_range(from_id, to_id) if store.has_item(tag, r)]
        if not refs:
            raise TaskGraphError(
                ErrorKind.NOT_FOUND, f"No tasks found in range {from_id}-{to_id}"
            )
        return refs
    if ids:
        return parse_ref_list(ids)
    raise TaskGraphError(
        ErrorKind.INVALID_VALUE, "Please specify task IDs with --id, --from/--to or --all"
    )


def _cascade(store: TaskStore, tag: str, refs: list[TaskRef]) -> list[TaskRef]:
    """Everything that transitively depends on ``refs`` and is not already going."""
    graph = DependencyGraph.from_store(store, tag)
    going = set(refs)
    while True:
        removed = set(going)
        for ref in going:
            if not ref.is_subtask:
                task = store.get_task(tag, ref.task_id)
                removed.update(ref.child(s.id) for s in task.subtasks)
        found = set(graph.dependents_of(removed)) - removed
        if not found:
            break
        going |= found
    # A subtask leaves with its parent.
    task_ids = {r.task_id for r in going if not r.is_subtask}
    extra = [
        r
        for r in going.difference(refs)
        if not (r.is_subtask and r.task_id in task_ids)
    ]
    return sorted(extra, key=TaskRef.sort_key)


def remove_tasks(
    store: TaskStore,
    tag: str,
    ids: str | list | None = None,
    from_id: int | str | None = None,
    to_id: int | str | None = None,
    all_tasks: bool = False,
    cascade: bool = False,
) -> BatchResult:
    """Remove tasks and/or subtasks, cleaning up every reference to them.

    Targets come from ``ids``, an inclusive ``from_id..to_id`` range of
    existing tasks, or ``all_tasks``. With ``cascade`` every item that
    transitively depends on a target is removed too.

    Subtasks go first, highest index first, so earlier removals do not
    renumber later targets.
    """
    batch = BatchResult()
    try:
        refs = list(dict.fromkeys(_removal_targets(store, tag, ids, from_id, to_id, all_tasks)))
        cascaded: list[TaskRef] = []
        if cascade:
            existing = [r for r in refs if store.has_item(tag, r)]
            cascaded = _cascade(store, tag, existing)
    except TaskGraphError as e:
        batch.add(e.to_result())
        return batch
    if cascaded:
        logger.info(
            "[%s] Cascading removal to dependents: %s", tag, ", ".join(str(r) for r in cascaded)
        )

    refs += cascaded
    subtasks = sorted((r for r in refs if r.is_subtask), key=lambda r: (r.task_id, -r.subtask))
    tasks = [r for r in refs if not r.is_subtask]
    for ref in subtasks + tasks:
        try:
            result = batch.add(_remove_one(store, tag, ref))
        except TaskGraphError as e:
            batch.add(e.to_result())
            continue
        if ref in cascaded:
            result.data["cascaded"] = True
    return batch


def remove_subtask(
    store: TaskStore,
    tag: str,
    subtask_id: str,
    convert: bool = False,
    snapshots: SnapshotSink | None = None,
) -> OperationResult:
    """Remove one subtask, or promote it to a standalone task with ``convert``."""
    try:
        ref = TaskRef.parse(subtask_id)
        if not ref.is_subtask:
            raise TaskGraphError(
                ErrorKind.INVALID_ID,
                f'Subtask ID must be in format "parentId.subtaskId", got {subtask_id}',
            )
        store.get_subtask(tag, ref)
        if convert:
            return move_task(store, tag, ref, store.next_task_id(tag), snapshots)
        return _remove_one(store, tag, ref)
    except TaskGraphError as e:
        return e.to_result()


def clear_subtasks(
    store: TaskStore, tag: str, ids: str | list | None = None, all_tasks: bool = False
) -> BatchResult:
    batch = BatchResult()
    try:
        if all_tasks:
            targets = [t.ref for t in store.tasks(tag)]
        elif ids:
            targets = parse_ref_list(ids)
        else:
            raise TaskGraphError(
                ErrorKind.INVALID_VALUE, "Please specify task IDs with --id or use --all"
            )
    except TaskGraphError as e:
        batch.add(e.to_result())
        return batch

    for ref in dict.fromkeys(targets):
        if ref.is_subtask:
            batch.add(
                OperationResult.failure(
                    ErrorKind.INVALID_ID, f"clear-subtasks takes task IDs, got {ref}"
                )
            )
            continue
        try:
            task = store.get_task(tag, ref.task_id)
        except TaskGraphError as e:
            batch.add(e.to_result())
            continue
        if not task.subtasks:
            batch.add(OperationResult.noop(f"Task {task.id} has no subtasks", task=task.ref))
            continue
        removed = {task.ref.child(s.id) for s in task.subtasks}
        count = len(task.subtasks)
        task.subtasks = []
        store.rewrite_references(tag, {r: None for r in removed})
        logger.info("[%s] Cleared %d subtasks from task %d", tag, count, task.id)
        batch.add(
            OperationResult.success(
                f"Cleared {count} subtasks from task {task.id}", task=task.ref, cleared=count
            )
        )
    return batch


# ----------------------------------------------------------------------
# Status
# ----------------------------------------------------------------------


def unmet_dependencies(store: TaskStore, tag: str, item: WorkItem) -> list[TaskRef]:
    """Existing prerequisites that are not done yet (missing refs are left to validation)."""
    return [
        dep
        for dep in item.dependencies
        if store.has_item(tag, dep) and store.get_item(tag, dep).status != "done"
    ]


def effective_status(store: TaskStore, tag: str, item: WorkItem) -> str:
    """Status as shown to users: ``blocked`` is derived from prerequisites."""
    if item.status in SETTLED_STATUSES:
        return item.status
    if unmet_dependencies(store, tag, item):
        return "blocked"
    if item.status == "blocked" and item.dependencies:
        return "pending"
    return item.status


@dataclass
class StatusBatchResult(BatchResult):
    unblocked: list[TaskRef] = field(default_factory=list)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["unblocked"] = [r.to_wire() for r in self.unblocked]
        return d


def _blocked_refs(store: TaskStore, tag: str) -> set[TaskRef]:
    return {
        ref
        for ref, item in store.iter_items(tag)
        if effective_status(store, tag, item) == "blocked"
    }


def set_status(store: TaskStore, tag: str, ids: str | list, status: str) -> StatusBatchResult:
    """Set the status of tasks/subtasks.

    A task marked done completes its subtasks; the last subtask marked done
    completes its parent.
    """
    batch = StatusBatchResult()
    try:
        _check_status(status)
        refs = parse_ref_list(ids)
        store.tag(tag)
    except TaskGraphError as e:
        batch.add(e.to_result())
        return batch

    blocked_before = _blocked_refs(store, tag)
    for ref in refs:
        try:
            item = store.get_item(tag, ref)
        except TaskGraphError as e:
            batch.add(e.to_result())
            continue
        old = item.status
        if old == status:
            batch.add(OperationResult.noop(f"{ref.label()} is already {status}", task=ref))
            continue
        item.status = status
        result = OperationResult.success(
            f"Status updated: {ref.label()} {old} -> {status}", task=ref, old=old, status=status
        )
        if unmet_dependencies(store, tag, item) and status in ("in-progress", "done"):
            result.warnings.append(f"Warning: {ref.label()} has incomplete dependencies")
        if status == "done" and isinstance(item, Task):
            for subtask in item.subtasks:
                subtask.status = "done"
            if item.subtasks:
                result.data["subtasks_completed"] = len(item.subtasks)
        if status == "done" and ref.is_subtask:
            parent = store.get_task(tag, ref.task_id)
            if parent.status != "done" and all(s.status == "done" for s in parent.subtasks):
                parent.status = "done"
                result.data["parent_completed"] = parent.ref
                result.warnings.append(f"All subtasks completed; task {parent.id} marked done")
        logger.info("[%s] %s", tag, result.message)
        batch.add(result)

    batch.unblocked = sorted(blocked_before - _blocked_refs(store, tag), key=TaskRef.sort_key)
    return batch


# ----------------------------------------------------------------------
# Next task
# ----------------------------------------------------------------------


def _rank(priority: str | None) -> int:
    return PRIORITY_RANK.get(priority or DEFAULT_PRIORITY, PRIORITY_RANK[DEFAULT_PRIORITY])


def next_task(store: TaskStore, tag: str) -> tuple[TaskRef, WorkItem] | None:
    """Pick the next actionable item.

    Pending subtasks of in-progress tasks win over new tasks; ties break on
    priority, then fewer prerequisites, then lower id.
    """
    candidates: list[tuple[tuple, TaskRef, WorkItem]] = []
    for task in store.tasks(tag):
        if task.status != "in-progress":
            continue
        for subtask in task.subtasks:
            if subtask.status == "pending" and not unmet_dependencies(store, tag, subtask):
                ref = task.ref.child(subtask.id)
                key = (
                    -_rank(subtask.priority or task.priority),
                    len(subtask.dependencies),
                    ref.sort_key(),
                )
                candidates.append((key, ref, subtask))
    if not candidates:
        for task in store.tasks(tag):
            if task.status == "pending" and not unmet_dependencies(store, tag, task):
                key = (-_rank(task.priority), len(task.dependencies), task.ref.sort_key())
                candidates.append((key, task.ref, task))
    if not candidates:
        return None
    _key, ref, item = min(candidates, key=lambda c: c[0])
    return ref, item
