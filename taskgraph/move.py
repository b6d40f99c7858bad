"""Move/renumber service: relocate tasks and subtasks, rewriting every reference.

Structural changes are applied first; afterwards each item's old ref is compared
with its new ref (items are tracked by identity) and the whole tag's dependency
lists are rewritten in a single pass.
"""

from __future__ import annotations

import logging
from typing import Protocol

from .graph import DependencyGraph
from .models import Subtask, Task, TaskRef
from .results import BatchResult, ErrorKind, OperationResult, TaskGraphError
from .store import TaskStore

logger = logging.getLogger(__name__)


class SnapshotSink(Protocol):
    """Receives ``(old_task_id | None, new_task_id)`` after each successful move."""

    def refresh(self, store: TaskStore, tag: str, old_id: int | None, new_id: int) -> None: ...


def move_task(
    store: TaskStore,
    tag: str,
    from_id: int | str,
    to_id: int | str,
    snapshots: SnapshotSink | None = None,
) -> OperationResult:
    """Move one task or subtask to a new id or position."""
    try:
        src = TaskRef.parse(from_id)
        dst = TaskRef.parse(to_id)
        if src == dst:
            return OperationResult.noop(
                f"Skipping {src} -> {dst} (same ID)", source=src, destination=dst, reason="NoOp"
            )
        if not src.is_subtask and not dst.is_subtask:
            result, refreshes = _task_to_task(store, tag, src, dst)
        elif src.is_subtask and dst.is_subtask:
            result, refreshes = _subtask_to_subtask(store, tag, src, dst)
        elif src.is_subtask:
            result, refreshes = _subtask_to_task(store, tag, src, dst)
        else:
            result, refreshes = _task_to_subtask(store, tag, src, dst)
    except TaskGraphError as e:
        logger.debug("move %s -> %s rejected: %s", from_id, to_id, e.message)
        return e.to_result()

    logger.info("[%s] %s", tag, result.message)
    result.data["refreshed"] = refreshes
    if snapshots is not None:
        for old_id, new_id in refreshes:
            snapshots.refresh(store, tag, old_id, new_id)
    return result


def move_tasks(
    store: TaskStore,
    tag: str,
    from_ids: str | list,
    to_ids: str | list,
    snapshots: SnapshotSink | None = None,
) -> BatchResult:
    """Move comma-separated sources to destinations pairwise, in order.

    Counts are checked before anything moves; after that each pair is applied
    independently.
    """
    batch = BatchResult()
    sources = _split_ids(from_ids)
    destinations = _split_ids(to_ids)
    if not sources or not destinations:
        batch.add(
            OperationResult.failure(
                ErrorKind.INVALID_ID, "Both --from and --to parameters are required"
            )
        )
        return batch
    if len(sources) != len(destinations):
        batch.add(
            OperationResult.failure(
                ErrorKind.COUNT_MISMATCH,
                "The number of source and destination IDs must match "
                f"({len(sources)} vs {len(destinations)})",
            )
        )
        return batch

    if len(sources) > 1:
        logger.info("Moving multiple tasks: %s -> %s", ",".join(sources), ",".join(destinations))
    for src, dst in zip(sources, destinations):
        batch.add(move_task(store, tag, src, dst, snapshots))
    return batch


def _split_ids(raw: str | int | list) -> list[str]:
    if isinstance(raw, (list, tuple)):
        return [str(r).strip() for r in raw if str(r).strip()]
    return [p.strip() for p in str(raw).split(",") if p.strip()]


# ----------------------------------------------------------------------
# Move variants
# ----------------------------------------------------------------------


def _task_to_task(
    store: TaskStore, tag: str, src: TaskRef, dst: TaskRef
) -> tuple[OperationResult, list[tuple[int | None, int]]]:
    task = store.get_task(tag, src.task_id)
    _ensure_free(store, tag, dst)

    before = _refs_by_identity(store, tag)
    _detach_task(store, tag, task)
    task.id = dst.task_id
    store.insert_task(tag, task)

    result = OperationResult.success(
        f"Successfully moved task/subtask {src} to {dst}", source=src, destination=dst
    )
    result.warnings.extend(_rewrite_moved(store, tag, before))
    return result, [(src.task_id, dst.task_id)]


def _subtask_to_subtask(
    store: TaskStore, tag: str, src: TaskRef, dst: TaskRef
) -> tuple[OperationResult, list[tuple[int | None, int]]]:
    subtask = store.get_subtask(tag, src)
    source_parent = store.get_task(tag, src.task_id)
    dest_parent = store.get_task(tag, dst.task_id)

    before = _refs_by_identity(store, tag)
    _detach_subtask(source_parent, subtask)
    pos = min(dst.subtask - 1, len(dest_parent.subtasks))
    dest_parent.subtasks.insert(pos, subtask)
    source_parent.renumber_subtasks()
    dest_parent.renumber_subtasks()

    final = dest_parent.ref.child(subtask.id)
    message = f"Successfully moved task/subtask {src} to {final}"
    if final != dst:
        message += f" (position {dst.subtask} does not exist, appended at end)"
    result = OperationResult.success(message, source=src, destination=final)
    result.warnings.extend(_rewrite_moved(store, tag, before))

    refreshes: list[tuple[int | None, int]] = [(None, source_parent.id)]
    if dest_parent is not source_parent:
        refreshes.append((None, dest_parent.id))
    return result, refreshes


def _subtask_to_task(
    store: TaskStore, tag: str, src: TaskRef, dst: TaskRef
) -> tuple[OperationResult, list[tuple[int | None, int]]]:
    subtask = store.get_subtask(tag, src)
    parent = store.get_task(tag, src.task_id)
    _ensure_free(store, tag, dst)

    before = _refs_by_identity(store, tag)
    _detach_subtask(parent, subtask)
    parent.renumber_subtasks()
    task = subtask.to_task(dst.task_id, tags=parent.tags or [tag])
    store.insert_task(tag, task)

    result = OperationResult.success(
        f"Converted subtask {src} to task {dst}", source=src, destination=dst
    )
    result.warnings.extend(_rewrite_moved(store, tag, before, {id(subtask): task}))
    return result, [(None, parent.id), (None, task.id)]


def _task_to_subtask(
    store: TaskStore, tag: str, src: TaskRef, dst: TaskRef
) -> tuple[OperationResult, list[tuple[int | None, int]]]:
    task = store.get_task(tag, src.task_id)
    if dst.task_id == src.task_id:
        raise TaskGraphError(
            ErrorKind.SUBTASK_OF_SELF, f"Cannot move task {src} into its own subtasks"
        )
    parent = store.get_task(tag, dst.task_id)

    before = _refs_by_identity(store, tag)
    _detach_task(store, tag, task)
    subtask = task.to_subtask(0)
    # Nested subtasks are not supported: the demoted task's children follow it as siblings.
    children = list(task.subtasks)
    pos = min(dst.subtask - 1, len(parent.subtasks))
    parent.subtasks[pos:pos] = [subtask, *children]
    parent.renumber_subtasks()

    final = parent.ref.child(subtask.id)
    result = OperationResult.success(
        f"Converted task {src} to subtask {final}", source=src, destination=final
    )
    if children:
        result.warnings.append(
            f"Flattened {len(children)} subtask(s) of task {src} into task {parent.id}"
        )
    result.warnings.extend(_rewrite_moved(store, tag, before, {id(task): subtask}))
    return result, [(src.task_id, parent.id)]


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def _ensure_free(store: TaskStore, tag: str, dst: TaskRef) -> None:
    if store.find_task(tag, dst.task_id) is not None:
        raise TaskGraphError(
            ErrorKind.DESTINATION_EXISTS, f"Task with ID {dst} already exists in tag '{tag}'"
        )


def _detach_task(store: TaskStore, tag: str, task: Task) -> None:
    tasks = store.tasks(tag)
    for i, existing in enumerate(tasks):
        if existing is task:
            del tasks[i]
            return


def _detach_subtask(parent: Task, subtask: Subtask) -> None:
    for i, existing in enumerate(parent.subtasks):
        if existing is subtask:
            del parent.subtasks[i]
            return


def _refs_by_identity(store: TaskStore, tag: str) -> dict[int, tuple[TaskRef, object]]:
    # The item itself is held so its id() cannot be reused while the move runs.
    return {id(item): (ref, item) for ref, item in store.iter_items(tag)}


def _rewrite_moved(
    store: TaskStore,
    tag: str,
    before: dict[int, tuple[TaskRef, object]],
    replaced: dict[int, object] | None = None,
) -> list[str]:
    """Rewrite references to every item whose ref changed.

    ``replaced`` maps ``id(old_object)`` to the object that took its place
    (Task <-> Subtask conversions). Returns warnings for edges dropped because
    the rewrite turned them into a self or own-subtask reference.
    """
    replaced = replaced or {}
    after = {id(item): ref for ref, item in store.iter_items(tag)}
    mapping: dict[TaskRef, TaskRef | None] = {}
    for oid, (old_ref, item) in before.items():
        new_ref = after.get(id(replaced.get(oid, item)))
        if new_ref is not None and new_ref != old_ref:
            mapping[old_ref] = new_ref

    warnings: list[str] = []
    for owner, _old, new in store.rewrite_references(tag, mapping):
        if new is None:
            continue
        if new == owner or DependencyGraph.is_descendant_subtask(owner, new):
            item = store.get_item(tag, owner)
            if new not in item.dependencies:
                continue
            item.dependencies = [d for d in item.dependencies if d != new]
            msg = (
                f"Dropped dependency {new} from {owner.label()}: "
                "it now points at itself or its own subtask"
            )
            logger.warning("[%s] %s", tag, msg)
            warnings.append(msg)
    return warnings
