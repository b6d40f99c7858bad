"""Tag operations: create, copy, rename, delete, switch and list tags."""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from .models import DEFAULT_TAG, Tag
from .results import ErrorKind, OperationResult, TaskGraphError
from .store import ProjectState, TaskStore

logger = logging.getLogger(__name__)

RE_TAG_NAME = re.compile(r"^[A-Za-z0-9_-]+$")
MAX_TAG_NAME_LENGTH = 50


def validate_tag_name(name: str) -> None:
    if not name or not name.strip():
        raise TaskGraphError(ErrorKind.INVALID_VALUE, "Tag name cannot be empty")
    if len(name) > MAX_TAG_NAME_LENGTH:
        raise TaskGraphError(
            ErrorKind.INVALID_VALUE,
            f"Tag name is too long (maximum {MAX_TAG_NAME_LENGTH} characters)",
        )
    if not RE_TAG_NAME.match(name):
        raise TaskGraphError(
            ErrorKind.INVALID_VALUE,
            f"Invalid tag name '{name}': use only letters, numbers, hyphens and underscores",
        )


def _check_new_name(store: TaskStore, name: str) -> None:
    validate_tag_name(name)
    if name == DEFAULT_TAG:
        raise TaskGraphError(ErrorKind.INVALID_VALUE, f'"{name}" is a reserved tag name')
    if store.has_tag(name):
        raise TaskGraphError(ErrorKind.DUPLICATE_ID, f'Tag "{name}" already exists')


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _replace_membership(store: TaskStore, old: str, new: str | None) -> int:
    """Rename (or with ``new=None`` drop) a tag name in every task's membership list."""
    touched = 0
    for tag in store.tags.values():
        for task in tag.tasks:
            if old not in task.tags:
                continue
            members = [new if t == old else t for t in task.tags if new is not None or t != old]
            task.tags = list(dict.fromkeys(members))
            touched += 1
    return touched


# ----------------------------------------------------------------------
# Operations
# ----------------------------------------------------------------------


def add_tag(
    store: TaskStore,
    name: str,
    description: str = "",
    copy_from: str | None = None,
) -> OperationResult:
    """Create an empty tag, or a copy of ``copy_from``."""
    if copy_from:
        return copy_tag(store, copy_from, name, description or None)
    try:
        _check_new_name(store, name)
    except TaskGraphError as e:
        return e.to_result()
    store.tags[name] = Tag(name, description=description, created=_now())
    logger.info("Created tag %s", name)
    return OperationResult.success(f'Successfully created tag "{name}"', tag=name, tasks=0)


def copy_tag(
    store: TaskStore, source: str, target: str, description: str | None = None
) -> OperationResult:
    """Deep-copy every task of ``source`` into a new tag ``target``.

    Both the originals and the copies list ``target`` in their tag membership;
    from then on the two tags change independently.
    """
    try:
        if not store.has_tag(source):
            raise TaskGraphError(ErrorKind.NOT_FOUND, f'Source tag "{source}" does not exist')
        _check_new_name(store, target)
    except TaskGraphError as e:
        return e.to_result()

    originals = store.tasks(source)
    copies = []
    for task in originals:
        members = list(task.tags or [source])
        if target not in members:
            members.append(target)
        clone = copy.deepcopy(task)
        clone.tags = list(members)
        task.tags = list(members)
        copies.append(clone)

    created = _now()
    store.tags[target] = Tag(
        target,
        tasks=copies,
        description=description or f'Copy of "{source}" created on {created[:10]}',
        created=created,
    )
    logger.info("Copied tag %s -> %s (%d tasks)", source, target, len(copies))
    return OperationResult.success(
        f'Successfully copied tag "{source}" to "{target}" ({len(copies)} tasks copied)',
        tag=target,
        source=source,
        tasks=len(copies),
    )


def rename_tag(
    store: TaskStore, old: str, new: str, state: ProjectState | None = None
) -> OperationResult:
    try:
        if old == DEFAULT_TAG:
            raise TaskGraphError(ErrorKind.INVALID_VALUE, f'Cannot rename the "{DEFAULT_TAG}" tag')
        store.tag(old)
        _check_new_name(store, new)
    except TaskGraphError as e:
        return e.to_result()

    # Rebuild so the renamed tag keeps its position in the document.
    store.tags = {(new if name == old else name): tag for name, tag in store.tags.items()}
    store.tags[new].name = new
    touched = _replace_membership(store, old, new)
    logger.debug("Rewrote membership of %d task(s) from %s to %s", touched, old, new)

    result = OperationResult.success(
        f'Successfully renamed tag "{old}" to "{new}"', old=old, new=new
    )
    if state is not None and state.current_tag == old:
        state.current_tag = new
        result.data["current_tag"] = new
    logger.info("Renamed tag %s -> %s", old, new)
    return result


def delete_tag(store: TaskStore, name: str, state: ProjectState | None = None) -> OperationResult:
    """Delete a tag and every task in it."""
    try:
        if name == DEFAULT_TAG:
            raise TaskGraphError(ErrorKind.INVALID_VALUE, f'Cannot delete the "{DEFAULT_TAG}" tag')
        removed = store.tag(name)
    except TaskGraphError as e:
        return e.to_result()

    del store.tags[name]
    _replace_membership(store, name, None)
    message = f'Successfully deleted tag "{name}" ({len(removed.tasks)} tasks deleted)'
    result = OperationResult.success(message, tag=name, tasks=len(removed.tasks))
    if state is not None and state.current_tag == name:
        state.current_tag = DEFAULT_TAG
        result.data["current_tag"] = DEFAULT_TAG
        result.warnings.append(f'Switched current tag to "{DEFAULT_TAG}"')
    logger.info("Deleted tag %s", name)
    return result


def use_tag(store: TaskStore, name: str, state: ProjectState) -> OperationResult:
    try:
        store.tag(name)
    except TaskGraphError as e:
        return e.to_result()
    if state.current_tag == name:
        return OperationResult.noop(f'Already on tag "{name}"', tag=name)
    state.current_tag = name
    logger.info("Switched current tag to %s", name)
    return OperationResult.success(f'Successfully switched to tag "{name}"', tag=name)


@dataclass
class TagSummary:
    name: str
    task_count: int
    completed: int
    created: str = ""
    description: str = ""
    current: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "taskCount": self.task_count,
            "completed": self.completed,
            "created": self.created,
            "description": self.description,
            "isCurrent": self.current,
        }


def list_tags(store: TaskStore, current: str = DEFAULT_TAG) -> list[TagSummary]:
    """Summaries of every tag, the current one first and the rest by name."""
    summaries = [
        TagSummary(
            name=tag.name,
            task_count=len(tag.tasks),
            completed=tag.completed_count,
            created=tag.created,
            description=tag.description,
            current=tag.name == current,
        )
        for tag in store.tags.values()
    ]
    return sorted(summaries, key=lambda s: (not s.current, s.name))
