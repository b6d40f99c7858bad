"""Task store: the tasks.json document held in memory, plus its persistence."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from .models import DEFAULT_TAG, Subtask, Tag, Task, TaskRef
from .results import ErrorKind, TaskGraphError

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"

WorkItem = Union[Task, Subtask]


class TaskStore:
    """Authoritative collection of tags -> tasks -> subtasks.

    Every operation takes the tag name explicitly; the store has no notion of
    an "active" tag.
    """

    def __init__(self, tags: dict[str, Tag] | None = None, extra: dict | None = None) -> None:
        self.tags: dict[str, Tag] = tags if tags is not None else {}
        if DEFAULT_TAG not in self.tags:
            self.tags[DEFAULT_TAG] = Tag(DEFAULT_TAG)
        self.extra: dict[str, Any] = extra or {}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict) -> TaskStore:
        if not isinstance(data, dict):
            raise TaskGraphError(
                ErrorKind.INVALID_DOCUMENT, "Tasks file must contain a JSON object"
            )
        if isinstance(data.get("tasks"), list):
            # Legacy single-list document
            return cls({DEFAULT_TAG: Tag.from_dict(DEFAULT_TAG, data)})

        tags: dict[str, Tag] = {}
        extra: dict[str, Any] = {}
        for key, value in data.items():
            if isinstance(value, dict) and isinstance(value.get("tasks"), list):
                tags[key] = Tag.from_dict(key, value)
            else:
                extra[key] = value
        return cls(tags, extra)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {name: tag.to_dict() for name, tag in self.tags.items()}
        d.update(self.extra)
        return d

    @classmethod
    def load(cls, path: str | Path) -> TaskStore:
        """Read the full document from disk."""
        p = Path(path)
        if not p.is_file():
            raise TaskGraphError(ErrorKind.NOT_FOUND, f"Tasks file not found: {p}")
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise TaskGraphError(ErrorKind.INVALID_DOCUMENT, f"Invalid tasks file {p}: {e}") from e
        store = cls.from_dict(data)
        logger.debug(
            "Loaded %s: %d tag(s), %d task(s)",
            p,
            len(store.tags),
            sum(len(t.tasks) for t in store.tags.values()),
        )
        return store

    def save(self, path: str | Path) -> None:
        """Write the full document back to disk."""
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        text = json.dumps(self.to_dict(), indent=2, ensure_ascii=False)
        p.write_text(text + "\n", encoding="utf-8")
        logger.debug("Saved %s", p)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def has_tag(self, name: str) -> bool:
        return name in self.tags

    def tag(self, name: str) -> Tag:
        try:
            return self.tags[name]
        except KeyError:
            raise TaskGraphError(ErrorKind.NOT_FOUND, f'Tag "{name}" does not exist') from None

    def tasks(self, tag: str) -> list[Task]:
        return self.tag(tag).tasks

    def find_task(self, tag: str, task_id: int) -> Task | None:
        for task in self.tasks(tag):
            if task.id == task_id:
                return task
        return None

    def get_task(self, tag: str, task_id: int) -> Task:
        task = self.find_task(tag, task_id)
        if task is None:
            raise TaskGraphError(ErrorKind.NOT_FOUND, f"Task {task_id} not found in tag '{tag}'")
        return task

    def get_subtask(self, tag: str, ref: TaskRef | str) -> Subtask:
        ref = TaskRef.parse(ref)
        if not ref.is_subtask:
            raise TaskGraphError(
                ErrorKind.INVALID_ID,
                f'Subtask ID must be in format "parentId.subtaskId": {ref}',
            )
        parent = self.find_task(tag, ref.task_id)
        if parent is None:
            raise TaskGraphError(
                ErrorKind.NOT_FOUND, f"Parent task {ref.task_id} not found in tag '{tag}'"
            )
        subtask = parent.find_subtask(ref.subtask)
        if subtask is None:
            raise TaskGraphError(ErrorKind.NOT_FOUND, f"Subtask {ref} not found in tag '{tag}'")
        return subtask

    def get_item(self, tag: str, ref: TaskRef) -> WorkItem:
        if ref.is_subtask:
            return self.get_subtask(tag, ref)
        return self.get_task(tag, ref.task_id)

    def has_item(self, tag: str, ref: TaskRef) -> bool:
        task = self.find_task(tag, ref.task_id)
        if task is None:
            return False
        return not ref.is_subtask or task.find_subtask(ref.subtask) is not None

    def iter_items(self, tag: str) -> Iterator[tuple[TaskRef, WorkItem]]:
        """Yield every task and subtask in the tag with its current ref."""
        for task in self.tasks(tag):
            yield task.ref, task
            for subtask in task.subtasks:
                yield task.ref.child(subtask.id), subtask

    def next_task_id(self, tag: str) -> int:
        return max((t.id for t in self.tasks(tag)), default=0) + 1

    # ------------------------------------------------------------------
    # Structural mutation
    # ------------------------------------------------------------------

    def insert_task(self, tag: str, task: Task) -> None:
        """Insert keeping the tag's task list ordered by id."""
        tasks = self.tasks(tag)
        if self.find_task(tag, task.id) is not None:
            raise TaskGraphError(
                ErrorKind.DUPLICATE_ID, f"Task with ID {task.id} already exists in tag '{tag}'"
            )
        pos = len(tasks)
        for i, existing in enumerate(tasks):
            if existing.id > task.id:
                pos = i
                break
        tasks.insert(pos, task)

    def delete_task(self, tag: str, task_id: int) -> Task:
        """Remove a task; references held by other tasks are left to the caller."""
        task = self.get_task(tag, task_id)
        self.tasks(tag).remove(task)
        return task

    def remove_subtask(self, tag: str, ref: TaskRef) -> Subtask:
        """Detach a subtask, renumber its siblings and drop references to it."""
        subtask = self.get_subtask(tag, ref)
        parent = self.get_task(tag, ref.task_id)
        parent.subtasks.remove(subtask)
        self.renumber_subtasks_after_removal(tag, ref.task_id, ref.subtask)
        return subtask

    def renumber_subtasks_after_removal(
        self, tag: str, parent_id: int, removed_index: int
    ) -> dict[TaskRef, TaskRef | None]:
        """Close the gap left by a removed subtask.

        Subtasks after ``removed_index`` shift down by one. In the same pass,
        references to the removed subtask are dropped and references to
        shifted subtasks follow them.
        """
        parent = self.get_task(tag, parent_id)
        mapping: dict[TaskRef, TaskRef | None] = {parent.ref.child(removed_index): None}
        for subtask in parent.subtasks:
            if subtask.id > removed_index:
                old = parent.ref.child(subtask.id)
                subtask.id -= 1
                mapping[old] = parent.ref.child(subtask.id)
        self.rewrite_references(tag, mapping)
        return mapping

    def rewrite_references(
        self, tag: str, mapping: dict[TaskRef, TaskRef | None]
    ) -> list[tuple[TaskRef, TaskRef, TaskRef | None]]:
        """Apply ``old -> new`` to every dependency list in the tag in one pass.

        A ``None`` target drops the edge. Returns ``(owner, old, new)`` for each
        rewritten entry, where ``owner`` is the item's ref after the rewrite.
        """
        changes: list[tuple[TaskRef, TaskRef, TaskRef | None]] = []
        if not mapping:
            return changes
        for owner, item in self.iter_items(tag):
            rewritten: list[TaskRef] = []
            merged: set[TaskRef] = set()
            for dep in item.dependencies:
                if dep not in mapping:
                    if dep not in merged:
                        rewritten.append(dep)
                    continue
                target = mapping[dep]
                changes.append((owner, dep, target))
                if target is not None and target not in rewritten:
                    rewritten.append(target)
                    merged.add(target)
            item.dependencies = rewritten
        for owner, old, new in changes:
            logger.debug("  [REWRITE] %s: %s -> %s", owner, old, new if new else "(removed)")
        return changes


@dataclass
class ProjectState:
    """Per-project pointer to the tag the CLI works on by default."""

    current_tag: str = DEFAULT_TAG
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"currentTag": self.current_tag, **self.extra}


def state_path_for(tasks_path: str | Path) -> Path:
    return Path(tasks_path).parent / STATE_FILENAME


def load_state(path: str | Path) -> ProjectState:
    p = Path(path)
    if not p.is_file():
        return ProjectState()
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable state file %s", p)
        return ProjectState()
    if not isinstance(data, dict):
        return ProjectState()
    return ProjectState(
        current_tag=str(data.get("currentTag") or DEFAULT_TAG),
        extra={k: v for k, v in data.items() if k != "currentTag"},
    )


def save_state(path: str | Path, state: ProjectState) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(state.to_dict(), indent=2) + "\n", encoding="utf-8")
