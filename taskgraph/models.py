"""Data models for tasks, subtasks and tags stored in tasks.json."""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from .results import ErrorKind, TaskGraphError

logger = logging.getLogger(__name__)

STATUSES = ("pending", "in-progress", "done", "blocked", "deferred", "cancelled")
PRIORITIES = ("low", "medium", "high")
DEFAULT_PRIORITY = "medium"
DEFAULT_TAG = "master"

RE_TASK_REF = re.compile(r"^\s*(\d+)(?:\.(\d+))?\s*$")

# Keys owned by the models; anything else on a task is carried through untouched.
_ITEM_KEYS = {
    "id",
    "title",
    "description",
    "details",
    "testStrategy",
    "status",
    "priority",
    "dependencies",
    "metadata",
}
_TASK_KEYS = _ITEM_KEYS | {"subtasks", "tags"}


@dataclass(frozen=True)
class TaskRef:
    """A dependency node: a task (``5``) or a subtask (``"5.2"``)."""

    task_id: int
    subtask: int | None = None

    @classmethod
    def parse(cls, raw: int | str | TaskRef) -> TaskRef:
        """Parse the wire form of a reference.

        Ints and dotless strings are task ids, ``"p.n"`` strings are subtask ids.
        """
        if isinstance(raw, TaskRef):
            return raw
        if isinstance(raw, bool):
            raise TaskGraphError(ErrorKind.INVALID_ID, f"Invalid task ID: {raw!r}")
        if isinstance(raw, int):
            if raw < 1:
                raise TaskGraphError(ErrorKind.INVALID_ID, f"Invalid task ID: {raw}")
            return cls(raw)
        m = RE_TASK_REF.match(str(raw))
        if not m:
            raise TaskGraphError(ErrorKind.INVALID_ID, f"Invalid task ID: {raw!r}")
        task_id = int(m.group(1))
        subtask = int(m.group(2)) if m.group(2) is not None else None
        if task_id < 1 or (subtask is not None and subtask < 1):
            raise TaskGraphError(ErrorKind.INVALID_ID, f"Invalid task ID: {raw!r}")
        return cls(task_id, subtask)

    @property
    def is_subtask(self) -> bool:
        return self.subtask is not None

    @property
    def parent(self) -> TaskRef:
        return TaskRef(self.task_id)

    def child(self, index: int) -> TaskRef:
        return TaskRef(self.task_id, index)

    def sort_key(self) -> tuple[int, int]:
        return (self.task_id, self.subtask or 0)

    def to_wire(self) -> int | str:
        return str(self) if self.is_subtask else self.task_id

    def label(self) -> str:
        return f"Subtask {self}" if self.is_subtask else f"Task {self}"

    def __str__(self) -> str:
        if self.subtask is None:
            return str(self.task_id)
        return f"{self.task_id}.{self.subtask}"


def parse_ref_list(raw: str | int | list) -> list[TaskRef]:
    """Parse ``"1,2,3.1"`` (or a list of ids) into refs, preserving order."""
    if isinstance(raw, (list, tuple)):
        items = list(raw)
    elif isinstance(raw, int):
        items = [raw]
    else:
        items = [p.strip() for p in str(raw).split(",") if p.strip()]
    if not items:
        raise TaskGraphError(ErrorKind.INVALID_ID, f"Invalid task ID: {raw!r}")
    return [TaskRef.parse(item) for item in items]


def _load_dependencies(raw: Any, owner: str) -> list[TaskRef]:
    deps: list[TaskRef] = []
    for entry in _require_list(raw, f"dependencies of {owner}"):
        try:
            deps.append(TaskRef.parse(entry))
        except TaskGraphError:
            logger.warning("Ignoring unreadable dependency %r on %s", entry, owner)
    return deps


def _require_dict(raw: Any, what: str) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise TaskGraphError(
            ErrorKind.INVALID_DOCUMENT, f"{what} must be an object, got {type(raw).__name__}"
        )
    return dict(raw)


def _require_list(raw: Any, what: str) -> list:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise TaskGraphError(
            ErrorKind.INVALID_DOCUMENT, f"{what} must be a list, got {type(raw).__name__}"
        )
    return raw


def _require_id(data: Any, owner: str) -> int:
    if not isinstance(data, dict):
        raise TaskGraphError(
            ErrorKind.INVALID_DOCUMENT, f"{owner} must be an object, got {data!r}"
        )
    raw = data.get("id")
    if isinstance(raw, bool) or not isinstance(raw, (int, str)):
        raise TaskGraphError(ErrorKind.INVALID_DOCUMENT, f"{owner} has no valid id: {raw!r}")
    try:
        return int(raw)
    except ValueError:
        raise TaskGraphError(
            ErrorKind.INVALID_DOCUMENT, f"{owner} has no valid id: {raw!r}"
        ) from None


@dataclass
class _WorkItem:
    id: int
    title: str = ""
    description: str = ""
    details: str = ""
    test_strategy: str = ""
    status: str = "pending"
    priority: str | None = None
    dependencies: list[TaskRef] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def depends_on(self, ref: TaskRef) -> bool:
        return ref in self.dependencies

    def _common_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "details": self.details,
            "testStrategy": self.test_strategy,
            "status": self.status,
        }
        if self.priority is not None:
            d["priority"] = self.priority
        d["dependencies"] = [dep.to_wire() for dep in self.dependencies]
        if self.metadata:
            d["metadata"] = dict(self.metadata)
        return d


@dataclass
class Subtask(_WorkItem):
    """A child unit of work, addressed as ``<parentId>.<id>``."""

    def to_dict(self) -> dict:
        d = self._common_dict()
        d.update(copy.deepcopy(self.extra))
        return d

    @classmethod
    def from_dict(cls, data: dict, parent_id: int) -> Subtask:
        owner = f"subtask of task {parent_id}"
        return cls(
            id=_require_id(data, owner),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            details=str(data.get("details") or ""),
            test_strategy=str(data.get("testStrategy") or ""),
            status=str(data.get("status") or "pending"),
            priority=data.get("priority"),
            dependencies=_load_dependencies(data.get("dependencies"), owner),
            metadata=_require_dict(data.get("metadata"), f"metadata of {owner}"),
            extra={k: v for k, v in data.items() if k not in _ITEM_KEYS},
        )

    def to_task(self, task_id: int, tags: list[str] | None = None) -> Task:
        """Promote to a top-level task carrying over every field."""
        return Task(
            id=task_id,
            title=self.title,
            description=self.description,
            details=self.details,
            test_strategy=self.test_strategy,
            status=self.status,
            priority=self.priority or DEFAULT_PRIORITY,
            dependencies=list(self.dependencies),
            metadata=dict(self.metadata),
            extra=copy.deepcopy(self.extra),
            tags=list(tags or []),
        )


@dataclass
class Task(_WorkItem):
    """A top-level unit of work, integer-identified within a tag."""

    priority: str | None = DEFAULT_PRIORITY
    subtasks: list[Subtask] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    @property
    def ref(self) -> TaskRef:
        return TaskRef(self.id)

    def find_subtask(self, index: int) -> Subtask | None:
        for subtask in self.subtasks:
            if subtask.id == index:
                return subtask
        return None

    def renumber_subtasks(self) -> None:
        for i, subtask in enumerate(self.subtasks, start=1):
            subtask.id = i

    def to_subtask(self, index: int) -> Subtask:
        """Demote to a subtask; nested subtasks are not carried (callers flatten them)."""
        return Subtask(
            id=index,
            title=self.title,
            description=self.description,
            details=self.details,
            test_strategy=self.test_strategy,
            status=self.status,
            priority=self.priority,
            dependencies=list(self.dependencies),
            metadata=dict(self.metadata),
            extra=copy.deepcopy(self.extra),
        )

    def to_dict(self) -> dict:
        d = self._common_dict()
        d["subtasks"] = [s.to_dict() for s in self.subtasks]
        if self.tags:
            d["tags"] = list(self.tags)
        d.update(copy.deepcopy(self.extra))
        return d

    @classmethod
    def from_dict(cls, data: dict) -> Task:
        task_id = _require_id(data, "task")
        owner = f"task {task_id}"
        subtasks = _require_list(data.get("subtasks"), f"subtasks of {owner}")
        return cls(
            id=task_id,
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            details=str(data.get("details") or ""),
            test_strategy=str(data.get("testStrategy") or ""),
            status=str(data.get("status") or "pending"),
            priority=data.get("priority") or DEFAULT_PRIORITY,
            dependencies=_load_dependencies(data.get("dependencies"), owner),
            subtasks=[Subtask.from_dict(s, task_id) for s in subtasks],
            metadata=_require_dict(data.get("metadata"), f"metadata of {owner}"),
            tags=list(_require_list(data.get("tags"), f"tags of {owner}")),
            extra={k: v for k, v in data.items() if k not in _TASK_KEYS},
        )


@dataclass
class Tag:
    """A named partition of the task list."""

    name: str
    tasks: list[Task] = field(default_factory=list)
    description: str = ""
    created: str = ""
    metadata_extra: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def completed_count(self) -> int:
        return sum(1 for t in self.tasks if t.status == "done")

    def to_dict(self) -> dict:
        metadata: dict[str, Any] = {}
        if self.created:
            metadata["created"] = self.created
        if self.description:
            metadata["description"] = self.description
        metadata.update(copy.deepcopy(self.metadata_extra))
        d: dict[str, Any] = {"tasks": [t.to_dict() for t in self.tasks]}
        if metadata:
            d["metadata"] = metadata
        d.update(copy.deepcopy(self.extra))
        return d

    @classmethod
    def from_dict(cls, name: str, data: dict) -> Tag:
        metadata = _require_dict(data.get("metadata"), f"metadata of tag '{name}'")
        tasks = _require_list(data.get("tasks"), f"tasks of tag '{name}'")
        return cls(
            name=name,
            tasks=[Task.from_dict(t) for t in tasks],
            description=str(metadata.pop("description", "") or ""),
            created=str(metadata.pop("created", "") or ""),
            metadata_extra=metadata,
            extra={k: v for k, v in data.items() if k not in ("tasks", "metadata")},
        )
