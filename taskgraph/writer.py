"""Write per-task markdown snapshot files next to tasks.json."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from .models import DEFAULT_TAG, Task, TaskRef
from .store import TaskStore

logger = logging.getLogger(__name__)

RE_TASK_FILE = re.compile(r"^task-(\d+)\.md$")


def task_filename(task_id: int) -> str:
    return f"task-{task_id:03d}.md"


def tag_output_dir(output_dir: str | Path, tag: str) -> Path:
    """Snapshots for ``master`` live in ``output_dir``; other tags get a subdirectory."""
    base = Path(output_dir)
    return base if tag == DEFAULT_TAG else base / tag


def _format_deps(deps: list[TaskRef]) -> str:
    return ", ".join(str(d) for d in deps) if deps else "None"


def render_task(task: Task, tag: str = DEFAULT_TAG) -> str:
    """Render one task (with its subtasks) as markdown."""
    lines = [
        f"# Task {task.id}: {task.title}",
        "",
        f"Status: {task.status}",
        f"Priority: {task.priority or 'medium'}",
        f"Dependencies: {_format_deps(task.dependencies)}",
    ]
    if tag != DEFAULT_TAG:
        lines.append(f"Tag: {tag}")
    lines.append("")

    if task.description:
        lines += ["## Description", "", task.description, ""]
    if task.details:
        lines += ["## Details", "", task.details, ""]
    if task.test_strategy:
        lines += ["## Test Strategy", "", task.test_strategy, ""]

    if task.subtasks:
        lines += ["## Subtasks", ""]
        for subtask in task.subtasks:
            lines.append(f"### {task.id}.{subtask.id}: {subtask.title}")
            lines.append("")
            lines.append(f"Status: {subtask.status}")
            lines.append(f"Dependencies: {_format_deps(subtask.dependencies)}")
            if subtask.description:
                lines += ["", subtask.description]
            if subtask.details:
                lines += ["", subtask.details]
            lines.append("")

    return "\n".join(lines).rstrip("\n") + "\n"


def write_task_file(task: Task, tag: str, output_dir: str | Path) -> bool:
    """Write a task's snapshot.

    Returns:
        True if the file was created or changed, False if it was already current.
    """
    directory = tag_output_dir(output_dir, tag)
    path = directory / task_filename(task.id)
    content = render_task(task, tag)
    if path.is_file() and path.read_text(encoding="utf-8") == content:
        logger.debug("[SNAPSHOT] %s unchanged", path)
        return False
    directory.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    logger.debug("[SNAPSHOT] wrote %s", path)
    return True


def remove_task_file(task_id: int, tag: str, output_dir: str | Path) -> bool:
    path = tag_output_dir(output_dir, tag) / task_filename(task_id)
    if not path.is_file():
        return False
    path.unlink()
    logger.debug("[SNAPSHOT] removed %s", path)
    return True


@dataclass
class GenerateResult:
    written: list[Path] = field(default_factory=list)
    unchanged: int = 0
    removed: list[Path] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "written": [str(p) for p in self.written],
            "unchanged": self.unchanged,
            "removed": [str(p) for p in self.removed],
        }


def generate_task_files(store: TaskStore, tag: str, output_dir: str | Path) -> GenerateResult:
    """Write a snapshot per task in ``tag`` and delete snapshots of tasks that no longer exist."""
    result = GenerateResult()
    directory = tag_output_dir(output_dir, tag)
    ids = set()
    for task in store.tasks(tag):
        ids.add(task.id)
        if write_task_file(task, tag, output_dir):
            result.written.append(directory / task_filename(task.id))
        else:
            result.unchanged += 1

    if directory.is_dir():
        for path in sorted(directory.iterdir()):
            m = RE_TASK_FILE.match(path.name)
            if m and path.is_file() and int(m.group(1)) not in ids:
                path.unlink()
                result.removed.append(path)
                logger.info("Removed orphaned snapshot %s", path)

    logger.info(
        "[%s] Snapshots: %d written, %d unchanged, %d removed",
        tag,
        len(result.written),
        result.unchanged,
        len(result.removed),
    )
    return result


class TaskFileWriter:
    """Snapshot collaborator for the move service."""

    def __init__(self, output_dir: str | Path) -> None:
        self.output_dir = Path(output_dir)

    def refresh(self, store: TaskStore, tag: str, old_id: int | None, new_id: int) -> None:
        if old_id is not None and old_id != new_id:
            remove_task_file(old_id, tag, self.output_dir)
        task = store.find_task(tag, new_id)
        if task is None:
            remove_task_file(new_id, tag, self.output_dir)
        else:
            write_task_file(task, tag, self.output_dir)
