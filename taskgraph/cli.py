"""CLI entry point for taskgraph."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from .dependencies import (
    add_dependencies,
    add_dependencies_in_range,
    fix_dependencies,
    remove_dependency,
    validate_dependencies,
)
from .graph import DependencyGraph
from .models import DEFAULT_TAG, STATUSES, TaskRef
from .move import move_tasks
from .results import BatchResult, OperationResult, TaskGraphError
from .store import ProjectState, TaskStore, load_state, save_state, state_path_for
from .tags import add_tag, copy_tag, delete_tag, list_tags, rename_tag, use_tag
from .tasks import (
    add_subtask,
    add_task,
    clear_subtasks,
    effective_status,
    next_task,
    remove_subtask,
    remove_tasks,
    set_status,
)
from .writer import TaskFileWriter, generate_task_files

DEFAULT_TASKS_FILE = ".taskgraph/tasks/tasks.json"


@dataclass
class _Context:
    store: TaskStore
    state: ProjectState
    tag: str
    tasks_path: Path
    output_dir: Path
    store_dirty: bool = False
    state_dirty: bool = False


# ----------------------------------------------------------------------
# Reporting
# ----------------------------------------------------------------------


def _report(result: OperationResult) -> int:
    for warning in result.warnings:
        logging.warning("%s", warning)
    if result.ok:
        logging.info("%s", result.message)
        return 0
    kind = result.error_kind.value if result.error_kind else "Error"
    logging.error("[%s] %s", kind, result.message)
    return 1


def _report_batch(batch: BatchResult) -> int:
    for result in batch.results:
        _report(result)
    logging.info("%s", batch.summary())
    if batch.errors:
        logging.warning("Errors encountered:")
        for err in batch.errors:
            logging.warning("  - %s", err)
    return 0 if batch.ok else 1


def _format_chain(chain: list[TaskRef]) -> str:
    return " -> ".join(str(r) for r in chain)


def _single(ctx: _Context, result: OperationResult) -> tuple[int, dict]:
    if result.ok and result.changed:
        ctx.store_dirty = True
    return _report(result), result.to_dict()


def _batch(ctx: _Context, batch: BatchResult) -> tuple[int, dict]:
    if batch.succeeded:
        ctx.store_dirty = True
    return _report_batch(batch), batch.to_dict()


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


def _cmd_list(args, ctx: _Context) -> tuple[int, dict]:
    tasks = ctx.store.tasks(ctx.tag)
    shown = []
    for task in tasks:
        status = effective_status(ctx.store, ctx.tag, task)
        if args.status and status != args.status:
            continue
        deps = ", ".join(str(d) for d in task.dependencies) or "none"
        logging.info(
            "%4d [%s] %s (priority: %s, deps: %s)",
            task.id,
            status,
            task.title,
            task.priority,
            deps,
        )
        if args.with_subtasks:
            for subtask in task.subtasks:
                sub_status = effective_status(ctx.store, ctx.tag, subtask)
                logging.info("     %d.%d [%s] %s", task.id, subtask.id, sub_status, subtask.title)
        shown.append({**task.to_dict(), "effectiveStatus": status})
    if not tasks:
        logging.info("No tasks in tag '%s'", ctx.tag)
    return 0, {"tag": ctx.tag, "tasks": shown}


def _cmd_show(args, ctx: _Context) -> tuple[int, dict]:
    ref = TaskRef.parse(args.id)
    item = ctx.store.get_item(ctx.tag, ref)
    logging.info("%s: %s", ref.label(), item.title)
    logging.info("Status: %s", effective_status(ctx.store, ctx.tag, item))
    logging.info("Priority: %s", item.priority or "medium")
    logging.info("Dependencies: %s", ", ".join(str(d) for d in item.dependencies) or "None")
    chain = DependencyGraph.from_store(ctx.store, ctx.tag).dependency_chain(ref)
    if chain:
        logging.info("Dependency chain: %s", _format_chain(chain))
    if item.description:
        logging.info("Description: %s", item.description)
    if item.details:
        logging.info("Details: %s", item.details)
    for subtask in getattr(item, "subtasks", []):
        logging.info("  %d.%d [%s] %s", ref.task_id, subtask.id, subtask.status, subtask.title)
    return 0, {"tag": ctx.tag, "item": item.to_dict(), "chain": [r.to_wire() for r in chain]}


def _cmd_next(args, ctx: _Context) -> tuple[int, dict]:
    found = next_task(ctx.store, ctx.tag)
    if found is None:
        logging.info("No eligible next task in tag '%s'", ctx.tag)
        return 0, {"tag": ctx.tag, "next": None}
    ref, item = found
    logging.info("Next: %s - %s", ref.label(), item.title)
    return 0, {"tag": ctx.tag, "next": {"id": ref.to_wire(), **item.to_dict()}}


def _cmd_add_task(args, ctx: _Context) -> tuple[int, dict]:
    result = add_task(
        ctx.store,
        ctx.tag,
        args.title,
        description=args.description,
        details=args.details,
        test_strategy=args.test_strategy,
        priority=args.priority,
        dependencies=args.dependencies,
    )
    return _single(ctx, result)


def _cmd_add_subtask(args, ctx: _Context) -> tuple[int, dict]:
    result = add_subtask(
        ctx.store,
        ctx.tag,
        args.parent,
        title=args.title,
        description=args.description,
        details=args.details,
        status=args.status,
        priority=args.priority,
        dependencies=args.dependencies,
        task_id=args.task_id,
        snapshots=_snapshots(args, ctx),
    )
    return _single(ctx, result)


def _cmd_remove_task(args, ctx: _Context) -> tuple[int, dict]:
    batch = remove_tasks(
        ctx.store,
        ctx.tag,
        args.id,
        from_id=args.from_id,
        to_id=args.to_id,
        all_tasks=args.all,
        cascade=args.cascade,
    )
    return _batch(ctx, batch)


def _cmd_remove_subtask(args, ctx: _Context) -> tuple[int, dict]:
    result = remove_subtask(
        ctx.store, ctx.tag, args.id, convert=args.convert, snapshots=_snapshots(args, ctx)
    )
    return _single(ctx, result)


def _cmd_clear_subtasks(args, ctx: _Context) -> tuple[int, dict]:
    return _batch(ctx, clear_subtasks(ctx.store, ctx.tag, args.id, all_tasks=args.all))


def _cmd_set_status(args, ctx: _Context) -> tuple[int, dict]:
    batch = set_status(ctx.store, ctx.tag, args.id, args.status)
    code, out = _batch(ctx, batch)
    for ref in batch.unblocked:
        logging.info("Unblocked: %s", ref.label())
    return code, out


def _cmd_add_dependency(args, ctx: _Context) -> tuple[int, dict]:
    if args.from_id is not None or args.to_id is not None:
        if args.from_id is None or args.to_id is None:
            logging.error("Both --from and --to are required for a range")
            return 1, {"ok": False, "message": "Both --from and --to are required for a range"}
        batch = add_dependencies_in_range(
            ctx.store, ctx.tag, args.from_id, args.to_id, args.depends_on
        )
    elif args.id:
        batch = add_dependencies(ctx.store, ctx.tag, args.id, args.depends_on)
    else:
        logging.error("Either --id or --from/--to must be provided")
        return 1, {"ok": False, "message": "Either --id or --from/--to must be provided"}
    code, out = _batch(ctx, batch)
    for result in batch.results:
        if result.ok and result.changed:
            logging.info(
                "Dependency chain: %s -> %s",
                result.data["task"],
                _format_chain(result.data["chain"]),
            )
    if batch.succeeded:
        logging.info("%d tasks updated", batch.tasks_updated)
    return code, out


def _cmd_remove_dependency(args, ctx: _Context) -> tuple[int, dict]:
    return _single(ctx, remove_dependency(ctx.store, ctx.tag, args.id, args.depends_on))


def _cmd_validate(args, ctx: _Context) -> tuple[int, dict]:
    report = validate_dependencies(ctx.store, ctx.tag)
    if report.valid:
        logging.info(
            "All dependencies are valid in tag '%s' (%d tasks checked)", ctx.tag, report.task_count
        )
        return 0, report.to_dict()
    logging.warning("Found %d dependency issue(s) in tag '%s':", len(report.issues), ctx.tag)
    for issue in report.issues:
        logging.warning("  - %s", issue.message)
    return 1, report.to_dict()


def _cmd_fix(args, ctx: _Context) -> tuple[int, dict]:
    report = fix_dependencies(ctx.store, ctx.tag)
    if not report.changed:
        logging.info("No dependency issues found in tag '%s'", ctx.tag)
    else:
        ctx.store_dirty = True
        for source, target, kind in report.removed:
            logging.info("Removed %s -> %s (%s)", source, target, kind.value)
        logging.info("Fixed %d dependency issue(s)", len(report.removed))
    return 0, report.to_dict()


def _cmd_move(args, ctx: _Context) -> tuple[int, dict]:
    if not args.from_ids or not args.to_ids:
        logging.error("Both --from and --to parameters are required")
        return 1, {"ok": False, "message": "Both --from and --to parameters are required"}
    batch = move_tasks(ctx.store, ctx.tag, args.from_ids, args.to_ids, _snapshots(args, ctx))
    return _batch(ctx, batch)


def _cmd_generate(args, ctx: _Context) -> tuple[int, dict]:
    result = generate_task_files(ctx.store, ctx.tag, ctx.output_dir)
    return 0, result.to_dict()


def _cmd_tags(args, ctx: _Context) -> tuple[int, dict]:
    summaries = list_tags(ctx.store, ctx.state.current_tag)
    for s in summaries:
        marker = "*" if s.current else " "
        line = f"{marker} {s.name}: {s.task_count} tasks, {s.completed} completed"
        if args.show_metadata and (s.created or s.description):
            line += f" (created {s.created or '-'}) {s.description}".rstrip()
        logging.info("%s", line)
    return 0, {"currentTag": ctx.state.current_tag, "tags": [s.to_dict() for s in summaries]}


def _cmd_add_tag(args, ctx: _Context) -> tuple[int, dict]:
    source = args.copy_from
    if args.copy_from_current:
        source = ctx.tag
    return _single(ctx, add_tag(ctx.store, args.name, args.description, copy_from=source))


def _cmd_copy_tag(args, ctx: _Context) -> tuple[int, dict]:
    return _single(ctx, copy_tag(ctx.store, args.source, args.target, args.description))


def _cmd_rename_tag(args, ctx: _Context) -> tuple[int, dict]:
    result = rename_tag(ctx.store, args.old, args.new, ctx.state)
    if "current_tag" in result.data:
        ctx.state_dirty = True
    return _single(ctx, result)


def _cmd_delete_tag(args, ctx: _Context) -> tuple[int, dict]:
    result = delete_tag(ctx.store, args.name, ctx.state)
    if "current_tag" in result.data:
        ctx.state_dirty = True
    return _single(ctx, result)


def _cmd_use_tag(args, ctx: _Context) -> tuple[int, dict]:
    result = use_tag(ctx.store, args.name, ctx.state)
    if result.ok and result.changed:
        ctx.state_dirty = True
    return _report(result), result.to_dict()


def _snapshots(args, ctx: _Context) -> TaskFileWriter | None:
    if getattr(args, "no_generate", False):
        return None
    return TaskFileWriter(ctx.output_dir)


COMMANDS = {
    "list": _cmd_list,
    "show": _cmd_show,
    "next": _cmd_next,
    "add-task": _cmd_add_task,
    "add-subtask": _cmd_add_subtask,
    "remove-task": _cmd_remove_task,
    "remove-subtask": _cmd_remove_subtask,
    "clear-subtasks": _cmd_clear_subtasks,
    "set-status": _cmd_set_status,
    "add-dependency": _cmd_add_dependency,
    "remove-dependency": _cmd_remove_dependency,
    "validate-dependencies": _cmd_validate,
    "fix-dependencies": _cmd_fix,
    "move": _cmd_move,
    "generate": _cmd_generate,
    "tags": _cmd_tags,
    "add-tag": _cmd_add_tag,
    "copy-tag": _cmd_copy_tag,
    "rename-tag": _cmd_rename_tag,
    "delete-tag": _cmd_delete_tag,
    "use-tag": _cmd_use_tag,
}

# Commands that manage tags themselves and so may run while the selected tag is gone.
TAG_COMMANDS = {"tags", "add-tag", "copy-tag", "rename-tag", "delete-tag", "use-tag"}


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskgraph",
        description="Manage a tagged task list with subtasks and dependencies.",
    )
    parser.add_argument(
        "--file", "-f",
        type=str,
        default=None,
        help=f"Path to tasks.json (or set TASKGRAPH_FILE; default {DEFAULT_TASKS_FILE})",
    )
    parser.add_argument(
        "--tag",
        type=str,
        default=None,
        help="Tag to operate on (or set TASKGRAPH_TAG; default: current tag from state.json)",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Directory for task snapshot files (default: next to tasks.json)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--output-json",
        type=str,
        default=None,
        help="Write the command result to a JSON file",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Create an empty tasks file")

    p = sub.add_parser("list", help="List tasks in the tag")
    p.add_argument("--status", choices=STATUSES, default=None, help="Only show this status")
    p.add_argument("--with-subtasks", action="store_true", help="Include subtasks")

    p = sub.add_parser("show", help="Show one task or subtask")
    p.add_argument("id", help="Task or subtask ID (e.g. 5 or 5.2)")

    sub.add_parser("next", help="Show the next task to work on")

    p = sub.add_parser("add-task", help="Add a task")
    p.add_argument("--title", required=True)
    p.add_argument("--description", default="")
    p.add_argument("--details", default="")
    p.add_argument("--test-strategy", default="")
    p.add_argument("--priority", default=None, help="high, medium or low")
    p.add_argument("--dependencies", default=None, help="Comma-separated IDs")

    p = sub.add_parser("add-subtask", help="Add a subtask, or convert a task into one")
    p.add_argument("--parent", required=True, help="Parent task ID")
    p.add_argument("--title", default=None)
    p.add_argument("--task-id", default=None, help="Existing task to convert into a subtask")
    p.add_argument("--description", default="")
    p.add_argument("--details", default="")
    p.add_argument("--status", choices=STATUSES, default="pending")
    p.add_argument("--priority", default=None, help="high, medium or low")
    p.add_argument("--dependencies", default=None, help="Comma-separated IDs")
    p.add_argument("--no-generate", action="store_true", help="Skip snapshot refresh")

    p = sub.add_parser("remove-task", help="Remove tasks or subtasks")
    group = p.add_mutually_exclusive_group()
    group.add_argument("--id", default=None, help="Comma-separated IDs")
    group.add_argument("--all", action="store_true", help="Remove every task in the tag")
    p.add_argument("--from", dest="from_id", default=None, help="Start of an inclusive ID range")
    p.add_argument("--to", dest="to_id", default=None, help="End of an inclusive ID range")
    p.add_argument(
        "--cascade", action="store_true", help="Also remove everything that depends on the targets"
    )

    p = sub.add_parser("remove-subtask", help="Remove a subtask")
    p.add_argument("--id", required=True, help="Subtask ID (parentId.subtaskId)")
    p.add_argument("--convert", action="store_true", help="Convert to a standalone task")
    p.add_argument("--no-generate", action="store_true", help="Skip snapshot refresh")

    p = sub.add_parser("clear-subtasks", help="Remove all subtasks from tasks")
    group = p.add_mutually_exclusive_group(required=True)
    group.add_argument("--id", default=None, help="Comma-separated task IDs")
    group.add_argument("--all", action="store_true", help="Clear subtasks from every task")

    p = sub.add_parser("set-status", help="Set task status")
    p.add_argument("--id", required=True, help="Comma-separated IDs")
    p.add_argument("--status", required=True, help=", ".join(STATUSES))

    p = sub.add_parser("add-dependency", help="Add dependencies")
    p.add_argument("--id", default=None, help="Comma-separated IDs that gain the dependency")
    p.add_argument("--from", dest="from_id", default=None, help="Start of an inclusive ID range")
    p.add_argument("--to", dest="to_id", default=None, help="End of an inclusive ID range")
    p.add_argument("--depends-on", required=True, help="Comma-separated prerequisite IDs")

    p = sub.add_parser("remove-dependency", help="Remove a dependency")
    p.add_argument("--id", required=True)
    p.add_argument("--depends-on", required=True)

    sub.add_parser("validate-dependencies", help="Report dependency problems")
    sub.add_parser("fix-dependencies", help="Remove invalid dependencies and break cycles")

    p = sub.add_parser("move", help="Move tasks or subtasks to new IDs")
    p.add_argument("--from", dest="from_ids", default=None, help="Comma-separated source IDs")
    p.add_argument("--to", dest="to_ids", default=None, help="Comma-separated destination IDs")
    p.add_argument("--no-generate", action="store_true", help="Skip snapshot refresh")

    sub.add_parser("generate", help="Write task snapshot files")

    p = sub.add_parser("tags", help="List tags")
    p.add_argument("--show-metadata", action="store_true")

    p = sub.add_parser("add-tag", help="Create a tag")
    p.add_argument("name")
    p.add_argument("--description", default="")
    p.add_argument("--copy-from", default=None, help="Copy tasks from this tag")
    p.add_argument(
        "--copy-from-current", action="store_true", help="Copy tasks from the current tag"
    )

    p = sub.add_parser("copy-tag", help="Copy a tag with all of its tasks")
    p.add_argument("source")
    p.add_argument("target")
    p.add_argument("--description", default=None)

    p = sub.add_parser("rename-tag", help="Rename a tag")
    p.add_argument("old")
    p.add_argument("new")

    p = sub.add_parser("delete-tag", help="Delete a tag and its tasks")
    p.add_argument("name")

    p = sub.add_parser("use-tag", help="Switch the current tag")
    p.add_argument("name")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(message)s",
    )

    tasks_path = Path(args.file or os.environ.get("TASKGRAPH_FILE") or DEFAULT_TASKS_FILE)
    state_path = state_path_for(tasks_path)

    if args.command == "init":
        if tasks_path.exists():
            logging.error("Tasks file already exists: %s", tasks_path)
            return 1
        TaskStore().save(tasks_path)
        save_state(state_path, ProjectState())
        logging.info("Created %s", tasks_path)
        return 0

    try:
        store = TaskStore.load(tasks_path)
    except TaskGraphError as e:
        logging.error("%s", e.message)
        return 1
    state = load_state(state_path)
    tag = args.tag or os.environ.get("TASKGRAPH_TAG") or state.current_tag or DEFAULT_TAG
    if args.command not in TAG_COMMANDS and not store.has_tag(tag):
        logging.error('Tag "%s" does not exist', tag)
        return 1

    ctx = _Context(
        store=store,
        state=state,
        tag=tag,
        tasks_path=tasks_path,
        output_dir=Path(args.output_dir) if args.output_dir else tasks_path.parent,
    )
    logging.debug("Using %s, tag '%s'", tasks_path, tag)

    try:
        code, out = COMMANDS[args.command](args, ctx)
    except TaskGraphError as e:
        logging.error("[%s] %s", e.kind.value, e.message)
        code, out = 1, e.to_result().to_dict()

    # Nothing reaches disk until the command's in-memory work is finished.
    if ctx.store_dirty:
        store.save(tasks_path)
        logging.debug("Saved %s", tasks_path)
    if ctx.state_dirty:
        save_state(state_path, state)

    if args.output_json:
        Path(args.output_json).write_text(json.dumps(out, indent=2))
        logging.info("Results written to %s", args.output_json)

    return code


if __name__ == "__main__":
    sys.exit(main())
