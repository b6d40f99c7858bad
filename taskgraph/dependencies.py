"""Dependency mutation service: validated add/remove, validate and fix."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .graph import DependencyGraph
from .models import TaskRef, parse_ref_list
from .results import BatchResult, ErrorKind, OperationResult, TaskGraphError
from .store import TaskStore

logger = logging.getLogger(__name__)

# Statuses that flip to "blocked" when they gain an unfinished prerequisite.
ACTIVE_STATUSES = ("in-progress",)


@dataclass
class DependencyIssue:
    """One problem found by ``validate_dependencies``."""

    kind: ErrorKind
    node: TaskRef
    ref: TaskRef | None = None
    cycle: list[TaskRef] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.kind is ErrorKind.DANGLING_REFERENCE:
            return f"{self.node.label()} (missing: {self.ref})"
        if self.kind is ErrorKind.SELF_DEPENDENCY:
            return f"{self.node.label()} depends on itself"
        if self.kind is ErrorKind.SUBTASK_OF_SELF:
            return f"{self.node.label()} depends on its own subtask {self.ref}"
        if self.kind is ErrorKind.DUPLICATE_DEPENDENCY:
            return f"{self.node.label()} lists dependency {self.ref} more than once"
        path = " -> ".join(n.label() for n in self.cycle + self.cycle[:1])
        return f"Circular dependency detected: {path}"

    def to_dict(self) -> dict:
        d = {"kind": self.kind.value, "node": self.node.to_wire(), "message": self.message}
        if self.ref is not None:
            d["ref"] = self.ref.to_wire()
        if self.cycle:
            d["cycle"] = [n.to_wire() for n in self.cycle]
        return d


@dataclass
class ValidationReport:
    tag: str
    task_count: int = 0
    issues: list[DependencyIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict:
        return {
            "tag": self.tag,
            "valid": self.valid,
            "taskCount": self.task_count,
            "issues": [i.to_dict() for i in self.issues],
        }


@dataclass
class FixReport:
    tag: str
    task_count: int = 0
    removed: list[tuple[TaskRef, TaskRef, ErrorKind]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed)

    @property
    def cycles_broken(self) -> list[tuple[TaskRef, TaskRef]]:
        return [
            (src, dep)
            for src, dep, kind in self.removed
            if kind is ErrorKind.CYCLE_DETECTED
        ]

    def to_dict(self) -> dict:
        return {
            "tag": self.tag,
            "changed": self.changed,
            "removed": [
                {"node": src.to_wire(), "ref": dep.to_wire(), "kind": kind.value}
                for src, dep, kind in self.removed
            ],
        }


@dataclass
class DependencyBatchResult(BatchResult):
    """Batch outcome that also counts distinct tasks touched."""

    @property
    def tasks_updated(self) -> int:
        return len({r.data["task"] for r in self.results if r.ok and r.changed})

    @property
    def dependencies_added(self) -> int:
        return self.succeeded

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["tasksUpdated"] = self.tasks_updated
        d["added"] = self.dependencies_added
        return d


# ----------------------------------------------------------------------
# Add / remove
# ----------------------------------------------------------------------


def add_dependency(
    store: TaskStore, tag: str, task_id: int | str, depends_on: int | str
) -> OperationResult:
    """Make ``task_id`` depend on ``depends_on`` within ``tag``."""
    try:
        return _add_dependency(store, tag, TaskRef.parse(task_id), TaskRef.parse(depends_on))
    except TaskGraphError as e:
        logger.debug("add_dependency(%s, %s) rejected: %s", task_id, depends_on, e.message)
        return e.to_result()


def _add_dependency(store: TaskStore, tag: str, ref: TaskRef, dep: TaskRef) -> OperationResult:
    item = store.get_item(tag, ref)
    if ref == dep:
        raise TaskGraphError(ErrorKind.SELF_DEPENDENCY, f"{ref.label()} cannot depend on itself")
    if DependencyGraph.is_descendant_subtask(ref, dep):
        raise TaskGraphError(
            ErrorKind.SUBTASK_OF_SELF, f"Task {ref} cannot depend on its own subtask {dep}"
        )
    if not store.has_item(tag, dep):
        raise TaskGraphError(
            ErrorKind.NOT_FOUND, f"Dependency {dep.label()} not found in tag '{tag}'"
        )
    if item.depends_on(dep):
        return OperationResult.noop(
            f"{ref.label()} already depends on {dep}. No changes made.",
            task=ref,
            dependency=dep,
            reason="AlreadyExists",
        )
    graph = DependencyGraph.from_store(store, tag)
    if graph.would_create_cycle(ref, dep):
        raise TaskGraphError(
            ErrorKind.CYCLE_DETECTED,
            f"Cannot add dependency {ref} -> {dep}: would create a circular dependency",
        )

    item.dependencies.append(dep)
    result = OperationResult.success(
        f"Dependency added successfully: {ref} now depends on {dep}",
        task=ref,
        dependency=dep,
        chain=DependencyGraph.from_store(store, tag).dependency_chain(ref),
    )
    logger.info("[%s] %s now depends on %s", tag, ref, dep)

    dep_item = store.get_item(tag, dep)
    if item.status in ACTIVE_STATUSES and dep_item.status != "done":
        result.data["status_change"] = (item.status, "blocked")
        item.status = "blocked"
        result.warnings.append(f"{ref.label()}: Status changed to: blocked")
        logger.info("[%s] %s status changed to blocked (waiting on %s)", tag, ref, dep)
    return result


def add_dependencies(
    store: TaskStore,
    tag: str,
    task_ids: str | list,
    depends_on: str | list,
) -> DependencyBatchResult:
    """Apply every ``task x dependency`` pair; failures are collected per pair."""
    batch = DependencyBatchResult()
    try:
        refs = parse_ref_list(task_ids)
        deps = parse_ref_list(depends_on)
    except TaskGraphError as e:
        batch.add(e.to_result())
        return batch

    for ref in refs:
        for dep in deps:
            try:
                batch.add(_add_dependency(store, tag, ref, dep))
            except TaskGraphError as e:
                logger.warning("[%s] %s -> %s: %s", tag, ref, dep, e.message)
                batch.add(e.to_result())
    logger.info(
        "[%s] %d tasks updated, %d dependencies added",
        tag,
        batch.tasks_updated,
        batch.dependencies_added,
    )
    return batch


def expand_range(from_id: int | str, to_id: int | str) -> list[TaskRef]:
    start = TaskRef.parse(from_id)
    end = TaskRef.parse(to_id)
    if start.is_subtask or end.is_subtask:
        raise TaskGraphError(ErrorKind.INVALID_ID, "Ranges accept task IDs only, not subtask IDs")
    if start.task_id > end.task_id:
        raise TaskGraphError(
            ErrorKind.INVALID_VALUE, f"Invalid range: {start} is greater than {end}"
        )
    return [TaskRef(i) for i in range(start.task_id, end.task_id + 1)]


def add_dependencies_in_range(
    store: TaskStore,
    tag: str,
    from_id: int | str,
    to_id: int | str,
    depends_on: str | list,
) -> DependencyBatchResult:
    """Inclusive ``from_id..to_id`` form of ``add_dependencies``."""
    try:
        refs = expand_range(from_id, to_id)
    except TaskGraphError as e:
        batch = DependencyBatchResult()
        batch.add(e.to_result())
        return batch
    return add_dependencies(store, tag, refs, depends_on)


def remove_dependency(
    store: TaskStore, tag: str, task_id: int | str, depends_on: int | str
) -> OperationResult:
    """Remove one edge. Status is not recomputed here."""
    try:
        ref = TaskRef.parse(task_id)
        dep = TaskRef.parse(depends_on)
        item = store.get_item(tag, ref)
    except TaskGraphError as e:
        return e.to_result()

    if not item.depends_on(dep):
        return OperationResult.noop(
            f"{ref.label()} does not depend on {dep}, no changes made",
            task=ref,
            dependency=dep,
            reason="NoOp",
        )
    item.dependencies = [d for d in item.dependencies if d != dep]
    logger.info("[%s] Removed dependency %s from %s", tag, dep, ref)
    return OperationResult.success(
        f"Removing dependency {dep} from task {ref}", task=ref, dependency=dep
    )


# ----------------------------------------------------------------------
# Validate / fix
# ----------------------------------------------------------------------


def validate_dependencies(store: TaskStore, tag: str) -> ValidationReport:
    """Report every structural dependency problem in the tag without mutating it."""
    report = ValidationReport(tag=tag, task_count=len(store.tasks(tag)))
    graph = DependencyGraph.from_store(store, tag)

    for node, dep in graph.find_dangling_references():
        report.issues.append(DependencyIssue(ErrorKind.DANGLING_REFERENCE, node, dep))
    for node in graph.find_self_references():
        report.issues.append(DependencyIssue(ErrorKind.SELF_DEPENDENCY, node, node))
    for node, dep in graph.find_subtask_of_self():
        report.issues.append(DependencyIssue(ErrorKind.SUBTASK_OF_SELF, node, dep))
    for node, dep in graph.find_duplicates():
        report.issues.append(DependencyIssue(ErrorKind.DUPLICATE_DEPENDENCY, node, dep))
    for cycle in graph.find_cycles():
        report.issues.append(DependencyIssue(ErrorKind.CYCLE_DETECTED, cycle[0], cycle=cycle))

    logger.debug("[%s] validation found %d issue(s)", tag, len(report.issues))
    return report


def edge_to_break(cycle: list[TaskRef]) -> tuple[TaskRef, TaskRef]:
    """Pick the cycle edge whose source has the highest id.

    Earlier-declared (lower id) dependencies are kept.
    """
    edges = [(cycle[i], cycle[(i + 1) % len(cycle)]) for i in range(len(cycle))]
    return max(edges, key=lambda edge: edge[0].sort_key())


def fix_dependencies(store: TaskStore, tag: str) -> FixReport:
    """Remove invalid references, then break remaining cycles one edge at a time."""
    report = FixReport(tag=tag, task_count=len(store.tasks(tag)))

    for owner, item in store.iter_items(tag):
        kept: list[TaskRef] = []
        for dep in item.dependencies:
            if dep == owner:
                kind = ErrorKind.SELF_DEPENDENCY
            elif DependencyGraph.is_descendant_subtask(owner, dep):
                kind = ErrorKind.SUBTASK_OF_SELF
            elif not store.has_item(tag, dep):
                kind = ErrorKind.DANGLING_REFERENCE
            elif dep in kept:
                kind = ErrorKind.DUPLICATE_DEPENDENCY
            else:
                kept.append(dep)
                continue
            report.removed.append((owner, dep, kind))
            logger.info("[%s] Fixed %s: removed %s from %s", tag, kind.value, dep, owner)
        item.dependencies = kept

    while True:
        cycles = DependencyGraph.from_store(store, tag).find_cycles()
        if not cycles:
            break
        source, target = edge_to_break(cycles[0])
        item = store.get_item(tag, source)
        item.dependencies = [d for d in item.dependencies if d != target]
        report.removed.append((source, target, ErrorKind.CYCLE_DETECTED))
        logger.info("[%s] Fixed circular dependency: removed %s -> %s", tag, source, target)

    return report
