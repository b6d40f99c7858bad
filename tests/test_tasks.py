"""Tests for task lifecycle operations."""

from __future__ import annotations

from unittest.mock import MagicMock

from taskgraph.models import Subtask, Tag, Task, TaskRef
from taskgraph.results import ErrorKind
from taskgraph.store import TaskStore
from taskgraph.tasks import (
    add_subtask,
    add_task,
    clear_subtasks,
    effective_status,
    next_task,
    normalize_priority,
    remove_subtask,
    remove_tasks,
    set_status,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_task(task_id, deps=(), status="pending", priority="medium", subtasks=()):
    return Task(
        id=task_id,
        title=f"Task {task_id}",
        status=status,
        priority=priority,
        dependencies=[TaskRef.parse(d) for d in deps],
        subtasks=[
            Subtask(id=i, title=f"Sub {task_id}.{i}", status=sub_status)
            for i, sub_status in enumerate(subtasks, start=1)
        ],
    )


def _make_store(*tasks):
    store = TaskStore()
    store.tags["master"] = Tag("master", tasks=list(tasks))
    return store


def _deps(store, ref):
    return store.get_item("master", TaskRef.parse(ref)).dependencies


# ===================================================================
# add_task / add_subtask
# ===================================================================


class TestAddTask:
    def test_next_id_and_membership(self):
        store = _make_store(_make_task(1), _make_task(4))
        result = add_task(store, "master", "New", priority="high", dependencies="1")
        assert result.ok
        assert result.message == "Task 5 added successfully"
        task = store.get_task("master", 5)
        assert task.priority == "high"
        assert task.dependencies == [TaskRef(1)]
        assert task.tags == ["master"]

    def test_invalid_priority_falls_back(self):
        store = _make_store()
        result = add_task(store, "master", "New", priority="urgent")
        assert result.ok
        assert store.get_task("master", 1).priority == "medium"
        assert "Invalid priority 'urgent'" in result.warnings[0]

    def test_missing_dependency_adds_nothing(self):
        store = _make_store(_make_task(1))
        result = add_task(store, "master", "New", dependencies="1,99")
        assert result.error_kind is ErrorKind.NOT_FOUND
        assert len(store.tasks("master")) == 1

    def test_title_required(self):
        result = add_task(_make_store(), "master", "  ")
        assert result.error_kind is ErrorKind.INVALID_VALUE

    def test_unknown_tag(self):
        result = add_task(_make_store(), "nope", "New")
        assert result.error_kind is ErrorKind.NOT_FOUND


def test_normalize_priority():
    assert normalize_priority("HIGH") == ("high", None)
    assert normalize_priority(None) == ("medium", None)
    value, warning = normalize_priority("p0")
    assert value == "medium"
    assert warning is not None


class TestAddSubtask:
    def test_appends_subtask(self):
        store = _make_store(_make_task(1, subtasks=["pending"]))
        result = add_subtask(store, "master", 1, title="Second", dependencies="1.1")
        assert result.message == "Subtask 1.2 successfully created"
        assert _deps(store, "1.2") == [TaskRef(1, 1)]

    def test_converts_existing_task(self):
        store = _make_store(
            _make_task(1, subtasks=["pending"]), _make_task(2), _make_task(3, deps=[2])
        )
        sink = MagicMock()
        result = add_subtask(store, "master", 1, task_id=2, snapshots=sink)
        assert result.ok
        assert store.find_task("master", 2) is None
        assert store.get_subtask("master", "1.2").title == "Task 2"
        assert _deps(store, 3) == [TaskRef(1, 2)]
        sink.refresh.assert_called_once_with(store, "master", 2, 1)

    def test_title_or_task_id_required(self):
        result = add_subtask(_make_store(_make_task(1)), "master", 1)
        assert result.error_kind is ErrorKind.INVALID_VALUE

    def test_missing_parent(self):
        result = add_subtask(_make_store(), "master", 3, title="x")
        assert result.error_kind is ErrorKind.NOT_FOUND


# ===================================================================
# Removal
# ===================================================================


class TestRemoveTasks:
    def test_removes_references_and_reports_dependents(self):
        store = _make_store(
            _make_task(1),
            _make_task(2, subtasks=["pending"]),
            _make_task(3, deps=[1, 2, "2.1"]),
        )
        batch = remove_tasks(store, "master", "2")
        assert batch.ok
        result = batch.results[0]
        assert result.data["dependents"] == [TaskRef(3)]
        assert result.warnings
        assert _deps(store, 3) == [TaskRef(1)]

    def test_multiple_subtasks_of_one_parent(self):
        store = _make_store(_make_task(1, subtasks=["pending", "pending", "pending"]))
        batch = remove_tasks(store, "master", "1.1,1.2")
        assert batch.succeeded == 2
        subtasks = store.get_task("master", 1).subtasks
        assert [(s.id, s.title) for s in subtasks] == [(1, "Sub 1.3")]

    def test_repeated_subtask_id_removed_once(self):
        store = _make_store(_make_task(1, subtasks=["pending", "pending", "pending"]))
        batch = remove_tasks(store, "master", "1.1,1.1")
        assert batch.succeeded == 1
        titles = [s.title for s in store.get_task("master", 1).subtasks]
        assert titles == ["Sub 1.2", "Sub 1.3"]

    def test_missing_id_does_not_stop_others(self):
        store = _make_store(_make_task(1), _make_task(2))
        batch = remove_tasks(store, "master", "1,9")
        assert batch.succeeded == 1
        assert batch.failed == 1
        assert [t.id for t in store.tasks("master")] == [2]

    def test_range_skips_gaps(self):
        store = _make_store(_make_task(1), _make_task(2), _make_task(4), _make_task(6))
        batch = remove_tasks(store, "master", from_id=2, to_id=5)
        assert batch.ok
        assert batch.succeeded == 2
        assert [t.id for t in store.tasks("master")] == [1, 6]

    def test_range_needs_both_ends(self):
        batch = remove_tasks(_make_store(_make_task(1)), "master", from_id=1)
        assert batch.results[0].error_kind is ErrorKind.INVALID_VALUE

    def test_empty_range(self):
        batch = remove_tasks(_make_store(_make_task(1)), "master", from_id=5, to_id=8)
        assert batch.results[0].error_kind is ErrorKind.NOT_FOUND

    def test_all(self):
        store = _make_store(_make_task(1), _make_task(2, deps=[1]))
        batch = remove_tasks(store, "master", all_tasks=True)
        assert batch.succeeded == 2
        assert store.tasks("master") == []

    def test_needs_target(self):
        batch = remove_tasks(_make_store(_make_task(1)), "master")
        assert batch.results[0].error_kind is ErrorKind.INVALID_VALUE


class TestRemoveCascade:
    def test_removes_transitive_dependents(self):
        store = _make_store(
            _make_task(1),
            _make_task(2, deps=[1]),
            _make_task(3, deps=[2]),
            _make_task(4),
        )
        batch = remove_tasks(store, "master", "1", cascade=True)
        assert batch.succeeded == 3
        assert [t.id for t in store.tasks("master")] == [4]
        cascaded = [r.data["removed"] for r in batch.results if r.data.get("cascaded")]
        assert cascaded == [TaskRef(2), TaskRef(3)]

    def test_follows_subtasks_of_removed_tasks(self):
        # 3 only depends on 2.1, which goes with task 2.
        store = _make_store(
            _make_task(1),
            _make_task(2, deps=[1], subtasks=["pending"]),
            _make_task(3, deps=["2.1"]),
        )
        remove_tasks(store, "master", "1", cascade=True)
        assert store.tasks("master") == []

    def test_dependent_subtask_removed_alone(self):
        store = _make_store(
            _make_task(1),
            Task(
                id=2,
                title="Task 2",
                subtasks=[
                    Subtask(id=1, title="Sub 2.1", dependencies=[TaskRef(1)]),
                    Subtask(id=2, title="Sub 2.2"),
                ],
            ),
        )
        batch = remove_tasks(store, "master", "1", cascade=True)
        assert batch.ok
        assert [s.title for s in store.get_task("master", 2).subtasks] == ["Sub 2.2"]

    def test_without_cascade_dependents_stay(self):
        store = _make_store(_make_task(1), _make_task(2, deps=[1]))
        remove_tasks(store, "master", "1")
        assert [t.id for t in store.tasks("master")] == [2]
        assert _deps(store, 2) == []


class TestRemoveSubtask:
    def test_remove_renumbers(self):
        store = _make_store(
            _make_task(4, subtasks=["pending", "done"]),
            _make_task(5, deps=["4.2"]),
        )
        result = remove_subtask(store, "master", "4.1")
        assert result.ok
        assert [s.title for s in store.get_task("master", 4).subtasks] == ["Sub 4.2"]
        assert _deps(store, 5) == [TaskRef(4, 1)]

    def test_convert_to_task(self):
        store = _make_store(_make_task(1, subtasks=["pending", "pending"]), _make_task(2))
        result = remove_subtask(store, "master", "1.1", convert=True)
        assert result.message == "Converted subtask 1.1 to task 3"
        assert store.get_task("master", 3).title == "Sub 1.1"
        assert [s.id for s in store.get_task("master", 1).subtasks] == [1]

    def test_requires_subtask_id(self):
        result = remove_subtask(_make_store(_make_task(1)), "master", "1")
        assert result.error_kind is ErrorKind.INVALID_ID


def test_clear_subtasks_drops_references():
    store = _make_store(
        _make_task(1, subtasks=["pending", "pending"]),
        _make_task(2, deps=[1, "1.2"]),
    )
    batch = clear_subtasks(store, "master", "1")
    assert batch.succeeded == 1
    assert store.get_task("master", 1).subtasks == []
    assert _deps(store, 2) == [TaskRef(1)]


def test_clear_subtasks_rejects_subtask_id():
    store = _make_store(_make_task(1, subtasks=["pending", "pending", "pending"]))
    batch = clear_subtasks(store, "master", "1.2")
    assert batch.failed == 1
    assert batch.results[0].error_kind is ErrorKind.INVALID_ID
    assert len(store.get_task("master", 1).subtasks) == 3


def test_clear_subtasks_all():
    store = _make_store(
        _make_task(1, subtasks=["pending"]), _make_task(2), _make_task(3, subtasks=["done"])
    )
    batch = clear_subtasks(store, "master", all_tasks=True)
    assert batch.succeeded == 2
    assert batch.skipped == 1
    assert all(not t.subtasks for t in store.tasks("master"))


def test_clear_subtasks_needs_target():
    batch = clear_subtasks(_make_store(_make_task(1)), "master")
    assert batch.results[0].error_kind is ErrorKind.INVALID_VALUE


# ===================================================================
# Status
# ===================================================================


class TestSetStatus:
    def test_invalid_status(self):
        batch = set_status(_make_store(_make_task(1)), "master", "1", "finished")
        assert batch.results[0].error_kind is ErrorKind.INVALID_VALUE

    def test_done_cascades_to_subtasks(self):
        store = _make_store(_make_task(1, subtasks=["pending", "in-progress"]))
        batch = set_status(store, "master", "1", "done")
        assert batch.ok
        assert [s.status for s in store.get_task("master", 1).subtasks] == ["done", "done"]

    def test_last_subtask_completes_parent(self):
        store = _make_store(_make_task(1, status="in-progress", subtasks=["done", "pending"]))
        batch = set_status(store, "master", "1.2", "done")
        assert store.get_task("master", 1).status == "done"
        assert batch.results[0].data["parent_completed"] == TaskRef(1)

    def test_reports_unblocked_tasks(self):
        store = _make_store(_make_task(1), _make_task(2, deps=[1]), _make_task(3, deps=[1, 2]))
        batch = set_status(store, "master", "1", "done")
        assert batch.unblocked == [TaskRef(2)]

    def test_same_status_is_skipped(self):
        store = _make_store(_make_task(1, status="done"))
        batch = set_status(store, "master", "1", "done")
        assert batch.skipped == 1

    def test_multiple_ids_with_missing(self):
        store = _make_store(_make_task(1), _make_task(2))
        batch = set_status(store, "master", "1,2,7", "in-progress")
        assert batch.succeeded == 2
        assert batch.failed == 1


class TestEffectiveStatus:
    def test_blocked_by_unfinished_dependency(self):
        store = _make_store(_make_task(1), _make_task(2, deps=[1]))
        assert effective_status(store, "master", store.get_task("master", 2)) == "blocked"

    def test_stored_blocked_reads_pending_once_clear(self):
        store = _make_store(
            _make_task(1, status="done"), _make_task(2, deps=[1], status="blocked")
        )
        assert effective_status(store, "master", store.get_task("master", 2)) == "pending"

    def test_settled_statuses_kept(self):
        store = _make_store(_make_task(1), _make_task(2, deps=[1], status="cancelled"))
        assert effective_status(store, "master", store.get_task("master", 2)) == "cancelled"


# ===================================================================
# next_task
# ===================================================================


class TestNextTask:
    def test_priority_then_dependency_count_then_id(self):
        store = _make_store(
            _make_task(1, status="done"),
            _make_task(2, priority="low"),
            _make_task(3, priority="high", deps=[1]),
            _make_task(4, priority="high"),
        )
        ref, item = next_task(store, "master")
        assert ref == TaskRef(4)
        assert item.title == "Task 4"

    def test_skips_tasks_with_unmet_dependencies(self):
        store = _make_store(
            _make_task(1, status="in-progress"), _make_task(2, priority="high", deps=[1])
        )
        assert next_task(store, "master") is None

    def test_subtasks_of_in_progress_task_first(self):
        store = _make_store(
            _make_task(1, priority="high"),
            _make_task(2, status="in-progress", priority="low", subtasks=["done", "pending"]),
        )
        ref, _item = next_task(store, "master")
        assert ref == TaskRef(2, 2)

    def test_empty_tag(self):
        assert next_task(_make_store(), "master") is None
