"""Tests for the task store and its persistence."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from taskgraph.models import Subtask, Tag, Task, TaskRef
from taskgraph.results import ErrorKind, TaskGraphError
from taskgraph.store import ProjectState, TaskStore, load_state, save_state, state_path_for

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_task(task_id, deps=(), subtasks=0, **kwargs):
    return Task(
        id=task_id,
        title=f"Task {task_id}",
        dependencies=[TaskRef.parse(d) for d in deps],
        subtasks=[Subtask(id=i, title=f"Sub {task_id}.{i}") for i in range(1, subtasks + 1)],
        **kwargs,
    )


def _make_store(*tasks, tag="master"):
    store = TaskStore()
    store.tags[tag] = Tag(tag, tasks=list(tasks))
    return store


# ===================================================================
# Document loading
# ===================================================================


class TestFromDict:
    def test_legacy_document_loads_as_master(self):
        store = TaskStore.from_dict({"tasks": [{"id": 1, "title": "A"}]})
        assert list(store.tags) == ["master"]
        assert store.get_task("master", 1).title == "A"

    def test_master_added_when_missing(self):
        store = TaskStore.from_dict({"feature": {"tasks": []}})
        assert store.has_tag("master")
        assert store.has_tag("feature")

    def test_non_tag_keys_are_preserved(self):
        data = {"master": {"tasks": []}, "_version": 3}
        store = TaskStore.from_dict(data)
        assert store.to_dict()["_version"] == 3

    def test_non_object_is_invalid(self):
        with pytest.raises(TaskGraphError) as exc:
            TaskStore.from_dict([])
        assert exc.value.kind is ErrorKind.INVALID_DOCUMENT


def test_load_missing_file(tmp_path: Path):
    with pytest.raises(TaskGraphError) as exc:
        TaskStore.load(tmp_path / "nope.json")
    assert exc.value.kind is ErrorKind.NOT_FOUND


def test_load_invalid_json(tmp_path: Path):
    f = tmp_path / "tasks.json"
    f.write_text("{not json")
    with pytest.raises(TaskGraphError) as exc:
        TaskStore.load(f)
    assert exc.value.kind is ErrorKind.INVALID_DOCUMENT


def test_load_malformed_task_entry(tmp_path: Path):
    f = tmp_path / "tasks.json"
    f.write_text(json.dumps({"master": {"tasks": [{"id": 1, "subtasks": [7]}]}}))
    with pytest.raises(TaskGraphError) as exc:
        TaskStore.load(f)
    assert exc.value.kind is ErrorKind.INVALID_DOCUMENT
    assert "subtask of task 1" in exc.value.message


def test_save_writes_wire_form(tmp_path: Path):
    store = _make_store(_make_task(1, subtasks=2), _make_task(2, deps=[1, "1.2"]))
    f = tmp_path / "sub" / "tasks.json"
    store.save(f)

    data = json.loads(f.read_text())
    assert data["master"]["tasks"][1]["dependencies"] == [1, "1.2"]
    reloaded = TaskStore.load(f)
    assert reloaded.get_task("master", 2).dependencies == [TaskRef(1), TaskRef(1, 2)]


# ===================================================================
# Lookup and mutation
# ===================================================================


def test_get_task_reports_tag():
    store = _make_store(_make_task(1))
    with pytest.raises(TaskGraphError) as exc:
        store.get_task("master", 2)
    assert exc.value.kind is ErrorKind.NOT_FOUND
    assert "master" in exc.value.message


def test_unknown_tag():
    store = _make_store()
    with pytest.raises(TaskGraphError) as exc:
        store.tasks("missing")
    assert 'Tag "missing" does not exist' in exc.value.message


def test_get_subtask_requires_dotted_ref():
    store = _make_store(_make_task(1, subtasks=1))
    with pytest.raises(TaskGraphError) as exc:
        store.get_subtask("master", TaskRef(1))
    assert exc.value.kind is ErrorKind.INVALID_ID


def test_iter_items_yields_tasks_then_their_subtasks():
    store = _make_store(_make_task(1, subtasks=2), _make_task(2))
    refs = [ref for ref, _item in store.iter_items("master")]
    assert refs == [TaskRef(1), TaskRef(1, 1), TaskRef(1, 2), TaskRef(2)]


def test_insert_keeps_id_order():
    store = _make_store(_make_task(1), _make_task(5))
    store.insert_task("master", _make_task(3))
    assert [t.id for t in store.tasks("master")] == [1, 3, 5]
    assert store.next_task_id("master") == 6


def test_insert_duplicate_id():
    store = _make_store(_make_task(1))
    with pytest.raises(TaskGraphError) as exc:
        store.insert_task("master", _make_task(1))
    assert exc.value.kind is ErrorKind.DUPLICATE_ID


class TestRemoveSubtask:
    def test_renumbers_and_rewrites(self):
        # Subtasks 4.1, 4.2; removing 4.1 turns 4.2 into 4.1 everywhere.
        store = _make_store(_make_task(4, subtasks=2), _make_task(5, deps=["4.2"]))
        store.remove_subtask("master", TaskRef(4, 1))

        parent = store.get_task("master", 4)
        assert [s.id for s in parent.subtasks] == [1]
        assert parent.subtasks[0].title == "Sub 4.2"
        assert store.get_task("master", 5).dependencies == [TaskRef(4, 1)]

    def test_contiguous_after_middle_removal(self):
        store = _make_store(_make_task(1, subtasks=4))
        store.remove_subtask("master", TaskRef(1, 2))
        titles = [s.title for s in store.get_task("master", 1).subtasks]
        assert [s.id for s in store.get_task("master", 1).subtasks] == [1, 2, 3]
        assert titles == ["Sub 1.1", "Sub 1.3", "Sub 1.4"]

    def test_references_to_removed_subtask_are_dropped(self):
        store = _make_store(_make_task(1, subtasks=3), _make_task(2, deps=["1.2", "1.3", 1]))
        store.remove_subtask("master", TaskRef(1, 2))
        assert store.get_task("master", 2).dependencies == [TaskRef(1, 2), TaskRef(1)]


def test_rewrite_references_is_single_pass():
    store = _make_store(_make_task(1), _make_task(2), _make_task(3, deps=[1, 2]))
    store.rewrite_references("master", {TaskRef(1): TaskRef(2), TaskRef(2): TaskRef(1)})
    assert store.get_task("master", 3).dependencies == [TaskRef(2), TaskRef(1)]


def test_rewrite_references_collapses_merged_targets():
    store = _make_store(_make_task(1), _make_task(2), _make_task(3, deps=[1, 2]))
    changes = store.rewrite_references("master", {TaskRef(1): TaskRef(2)})
    assert store.get_task("master", 3).dependencies == [TaskRef(2)]
    assert changes == [(TaskRef(3), TaskRef(1), TaskRef(2))]


# ===================================================================
# Project state
# ===================================================================


def test_state_defaults_to_master(tmp_path: Path):
    assert load_state(tmp_path / "state.json").current_tag == "master"


def test_state_round_trip(tmp_path: Path):
    path = state_path_for(tmp_path / "tasks.json")
    assert path == tmp_path / "state.json"
    save_state(path, ProjectState(current_tag="feature", extra={"migrationNoticeShown": True}))

    data = json.loads(path.read_text())
    assert data == {"currentTag": "feature", "migrationNoticeShown": True}
    assert load_state(path).current_tag == "feature"
