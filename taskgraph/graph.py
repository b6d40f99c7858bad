"""Dependency graph index: read-only reachability and cycle queries."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from .models import TaskRef
from .store import TaskStore

_WHITE, _GRAY, _BLACK = 0, 1, 2


class DependencyGraph:
    """Edges ``node -> prerequisite`` for every task and subtask in one tag.

    ``"5.1"`` and ``5`` are distinct nodes. The graph is a snapshot; rebuild it
    with ``from_store`` after the store changes.
    """

    def __init__(self, edges: dict[TaskRef, list[TaskRef]]) -> None:
        self.edges = edges

    @classmethod
    def from_store(cls, store: TaskStore, tag: str) -> DependencyGraph:
        return cls({ref: list(item.dependencies) for ref, item in store.iter_items(tag)})

    @property
    def nodes(self) -> list[TaskRef]:
        return sorted(self.edges, key=TaskRef.sort_key)

    def is_reachable(self, start: TaskRef, target: TaskRef) -> bool:
        """True if ``target`` is a (transitive) prerequisite of ``start``."""
        visited: set[TaskRef] = set()
        stack = [start]
        while stack:
            node = stack.pop()
            if node == target:
                return True
            if node in visited:
                continue
            visited.add(node)
            stack.extend(self.edges.get(node, ()))
        return False

    def would_create_cycle(self, from_node: TaskRef, to_node: TaskRef) -> bool:
        """Would adding ``from_node -> to_node`` close a loop?"""
        if from_node == to_node:
            return True
        return self.is_reachable(to_node, from_node)

    @staticmethod
    def is_descendant_subtask(parent: TaskRef, candidate: TaskRef) -> bool:
        return (
            not parent.is_subtask
            and candidate.is_subtask
            and candidate.task_id == parent.task_id
        )

    def find_dangling_references(self) -> list[tuple[TaskRef, TaskRef]]:
        return [
            (node, dep)
            for node in self.nodes
            for dep in self.edges[node]
            if dep not in self.edges
        ]

    def find_self_references(self) -> list[TaskRef]:
        return [node for node in self.nodes if node in self.edges[node]]

    def find_subtask_of_self(self) -> list[tuple[TaskRef, TaskRef]]:
        return [
            (node, dep)
            for node in self.nodes
            for dep in self.edges[node]
            if self.is_descendant_subtask(node, dep)
        ]

    def find_duplicates(self) -> list[tuple[TaskRef, TaskRef]]:
        found: list[tuple[TaskRef, TaskRef]] = []
        for node in self.nodes:
            seen: set[TaskRef] = set()
            for dep in self.edges[node]:
                if dep in seen and (node, dep) not in found:
                    found.append((node, dep))
                seen.add(dep)
        return found

    def find_cycles(self) -> list[list[TaskRef]]:
        """Return each cycle found by a DFS as its node path.

        ``[a, b, c]`` means ``a -> b -> c -> a``. Self-references and edges to
        missing nodes are reported by their own queries and skipped here.
        """
        color = {node: _WHITE for node in self.edges}
        cycles: list[list[TaskRef]] = []
        for root in self.nodes:
            if color[root] != _WHITE:
                continue
            color[root] = _GRAY
            path = [root]
            stack = [iter(self.edges[root])]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    color[path.pop()] = _BLACK
                    stack.pop()
                    continue
                if nxt not in color or nxt == path[-1]:
                    continue
                if color[nxt] == _GRAY:
                    cycles.append(path[path.index(nxt):])
                elif color[nxt] == _WHITE:
                    color[nxt] = _GRAY
                    path.append(nxt)
                    stack.append(iter(self.edges[nxt]))
        return cycles

    def dependency_chain(self, node: TaskRef) -> list[TaskRef]:
        """Transitive prerequisites of ``node`` in breadth-first order."""
        chain: list[TaskRef] = []
        seen = {node}
        queue = deque(self.edges.get(node, ()))
        while queue:
            dep = queue.popleft()
            if dep in seen:
                continue
            seen.add(dep)
            chain.append(dep)
            queue.extend(self.edges.get(dep, ()))
        return chain

    def dependents_of(self, targets: Iterable[TaskRef]) -> list[TaskRef]:
        """Every node that reaches one of ``targets``, excluding the targets."""
        reverse: dict[TaskRef, list[TaskRef]] = {}
        for src, deps in self.edges.items():
            for dep in deps:
                reverse.setdefault(dep, []).append(src)
        start = set(targets)
        found: set[TaskRef] = set()
        queue = deque(start)
        while queue:
            node = queue.popleft()
            for src in reverse.get(node, ()):
                if src not in found and src not in start:
                    found.add(src)
                    queue.append(src)
        return sorted(found, key=TaskRef.sort_key)
