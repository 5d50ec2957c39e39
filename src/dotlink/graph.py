"""Dependency graph over plan operations.

The graph is an immutable value holding the operations and, for each one, the
indices of the operations it depends on. Dependencies naming operations that
are not part of the plan are treated as already satisfied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from .errors import CyclicDependencyError
from .operations import Operation

logger = logging.getLogger(__name__)

_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass(frozen=True, slots=True)
class DependencyGraph:
    operations: tuple[Operation, ...]
    edges: tuple[tuple[int, ...], ...]

    @classmethod
    def build(cls, operations: Sequence[Operation]) -> DependencyGraph:
        unique: list[Operation] = []
        index: dict[str, int] = {}
        for op in operations:
            existing = index.get(op.id)
            if existing is None:
                index[op.id] = len(unique)
                unique.append(op)
            elif unique[existing] != op:
                raise ValueError(f"two different operations share id {op.id!r}")

        edges: list[tuple[int, ...]] = []
        for op in unique:
            deps: list[int] = []
            for dep in op.depends_on:
                target = index.get(dep)
                if target is None:
                    logger.debug("Dependency %s of %s is outside the plan", dep, op.id)
                    continue
                if target not in deps:
                    deps.append(target)
            edges.append(tuple(deps))
        return cls(operations=tuple(unique), edges=tuple(edges))

    def __len__(self) -> int:
        return len(self.operations)

    def dependencies(self, op_index: int) -> tuple[Operation, ...]:
        return tuple(self.operations[i] for i in self.edges[op_index])

    def find_cycle(self) -> list[Operation] | None:
        """Return a cycle as ``[a, b, ..., a]``, or ``None`` when the graph is acyclic."""

        colour = [_WHITE] * len(self.operations)
        stack: list[int] = []

        def visit(node: int) -> list[int] | None:
            colour[node] = _GREY
            stack.append(node)
            for dep in self.edges[node]:
                if colour[dep] == _GREY:
                    start = stack.index(dep)
                    return stack[start:] + [dep]
                if colour[dep] == _WHITE:
                    found = visit(dep)
                    if found is not None:
                        return found
            stack.pop()
            colour[node] = _BLACK
            return None

        for node in range(len(self.operations)):
            if colour[node] == _WHITE:
                cycle = visit(node)
                if cycle is not None:
                    return [self.operations[i] for i in cycle]
        return None

    def _raise_cycle(self) -> None:
        cycle = self.find_cycle()
        if cycle is not None:
            raise CyclicDependencyError([op.describe() for op in cycle])

    def topological_sort(self) -> list[Operation]:
        """Return the operations with every dependency before its dependents.

        Raises:
            CyclicDependencyError: if the dependencies form a cycle.
        """

        self._raise_cycle()
        return [self.operations[i] for i in self._order()]

    def _order(self) -> list[int]:
        visited = [False] * len(self.operations)
        order: list[int] = []

        def visit(node: int) -> None:
            visited[node] = True
            for dep in self.edges[node]:
                if not visited[dep]:
                    visit(dep)
            order.append(node)

        for node in range(len(self.operations)):
            if not visited[node]:
                visit(node)
        return order

    def batches(self) -> list[list[Operation]]:
        """Partition the operations into levels.

        Level 0 holds operations without dependencies; every other operation
        sits one level above its deepest dependency.
        """

        self._raise_cycle()
        levels: dict[int, int] = {}
        for node in self._order():
            levels[node] = 1 + max((levels[dep] for dep in self.edges[node]), default=-1)

        grouped: list[list[Operation]] = [[] for _ in range(max(levels.values(), default=-1) + 1)]
        for node, op in enumerate(self.operations):
            grouped[levels[node]].append(op)
        return grouped
