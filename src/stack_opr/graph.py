"""Graph module for stack-based orchestration.

Validates resource descriptors as a dependency graph and computes the
apply order (dependencies first) and its mirror for destroy.
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Iterable, Iterator

from stack import ResourceDescriptor
from stack_opr.errors import CycleError, ValidationError

logger = logging.getLogger(__name__)

# DFS colors for cycle detection
_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class Plan:
    """Ordered, validated sequence of resources.

    `order` is topological for a plan returned by build_plan: every
    dependency precedes its dependents. reverse() gives the exact mirror,
    used for teardown.
    """
    order: tuple

    def reverse(self) -> 'Plan':
        """Return the plan in mirror order."""
        return Plan(tuple(reversed(self.order)))

    @property
    def ids(self) -> list[str]:
        return [d.id for d in self.order]

    def get(self, resource_id: str) -> ResourceDescriptor:
        """Get a descriptor by id.

        Raises:
            KeyError: If resource id not in plan
        """
        for descriptor in self.order:
            if descriptor.id == resource_id:
                return descriptor
        raise KeyError(resource_id)

    def __iter__(self) -> Iterator[ResourceDescriptor]:
        return iter(self.order)

    def __len__(self) -> int:
        return len(self.order)


def build_plan(descriptors: Iterable[ResourceDescriptor]) -> Plan:
    """Validate descriptors and produce a deterministic topological plan.

    Checks for:
    - Duplicate ids
    - Dependencies on unknown ids
    - Cycles (three-color DFS; the error names the cycle path)

    Among resources whose dependencies are all placed, the smallest id
    goes first, so the same input always yields the same plan.

    Raises:
        ValidationError: On duplicate ids or dangling dependencies
        CycleError: If the dependency graph has a cycle
    """
    by_id: dict[str, ResourceDescriptor] = {}
    for descriptor in descriptors:
        if descriptor.id in by_id:
            raise ValidationError(f"Duplicate resource id: '{descriptor.id}'")
        by_id[descriptor.id] = descriptor

    for rid in sorted(by_id):
        missing = sorted(set(by_id[rid].depends_on) - set(by_id))
        if missing:
            raise ValidationError(
                f"Resource '{rid}' depends on unknown resource(s): {', '.join(missing)}"
            )

    _check_acyclic(by_id)
    order = _topological_order(by_id)
    logger.debug(f"Plan order: {' -> '.join(d.id for d in order)}")
    return Plan(tuple(order))


def _check_acyclic(by_id: dict[str, ResourceDescriptor]) -> None:
    """Raise CycleError on reentry into a gray (in-progress) node."""
    color = {rid: _WHITE for rid in by_id}

    for start in sorted(by_id):
        if color[start] != _WHITE:
            continue
        # Iterative DFS; path mirrors the gray nodes on the stack
        path: list[str] = [start]
        stack = [iter(sorted(by_id[start].depends_on))]
        color[start] = _GRAY
        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                stack.pop()
                color[path.pop()] = _BLACK
                continue
            if color[dep] == _GRAY:
                cycle = path[path.index(dep):] + [dep]
                raise CycleError(cycle)
            if color[dep] == _WHITE:
                color[dep] = _GRAY
                path.append(dep)
                stack.append(iter(sorted(by_id[dep].depends_on)))


def _topological_order(by_id: dict[str, ResourceDescriptor]) -> list[ResourceDescriptor]:
    """Kahn's algorithm with a min-heap on id for stable tie-breaking."""
    remaining = {rid: len(d.depends_on) for rid, d in by_id.items()}
    dependents: dict[str, list[str]] = {rid: [] for rid in by_id}
    for rid, descriptor in by_id.items():
        for dep in descriptor.depends_on:
            dependents[dep].append(rid)

    ready = [rid for rid, count in remaining.items() if count == 0]
    heapq.heapify(ready)

    ordered: list[ResourceDescriptor] = []
    while ready:
        rid = heapq.heappop(ready)
        ordered.append(by_id[rid])
        for child in dependents[rid]:
            remaining[child] -= 1
            if remaining[child] == 0:
                heapq.heappush(ready, child)

    if len(ordered) != len(by_id):
        # _check_acyclic runs first, so this only trips on a logic error
        raise ValidationError("Dependency graph could not be fully ordered")
    return ordered
