"""Pure graph algorithms over the scene-link relation.

Functions here take plain mappings and never touch a store, so they can run
against live state or a snapshot alike.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from storyloom.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from storyloom.models.scene import Scene

log = get_logger(__name__)


class NodeState(Enum):
    """Traversal state of a node during cycle detection."""

    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


def link_adjacency(scenes: Iterable[Scene]) -> dict[str, list[str]]:
    """Build the scene-link adjacency, keeping store order."""
    return {scene.id: list(scene.links) for scene in scenes}


def find_cycles(adjacency: Mapping[str, Sequence[str]]) -> list[list[str]]:
    """Find directed cycles with an explicit, non-recursive depth-first search.

    The traversal restarts from every node still unvisited, in mapping order,
    and records at most the first cycle reached from each root. Each cycle is
    returned as a closed path whose first and last element are the same node
    (a self-link yields ``[n, n]``). Edges to nodes missing from *adjacency*
    are ignored.

    Args:
        adjacency: Node id to ordered successor ids.

    Returns:
        Closed cycle paths in discovery order; empty if the graph is acyclic.
    """
    state: dict[str, NodeState] = dict.fromkeys(adjacency, NodeState.UNVISITED)
    cycles: list[list[str]] = []

    for root in adjacency:
        if state[root] is not NodeState.UNVISITED:
            continue

        path: list[str] = [root]
        # Parallel to path: index of the next successor to examine.
        cursor: list[int] = [0]
        state[root] = NodeState.IN_PROGRESS
        found: list[str] | None = None

        while path and found is None:
            node = path[-1]
            successors = adjacency[node]
            if cursor[-1] >= len(successors):
                state[node] = NodeState.DONE
                path.pop()
                cursor.pop()
                continue

            target = successors[cursor[-1]]
            cursor[-1] += 1
            target_state = state.get(target)
            if target_state is None or target_state is NodeState.DONE:
                continue
            if target_state is NodeState.IN_PROGRESS:
                found = [*path[path.index(target) :], target]
                continue

            state[target] = NodeState.IN_PROGRESS
            path.append(target)
            cursor.append(0)

        if found is not None:
            cycles.append(found)
            # Nodes left on the path are settled; their other cycles are not
            # reported from this root.
            for node in path:
                state[node] = NodeState.DONE
            log.debug("cycle_found", root=root, length=len(found) - 1)

    return cycles


def inverse_index(forward: Mapping[str, Iterable[str]]) -> dict[str, set[str]]:
    """Invert a one-to-many relation: target id to the set of source ids."""
    inverse: dict[str, set[str]] = {}
    for source, targets in forward.items():
        for target in targets:
            inverse.setdefault(target, set()).add(source)
    return inverse
