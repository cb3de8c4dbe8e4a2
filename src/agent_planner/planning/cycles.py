"""Cycle checks and wave layering over directed task edges."""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Iterable

import networkx as nx

Edge = tuple[str, str]


@dataclass(frozen=True)
class CycleCheck:
    cycle_detected: bool
    node_count: int
    removed_count: int
    residual_nodes: tuple[str, ...] = ()


def kahn_check(edges: Iterable[Edge]) -> CycleCheck:
    """Kahn's algorithm over every node touched by any edge.

    A cycle exists iff fewer nodes are removed than were touched.
    """
    successors: dict[str, set[str]] = defaultdict(set)
    in_degree: dict[str, int] = {}
    for source, target in edges:
        in_degree.setdefault(source, 0)
        in_degree.setdefault(target, 0)
        if target in successors[source]:
            continue
        successors[source].add(target)
        in_degree[target] += 1

    queue = deque(node for node, degree in in_degree.items() if degree == 0)
    removed = 0
    while queue:
        node = queue.popleft()
        removed += 1
        for neighbour in successors.get(node, ()):
            in_degree[neighbour] -= 1
            if in_degree[neighbour] == 0:
                queue.append(neighbour)

    residual = tuple(sorted(node for node, degree in in_degree.items() if degree > 0))
    return CycleCheck(
        cycle_detected=removed < len(in_degree),
        node_count=len(in_degree),
        removed_count=removed,
        residual_nodes=residual,
    )


def edges_on_cycles(edges: Iterable[Edge]) -> set[Edge]:
    """Edges whose endpoints share a strongly connected component."""
    graph = nx.DiGraph()
    graph.add_edges_from(edges)
    on_cycle: set[Edge] = set()
    for component in nx.strongly_connected_components(graph):
        if len(component) < 2:
            continue
        on_cycle.update(
            (source, target) for source, target in graph.subgraph(component).edges()
        )
    return on_cycle


def has_path(edges: Iterable[Edge], source: str, target: str) -> bool:
    graph = nx.DiGraph()
    graph.add_edges_from(edges)
    if source not in graph or target not in graph:
        return False
    return nx.has_path(graph, source, target)


def topological_waves(order: list[str], edges: Iterable[Edge]) -> list[list[str]]:
    """Layer ``order`` into waves so every edge points to a later wave.

    Within a wave, ids keep their relative position in ``order``. Edges that
    touch ids outside ``order`` are ignored. The edge set must be acyclic.
    """
    position = {task_id: index for index, task_id in enumerate(order)}
    successors: dict[str, set[str]] = defaultdict(set)
    in_degree = {task_id: 0 for task_id in order}
    for source, target in edges:
        if source not in position or target not in position or source == target:
            continue
        if target in successors[source]:
            continue
        successors[source].add(target)
        in_degree[target] += 1

    waves: list[list[str]] = []
    frontier = sorted((task_id for task_id, degree in in_degree.items() if degree == 0), key=position.get)
    placed = 0
    while frontier:
        waves.append(frontier)
        placed += len(frontier)
        next_frontier: list[str] = []
        for task_id in frontier:
            for neighbour in successors.get(task_id, ()):
                in_degree[neighbour] -= 1
                if in_degree[neighbour] == 0:
                    next_frontier.append(neighbour)
        frontier = sorted(next_frontier, key=position.get)

    if placed < len(order):
        raise ValueError("topological_waves requires an acyclic edge set")
    return waves
