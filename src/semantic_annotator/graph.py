"""Graph traversal helpers."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

_N = TypeVar("_N", bound=Hashable)


@dataclass(frozen=True, slots=True)
class Reached(Generic[_N]):
    """A node reached by :func:`weighted_bfs`."""

    node: _N
    confidence: float
    parent: _N
    depth: int


def weighted_bfs(
    start: _N,
    start_confidence: float,
    neighbors: Callable[[_N], Iterable[_N]],
    decay: float,
    floor: float,
    accept: Callable[[_N, float], bool] | None = None,
) -> list[Reached[_N]]:
    """Breadth-first walk that multiplies confidence by ``decay`` per hop.

    A node whose confidence would fall below ``floor`` is neither reported
    nor expanded; neither is a node rejected by ``accept``. Every node is
    visited at most once, at its shallowest depth, so cycles terminate. The
    start node is not reported.
    """
    if not 0.0 < decay < 1.0:
        raise ValueError("decay must be strictly between 0 and 1")
    visited = {start}
    reached: list[Reached[_N]] = []
    queue: deque[tuple[_N, float, int]] = deque([(start, start_confidence, 0)])
    while queue:
        node, confidence, depth = queue.popleft()
        next_confidence = confidence * decay
        if next_confidence < floor:
            continue
        for other in neighbors(node):
            if other in visited:
                continue
            visited.add(other)
            if accept is not None and not accept(other, next_confidence):
                continue
            reached.append(Reached(other, next_confidence, node, depth + 1))
            queue.append((other, next_confidence, depth + 1))
    return reached
