from __future__ import annotations

import heapq
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence


logger = logging.getLogger(__name__)

NodeFn = Callable[[dict[str, Any]], Any]


@dataclass(frozen=True)
class Node:
    name: str
    fn: NodeFn
    depends_on: Sequence[str] = field(default_factory=tuple)


class DAG:
    """Runs pipeline nodes in dependency order over one shared context.

    Each node reads the seed keys plus the outputs of earlier nodes and its
    return value is stored under its own name. Nodes that become ready at the
    same time run in declaration order, so a pass is reproducible.
    """

    def __init__(self, nodes: Iterable[Node]) -> None:
        self._nodes: dict[str, Node] = {}
        for node in nodes:
            if node.name in self._nodes:
                raise ValueError(f"Duplicate pipeline node '{node.name}'")
            self._nodes[node.name] = node
        self._order = self._resolve_order()

    @property
    def order(self) -> list[str]:
        return list(self._order)

    def run(self, seed: dict[str, Any]) -> dict[str, Any]:
        ctx = dict(seed)
        durations: dict[str, float] = {}
        for name in self._order:
            started = time.perf_counter()
            try:
                ctx[name] = self._nodes[name].fn(ctx)
            except Exception as exc:
                logger.debug("Pipeline node %s stopped the pass: %s", name, exc)
                raise
            finally:
                durations[name] = round((time.perf_counter() - started) * 1000, 3)

        ctx["node_durations_ms"] = durations
        ctx["execution_order"] = list(self._order)
        logger.debug("Pipeline pass timings (ms): %s", durations)
        return ctx

    def _resolve_order(self) -> list[str]:
        position = {name: i for i, name in enumerate(self._nodes)}
        waiting_on: dict[str, int] = {}
        dependents: dict[str, list[str]] = {name: [] for name in self._nodes}

        for node in self._nodes.values():
            deps = set(node.depends_on)
            unknown = sorted(d for d in deps if d not in self._nodes)
            if unknown:
                raise ValueError(f"Node '{node.name}' depends on unknown node(s) {unknown}")
            waiting_on[node.name] = len(deps)
            for dep in deps:
                dependents[dep].append(node.name)

        ready = [(position[n], n) for n, count in waiting_on.items() if count == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, name = heapq.heappop(ready)
            order.append(name)
            for nxt in dependents[name]:
                waiting_on[nxt] -= 1
                if waiting_on[nxt] == 0:
                    heapq.heappush(ready, (position[nxt], nxt))

        if len(order) != len(self._nodes):
            stuck = sorted(n for n, count in waiting_on.items() if count > 0)
            raise ValueError(f"Pipeline nodes form a cycle through {stuck}")
        return order
