"""
Dependency graph between stacks.

Edges point from the stack that produces an export to the stack that
imports it, so a topological order is a valid deployment order and its
reverse is a valid teardown order.
"""

from typing import Any
from dataclasses import dataclass, field
from collections import defaultdict, deque

from stratus.core.errors import ImportCycle


@dataclass
class DAGNode:
    """Represents a stack in the dependency graph."""

    name: str
    stack: Any
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DAGEdge:
    """A producer -> consumer edge and the export keys that create it."""

    producer: str
    consumer: str
    keys: tuple[str, ...]


class DAG:
    """
    Directed graph of stack dependencies.

    Provides:
    1. Dependency resolution
    2. Topological sorting (deploy order)
    3. Cycle detection
    4. Execution levels for bounded-parallel deploys
    """

    def __init__(self):
        self.nodes: dict[str, DAGNode] = {}
        self._adjacency_list: dict[str, list[str]] = defaultdict(list)
        self._edge_keys: dict[tuple[str, str], list[str]] = {}

    def add_node(self, name: str, stack: Any, metadata: dict[str, Any] | None = None) -> None:
        """Add a node to the DAG."""
        if name not in self.nodes:
            self.nodes[name] = DAGNode(name=name, stack=stack, metadata=metadata or {})

    def add_edge(self, producer: str, consumer: str, key: str | None = None) -> None:
        """
        Add a directed edge from a producing stack to a consuming stack.

        Repeated edges between the same pair are merged; the export keys
        carried by the edge accumulate.

        Args:
            producer: The stack that the consumer depends on
            consumer: The dependent stack
            key: Export key that creates the dependency
        """
        if producer not in self.nodes or consumer not in self.nodes:
            raise ValueError("Both nodes must exist in DAG before adding edge")

        pair = (producer, consumer)
        if pair not in self._edge_keys:
            self._edge_keys[pair] = []
            self._adjacency_list[producer].append(consumer)
            self.nodes[consumer].dependencies.append(producer)
            self.nodes[producer].dependents.append(consumer)

        if key is not None and key not in self._edge_keys[pair]:
            self._edge_keys[pair].append(key)

    @property
    def edges(self) -> list[DAGEdge]:
        return [
            DAGEdge(producer=producer, consumer=consumer, keys=tuple(keys))
            for (producer, consumer), keys in self._edge_keys.items()
        ]

    def get_dependencies(self, node_name: str) -> list[str]:
        """Get all stacks that this stack depends on."""
        return self.nodes[node_name].dependencies if node_name in self.nodes else []

    def get_dependents(self, node_name: str) -> list[str]:
        """Get all stacks that depend on this stack."""
        return self.nodes[node_name].dependents if node_name in self.nodes else []

    def get_transitive_dependents(self, node_name: str) -> set[str]:
        """Get every stack that depends, directly or not, on this stack."""
        seen: set[str] = set()
        queue = deque(self.get_dependents(node_name))
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            queue.extend(self.get_dependents(node))
        return seen

    def get_transitive_dependencies(self, node_name: str) -> set[str]:
        """Get every stack this stack depends on, directly or not."""
        seen: set[str] = set()
        queue = deque(self.get_dependencies(node_name))
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            queue.extend(self.get_dependencies(node))
        return seen

    def get_execution_levels(self) -> list[list[str]]:
        """
        Group stacks into deploy levels.

        Level 0 holds the stacks without in-app producers; every later
        level holds the stacks whose producers are all in earlier levels.
        Within a level, stacks keep their declaration order.

        Raises:
            ImportCycle: If the graph contains cycles
        """
        remaining = {name: len(node.dependencies) for name, node in self.nodes.items()}
        levels: list[list[str]] = []

        ready = [name for name, count in remaining.items() if count == 0]
        while ready:
            levels.append(ready)
            for name in ready:
                del remaining[name]
            released = set()
            for name in ready:
                for consumer in self._adjacency_list[name]:
                    remaining[consumer] -= 1
                    if remaining[consumer] == 0:
                        released.add(consumer)
            ready = [name for name in self.nodes if name in released]

        if remaining:
            raise ImportCycle(self.detect_cycles() or sorted(remaining))
        return levels

    def topological_sort(self) -> list[str]:
        """
        Deploy order: the execution levels, flattened.

        Raises:
            ImportCycle: If the graph contains cycles
        """
        return [name for level in self.get_execution_levels() for name in level]

    def detect_cycles(self) -> list[str] | None:
        """
        Find one import cycle.

        Returns:
            The cycle path with its first stack repeated at the end, or None
        """
        on_path: dict[str, int] = {}
        done: set[str] = set()

        for root in self.nodes:
            if root in done:
                continue
            path = [root]
            on_path[root] = 0
            pending = [iter(self._adjacency_list[root])]

            while pending:
                consumer = next(pending[-1], None)
                if consumer is None:
                    finished = path.pop()
                    del on_path[finished]
                    done.add(finished)
                    pending.pop()
                elif consumer in on_path:
                    return path[on_path[consumer]:] + [consumer]
                elif consumer not in done:
                    on_path[consumer] = len(path)
                    path.append(consumer)
                    pending.append(iter(self._adjacency_list[consumer]))

        return None

    def teardown_order(self) -> list[str]:
        """Reverse topological order: consumers before producers."""
        return list(reversed(self.topological_sort()))

    def to_dict(self) -> dict[str, Any]:
        """Plain representation of the graph, for JSON output."""
        return {
            "stacks": {
                name: {"producers": node.dependencies, "consumers": node.dependents}
                for name, node in self.nodes.items()
            },
            "edges": [
                {"from": edge.producer, "to": edge.consumer, "keys": list(edge.keys)}
                for edge in self.edges
            ],
        }

    def __repr__(self) -> str:
        return f"DAG(stacks={len(self.nodes)}, edges={len(self._edge_keys)})"
