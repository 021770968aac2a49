"""Graph module for dependency-based orchestration.

Builds the dependency graph reachable from a requested service and
validates that it is acyclic. Edge A -> B means A depends on B.
"""

import logging
from collections import deque
from dataclasses import dataclass, field

from errors import CyclicDependencyError
from registry import Catalog, Service

logger = logging.getLogger(__name__)

# DFS colors for cycle detection
WHITE, GRAY, BLACK = 0, 1, 2


@dataclass
class GraphNode:
    """A node in the dependency graph.

    Attributes:
        service: The underlying Service declaration
        dependencies: Nodes this node depends on, in declared order
        dependents: Nodes depending on this node, in discovery order
        depth: BFS distance from the root (0 for the root)
    """
    service: Service
    dependencies: list['GraphNode'] = field(default_factory=list)
    dependents: list['GraphNode'] = field(default_factory=list)
    depth: int = 0

    @property
    def name(self) -> str:
        return self.service.name

    @property
    def is_leaf(self) -> bool:
        return len(self.dependencies) == 0

    def __repr__(self) -> str:
        deps = ', '.join(d.name for d in self.dependencies)
        return f"GraphNode({self.name}, deps=[{deps}], depth={self.depth})"


class DependencyGraph:
    """Dependency graph for one deployment request.

    Nodes are the services reachable transitively from the root.
    Built fresh per request and never persisted.
    """

    def __init__(self, root: str):
        self.root = root
        self._nodes: dict[str, GraphNode] = {}

    def add_node(self, service: Service) -> GraphNode:
        node = GraphNode(service=service)
        self._nodes[service.name] = node
        return node

    def add_edge(self, dependent: str, dependency: str) -> None:
        src = self._nodes[dependent]
        dst = self._nodes[dependency]
        src.dependencies.append(dst)
        dst.dependents.append(src)

    def get_node(self, name: str) -> GraphNode:
        """Get a GraphNode by name.

        Raises:
            KeyError: If node name not found
        """
        return self._nodes[name]

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def names(self) -> list[str]:
        """Node names in BFS discovery order."""
        return list(self._nodes)

    @property
    def nodes(self) -> list[GraphNode]:
        return list(self._nodes.values())

    def dependencies_of(self, name: str) -> list[str]:
        return [d.name for d in self._nodes[name].dependencies]

    def edges(self) -> list[tuple[str, str]]:
        """All (dependent, dependency) pairs in deterministic order."""
        return [(n.name, d.name) for n in self._nodes.values() for d in n.dependencies]

    def check_acyclic(self) -> None:
        """Raise CyclicDependencyError if the graph has a cycle.

        Iterative DFS with white/gray/black coloring; a gray node reached
        again closes a cycle, reported as the path from that node back to
        itself.
        """
        color = {name: WHITE for name in self._nodes}
        for start in self._nodes:
            if color[start] != WHITE:
                continue
            path: list[str] = [start]
            color[start] = GRAY
            stack = [iter(self.dependencies_of(start))]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    stack.pop()
                    color[path.pop()] = BLACK
                    continue
                if color[nxt] == GRAY:
                    cycle = path[path.index(nxt):] + [nxt]
                    raise CyclicDependencyError(cycle)
                if color[nxt] == WHITE:
                    color[nxt] = GRAY
                    path.append(nxt)
                    stack.append(iter(self.dependencies_of(nxt)))


def build_graph(catalog: Catalog, root: str) -> DependencyGraph:
    """Build the dependency graph reachable from root.

    Breadth-first expansion in declared dependency order, so two runs over
    unchanged declarations produce an identical graph.

    Raises:
        ServiceNotFoundError: If root or a dependency is not in the catalog
        CyclicDependencyError: If dependencies form a cycle
    """
    graph = DependencyGraph(root)
    root_node = graph.add_node(catalog.lookup(root))
    root_node.depth = 0

    queue: deque[GraphNode] = deque([root_node])
    while queue:
        node = queue.popleft()
        for dep_name in node.service.dependencies:
            if dep_name not in graph:
                dep_node = graph.add_node(catalog.lookup(dep_name))
                dep_node.depth = node.depth + 1
                queue.append(dep_node)
            graph.add_edge(node.name, dep_name)

    graph.check_acyclic()
    logger.debug(f"Built graph for '{root}': {len(graph)} node(s), {len(graph.edges())} edge(s)")
    return graph
