"""Dependency graph builder for resource ordering."""

import heapq
from typing import Dict, Iterable, List, Optional, Set
from dataclasses import dataclass, field
from collections import defaultdict, deque

from fleetform.orchestrator.resolver import ReferenceResolver
from fleetform.resources.models import Resource
from fleetform.state.models import StateRecord
from fleetform.utils.errors import CycleError
from fleetform.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class GraphNode:
    """Node in the dependency graph.

    ``resource`` is None for recorded resources that are no longer declared.
    """

    address: str
    resource: Optional[Resource] = None
    record: Optional[StateRecord] = None
    dependencies: Set[str] = field(default_factory=set)  # Addresses this node consumes
    dependents: Set[str] = field(default_factory=set)  # Addresses that consume this node

    @property
    def is_declared(self) -> bool:
        return self.resource is not None


class DependencyGraph:
    """Directed acyclic graph (DAG) of resource dependencies.

    Edges point from consumer to producer; producers are applied first.
    """

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[str, GraphNode] = {}
        self._adjacency_list: Dict[str, Set[str]] = defaultdict(set)  # producer -> consumers

    def add_node(self, node: GraphNode) -> None:
        """Add a node. Edges are linked by ``link``."""
        self.nodes[node.address] = node

    def link(self) -> None:
        """Populate reverse edges from every node's dependencies."""
        self._adjacency_list.clear()
        for node in self.nodes.values():
            node.dependents.clear()
        for address, node in self.nodes.items():
            for dep in node.dependencies:
                self._adjacency_list[dep].add(address)
                if dep in self.nodes:
                    self.nodes[dep].dependents.add(address)

    def get_dependencies(self, address: str) -> Set[str]:
        """Direct dependencies of a node."""
        if address not in self.nodes:
            return set()
        return self.nodes[address].dependencies.copy()

    def get_dependents(self, address: str) -> Set[str]:
        """Direct dependents of a node."""
        return self._adjacency_list[address].copy()

    def get_all_dependencies(self, address: str) -> Set[str]:
        """All transitive dependencies of a node."""
        return self._walk(address, lambda current: self.get_dependencies(current))

    def get_all_dependents(self, address: str) -> Set[str]:
        """All transitive dependents of a node."""
        return self._walk(address, lambda current: self._adjacency_list[current])

    def _walk(self, start: str, neighbours) -> Set[str]:
        visited = set()
        queue = deque([start])

        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            for nxt in neighbours(current):
                if nxt not in visited:
                    queue.append(nxt)

        visited.discard(start)
        return visited

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular dependencies in the graph.

        Returns:
            Addresses forming a cycle (first address repeated at the end), or None
        """
        # White (0): unvisited, Gray (1): in progress, Black (2): done
        color = {address: 0 for address in self.nodes}
        parent: Dict[str, str] = {}

        def dfs(address: str) -> Optional[List[str]]:
            color[address] = 1

            for dep in sorted(self.nodes[address].dependencies):
                if dep not in color:
                    continue
                if color[dep] == 1:
                    # Back edge: walk parents from address up to dep
                    cycle = [dep, address]
                    current = address
                    while current != dep:
                        current = parent[current]
                        cycle.append(current)
                    return list(reversed(cycle))

                if color[dep] == 0:
                    parent[dep] = address
                    cycle = dfs(dep)
                    if cycle:
                        return cycle

            color[address] = 2
            return None

        for address in sorted(self.nodes):
            if color[address] == 0:
                cycle = dfs(address)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the graph.

        Raises:
            CycleError: If the graph contains a cycle
        """
        cycle = self.detect_circular_dependencies()
        if cycle:
            raise CycleError(cycle)

    def topological_sort(self) -> List[str]:
        """Addresses in dependency order (producers before consumers).

        Ties are broken by address so the order is deterministic.
        """
        in_degree = {
            address: len([dep for dep in node.dependencies if dep in self.nodes])
            for address, node in self.nodes.items()
        }
        heap = [address for address, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        result = []

        while heap:
            address = heapq.heappop(heap)
            result.append(address)

            for dependent in self._adjacency_list[address]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, dependent)

        if len(result) != len(self.nodes):
            cycle = self.detect_circular_dependencies() or sorted(set(self.nodes) - set(result))
            raise CycleError(cycle)

        return result

    def get_waves(self) -> List[List[str]]:
        """Group nodes into waves that can run in parallel."""
        in_degree = {
            address: len([dep for dep in node.dependencies if dep in self.nodes])
            for address, node in self.nodes.items()
        }
        current_wave = sorted(address for address, degree in in_degree.items() if degree == 0)
        waves = []

        while current_wave:
            waves.append(current_wave)
            next_wave = []
            for address in current_wave:
                for dependent in self._adjacency_list[address]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_wave.append(dependent)
            current_wave = sorted(next_wave)

        if sum(len(wave) for wave in waves) != len(self.nodes):
            raise CycleError(self.detect_circular_dependencies() or [])

        return waves

    def get_destruction_order(self) -> List[str]:
        """Addresses with consumers before producers."""
        return list(reversed(self.topological_sort()))

    def get_node(self, address: str) -> Optional[GraphNode]:
        return self.nodes.get(address)

    def has_node(self, address: str) -> bool:
        return address in self.nodes

    def size(self) -> int:
        return len(self.nodes)

    def is_empty(self) -> bool:
        return len(self.nodes) == 0


def build_graph(
    resources: Iterable[Resource],
    records: Optional[Dict[str, StateRecord]] = None
) -> DependencyGraph:
    """Build the DAG for declared resources plus recorded-only resources.

    Recorded resources that are no longer declared keep the dependencies they
    had when applied, so they can be torn down in the right order.

    Raises:
        UnresolvedReferenceError: If a reference names an undeclared resource
        InvalidAttributeError: If a reference names an unknown output
        CycleError: If the references form a cycle; no graph is returned
    """
    records = records or {}
    resolver = ReferenceResolver(resources)
    graph = DependencyGraph()

    for address, resource in resolver.index.items():
        graph.add_node(GraphNode(
            address=address,
            resource=resource,
            record=records.get(address),
            dependencies=resolver.dependencies_of(resource),
        ))

    for address, record in records.items():
        if address in graph.nodes:
            continue
        graph.add_node(GraphNode(
            address=address,
            record=record,
            dependencies=set(record.dependencies),
        ))

    graph.link()
    graph.validate()

    logger.debug(f"Built dependency graph with {graph.size()} nodes")
    return graph
