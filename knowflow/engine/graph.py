from typing import List, Dict, Set, Optional, Tuple, Iterable
from collections import deque

from knowflow.core.exceptions import (
    CyclicGraphError,
    DanglingInputSourceError,
    DuplicateNodeError,
    InvalidEdgeError,
    WorkflowValidationError,
)
from knowflow.schemas.workflow import InputSourceType, WorkflowEdge, WorkflowNode

class WorkflowGraph:
    def __init__(self, nodes: Iterable[WorkflowNode], edges: Iterable[WorkflowEdge]):
        self.node_list: List[WorkflowNode] = list(nodes)
        self.edges: List[WorkflowEdge] = list(edges)
        self.nodes: Dict[str, WorkflowNode] = {n.id: n for n in self.node_list}
        self.adj: Dict[str, List[str]] = {n_id: [] for n_id in self.nodes}
        self.rev_adj: Dict[str, List[str]] = {n_id: [] for n_id in self.nodes}
        self.dangling_edges: List[WorkflowEdge] = []

        for edge in self.edges:
            u, v = edge.source, edge.target
            if u in self.adj and v in self.adj:
                self.adj[u].append(v)
                self.rev_adj[v].append(u)
            else:
                self.dangling_edges.append(edge)

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        return self.nodes.get(node_id)

    def get_next_nodes(self, node_id: str) -> List[str]:
        return self.adj.get(node_id, [])

    def get_predecessors(self, node_id: str) -> List[str]:
        return self.rev_adj.get(node_id, [])

    def _kahn(self) -> Tuple[List[str], Set[str]]:
        """
        Kahn's algorithm; ties broken by declaration order so the same
        workflow always yields the same ordering. Returns the order and
        the ids that could not be placed.
        """
        position = {n.id: i for i, n in enumerate(self.node_list)}
        in_degree = {n_id: len(parents) for n_id, parents in self.rev_adj.items()}
        ready = sorted((n_id for n_id, degree in in_degree.items() if degree == 0), key=position.get)
        queue = deque(ready)
        result = []

        while queue:
            curr = queue.popleft()
            result.append(curr)
            released = []
            for neighbor in self.adj[curr]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    released.append(neighbor)
            queue.extend(sorted(released, key=position.get))

        unresolved = {n_id for n_id, degree in in_degree.items() if degree > 0}
        return result, unresolved

    def get_topo_sort(self) -> List[str]:
        """
        Get topological sort of node IDs
        """
        order, unresolved = self._kahn()
        if unresolved:
            raise CyclicGraphError(unresolved)
        return order

    def execution_order(self) -> List[str]:
        """Topological order restricted to enabled nodes."""
        return [n_id for n_id in self.get_topo_sort() if self.nodes[n_id].enabled]

    def disabled_nodes(self) -> List[str]:
        return [n.id for n in self.node_list if not n.enabled]

    def ancestors(self, node_id: str) -> Set[str]:
        seen: Set[str] = set()
        queue = deque(self.rev_adj.get(node_id, []))
        while queue:
            curr = queue.popleft()
            if curr in seen:
                continue
            seen.add(curr)
            queue.extend(self.rev_adj.get(curr, []))
        return seen

    def active_dependencies(self, node_id: str) -> Set[str]:
        """Enabled ancestors; a node may start once all of them are done."""
        return {a for a in self.ancestors(node_id) if self.nodes[a].enabled}

    def parallel_levels(self) -> List[List[str]]:
        """
        Group enabled nodes into waves: every node in a wave only depends on
        nodes from earlier waves, so a wave's members may run concurrently.
        """
        level: Dict[str, int] = {}
        for n_id in self.get_topo_sort():
            parents = [level[p] for p in self.rev_adj[n_id]]
            level[n_id] = max(parents, default=-1) + (1 if self.nodes[n_id].enabled else 0)
        waves: Dict[int, List[str]] = {}
        for n_id in self.execution_order():
            waves.setdefault(level[n_id], []).append(n_id)
        return [waves[k] for k in sorted(waves)]

    def collect_errors(self) -> List[str]:
        """All structural problems as messages, without raising."""
        errors = []
        seen = set()
        for node in self.node_list:
            if node.id in seen:
                errors.append(str(DuplicateNodeError(node.id)))
            seen.add(node.id)

        for edge in self.dangling_edges:
            errors.append(str(InvalidEdgeError(edge.source, edge.target)))

        _, unresolved = self._kahn()
        if unresolved:
            errors.append(str(CyclicGraphError(unresolved)))
            # Ancestry is meaningless inside a cycle
            return errors

        for node in self.node_list:
            error = self._check_input_sources(node)
            if error:
                errors.append(str(error))
        return errors

    def validate(self) -> None:
        """
        Raise on the first structural problem: duplicate ids, edges to
        unknown nodes, cycles, then input sources that do not point at an
        actual predecessor.
        """
        seen = set()
        for node in self.node_list:
            if node.id in seen:
                raise DuplicateNodeError(node.id)
            seen.add(node.id)

        if self.dangling_edges:
            edge = self.dangling_edges[0]
            raise InvalidEdgeError(edge.source, edge.target)

        self.get_topo_sort()

        for node in self.node_list:
            error = self._check_input_sources(node)
            if error:
                raise error

    def _check_input_sources(self, node: WorkflowNode) -> Optional[WorkflowValidationError]:
        ancestors = None
        for source in node.input_sources:
            if source.type != InputSourceType.PREVIOUS_NODE:
                continue
            if ancestors is None:
                ancestors = self.ancestors(node.id)
            if source.node_id not in ancestors:
                return DanglingInputSourceError(node.id, source.node_id)
        return None

    def remove_node(self, node_id: str) -> Tuple[List[WorkflowNode], List[WorkflowEdge]]:
        """
        Nodes and edges left after deleting a node and every edge touching it.
        Input sources reading from the deleted node are dropped as well.
        """
        nodes = []
        for n in self.node_list:
            if n.id == node_id:
                continue
            sources = [
                s for s in n.input_sources
                if not (s.type == InputSourceType.PREVIOUS_NODE and s.node_id == node_id)
            ]
            if len(sources) != len(n.input_sources):
                n = n.model_copy(update={"input_sources": sources})
            nodes.append(n)
        edges = [e for e in self.edges if e.source != node_id and e.target != node_id]
        return nodes, edges
