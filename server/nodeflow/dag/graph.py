"""Graph Store: owns the nodes and edges of one pipeline.

Backed by a ``networkx.DiGraph`` for traversal, plus an insertion-ordered node
table so every query answers in a stable, reproducible order.  Edge insertion
rejects anything that would close a cycle; the scheduler relies on the graph
always being a DAG.
"""

from __future__ import annotations

import itertools
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

import networkx as nx

from .errors import CycleDetected, GraphError, NodeNotFound
from .models import Edge, Node


class GraphStore:
    def __init__(self, nodes: Iterable[Node] = (), edges: Iterable[Edge] = ()) -> None:
        self._graph = nx.DiGraph()
        self._nodes: Dict[str, Node] = {}
        self._edges: Dict[Tuple[str, str], Edge] = {}
        self._insertion: Dict[str, int] = {}
        self._counter = itertools.count()
        self._lock = threading.RLock()
        for node in nodes:
            self.add_node(node)
        for edge in edges:
            self.add_edge(
                edge.source,
                edge.target,
                source_port=edge.source_port,
                target_port=edge.target_port,
            )

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    # -- Node table -----------------------------------------------------------
    def _require(self, node_id: str) -> Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NodeNotFound(node_id) from None

    def _sorted(self, node_ids: Iterable[str]) -> List[Node]:
        return [self._nodes[nid] for nid in sorted(node_ids, key=self._insertion.__getitem__)]

    def get_node(self, node_id: str) -> Node:
        with self._lock:
            return self._require(node_id)

    def get_node_data(self) -> List[Node]:
        with self._lock:
            return list(self._nodes.values())

    def get_edge_data(self) -> List[Edge]:
        with self._lock:
            return list(self._edges.values())

    def add_node(self, node: Node) -> Node:
        with self._lock:
            if node.id in self._nodes:
                raise GraphError(f"Duplicate node id '{node.id}'.")
            self._nodes[node.id] = node
            self._insertion[node.id] = next(self._counter)
            self._graph.add_node(node.id)
            return node

    def update_node(self, node: Node) -> Node:
        """Replace a node's definition, keeping its edges and position in order."""
        with self._lock:
            self._require(node.id)
            self._nodes[node.id] = node
            return node

    def remove_node(self, node_id: str) -> Node:
        with self._lock:
            node = self._require(node_id)
            for pair in [p for p in self._edges if node_id in p]:
                del self._edges[pair]
            self._graph.remove_node(node_id)
            del self._nodes[node_id]
            del self._insertion[node_id]
            return node

    # -- Edges ----------------------------------------------------------------
    def add_edge(
        self,
        source: str,
        target: str,
        *,
        source_port: Optional[str] = None,
        target_port: Optional[str] = None,
    ) -> Edge:
        """Connect ``source`` to ``target``.

        Re-adding an existing pair returns that edge, with any ports given here
        replacing the stored ones.
        """
        with self._lock:
            self._require(source)
            self._require(target)
            existing = self._edges.get((source, target))
            if existing is not None:
                ports = {}
                if source_port is not None:
                    ports["source_port"] = source_port
                if target_port is not None:
                    ports["target_port"] = target_port
                if ports:
                    existing = existing.model_copy(update=ports)
                    self._edges[(source, target)] = existing
                return existing
            if source == target:
                raise CycleDetected(source, target, [source, source])
            if nx.has_path(self._graph, target, source):
                path = nx.shortest_path(self._graph, target, source)
                raise CycleDetected(source, target, [source, *path])
            edge = Edge(
                source=source,
                target=target,
                source_port=source_port,
                target_port=target_port,
            )
            self._graph.add_edge(source, target)
            self._edges[(source, target)] = edge
            return edge

    def remove_edge(self, source: str, target: str) -> Edge:
        with self._lock:
            self._require(source)
            self._require(target)
            try:
                edge = self._edges.pop((source, target))
            except KeyError:
                raise GraphError(f"No edge from '{source}' to '{target}'.") from None
            self._graph.remove_edge(source, target)
            return edge

    # -- Traversal ------------------------------------------------------------
    def get_predecessors(self, node_id: str) -> List[Node]:
        with self._lock:
            self._require(node_id)
            return self._sorted(self._graph.predecessors(node_id))

    def get_successors(self, node_id: str) -> List[Node]:
        with self._lock:
            self._require(node_id)
            return self._sorted(self._graph.successors(node_id))

    def get_ancestors(self, node_id: str) -> List[Node]:
        """All nodes reachable by following edges backward, excluding ``node_id``."""
        with self._lock:
            self._require(node_id)
            return self._sorted(nx.ancestors(self._graph, node_id))

    def get_descendants(self, node_id: str) -> List[Node]:
        with self._lock:
            self._require(node_id)
            return self._sorted(nx.descendants(self._graph, node_id))

    def is_ancestor(self, candidate: str, node_id: str) -> bool:
        with self._lock:
            self._require(candidate)
            self._require(node_id)
            return candidate != node_id and nx.has_path(self._graph, candidate, node_id)

    def execution_order(self, node_id: str) -> List[str]:
        """``ancestors(node_id) | {node_id}`` sorted topologically.

        Independent nodes keep their insertion order.
        """
        with self._lock:
            self._require(node_id)
            members = nx.ancestors(self._graph, node_id) | {node_id}
            subgraph = self._graph.subgraph(members)
            return list(
                nx.lexicographical_topological_sort(subgraph, key=self._insertion.__getitem__)
            )

    def to_payload(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "nodes": [node.to_payload() for node in self._nodes.values()],
                "edges": [edge.to_payload() for edge in self._edges.values()],
            }
