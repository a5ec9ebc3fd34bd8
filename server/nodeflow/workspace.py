"""One editable pipeline together with its run state.

``FlowWorkspace`` owns the graph, result and log stores and wires them into a
resolver and a scheduler.  Every transport (WebSocket session, HTTP API)
works through one workspace.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .actions import ACTIONS, NodeAction, declared_output_fields
from .config import default_engine_settings
from .dag import (
    AlreadyRunning,
    BoundParameter,
    Edge,
    GraphStore,
    LogSink,
    Node,
    NodeReference,
    ReferenceResolver,
    ResultStore,
    RunOutcome,
    Scheduler,
    load_reactflow_graph,
)

LOGGER = logging.getLogger("nodeflow-engine")

_UNSET = object()


class FlowWorkspace:
    def __init__(
        self,
        graph: Optional[GraphStore] = None,
        *,
        actions: Mapping[str, NodeAction] = ACTIONS,
        settings: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.settings = {**default_engine_settings(), **(settings or {})}
        self.actions = actions
        self.results = ResultStore()
        self.logs = LogSink()
        self._attach(graph or GraphStore())

    def _attach(self, graph: GraphStore) -> None:
        self.graph = graph
        self.resolver = ReferenceResolver(graph, declared_output_fields(self.actions))
        self.scheduler = Scheduler(graph, self.results, self.logs, self.resolver, self.actions)

    # -- Graph editing --------------------------------------------------------
    def load_graph(self, payload: Dict[str, Any]) -> GraphStore:
        """Replace the whole graph with a React Flow export; results are dropped."""
        if self.scheduler.is_running:
            raise AlreadyRunning(self.scheduler.current_run_id)
        graph = load_reactflow_graph(payload)
        self.results.clear_all()
        self._attach(graph)
        LOGGER.info("Loaded graph with %d nodes and %d edges", len(graph), len(graph.get_edge_data()))
        return graph

    def reset(self) -> None:
        """Empty graph, results and logs; subscriptions stay attached."""
        if self.scheduler.is_running:
            raise AlreadyRunning(self.scheduler.current_run_id)
        self.results.clear_all()
        self.logs.clear()
        self._attach(GraphStore())

    def add_node(self, node: Node | Dict[str, Any]) -> Node:
        if not isinstance(node, Node):
            node = Node.model_validate(node)
        return self.graph.add_node(node)

    def update_node(self, node: Node | Dict[str, Any]) -> Node:
        if not isinstance(node, Node):
            node = Node.model_validate(node)
        return self.graph.update_node(node)

    def remove_node(self, node_id: str) -> Node:
        node = self.graph.remove_node(node_id)
        self.results.clear(node_id)
        return node

    def add_edge(
        self,
        source: str,
        target: str,
        *,
        source_port: Optional[str] = None,
        target_port: Optional[str] = None,
    ) -> Edge:
        return self.graph.add_edge(source, target, source_port=source_port, target_port=target_port)

    def remove_edge(self, source: str, target: str) -> Edge:
        return self.graph.remove_edge(source, target)

    def get_node_data(self) -> List[Node]:
        return self.graph.get_node_data()

    def get_edge_data(self) -> List[Edge]:
        return self.graph.get_edge_data()

    # -- Parameters -----------------------------------------------------------
    def get_available_references(
        self, node_id: str, include_transitive: Optional[bool] = None
    ) -> List[NodeReference]:
        if include_transitive is None:
            include_transitive = self.settings["include_transitive_references"]
        return self.resolver.get_available_references(node_id, include_transitive)

    def bind_parameter(
        self,
        node_id: str,
        key: str,
        *,
        value: Any = _UNSET,
        reference: Optional[NodeReference | Dict[str, Any]] = None,
        type: Optional[str] = None,
    ) -> Node:
        """Bind ``key`` on ``node_id`` to a literal or to an upstream reference.

        Switching mode discards the previous binding.  References are checked
        against the current ancestry before anything is stored.
        """
        if (value is _UNSET) == (reference is None):
            raise ValueError("Provide exactly one of 'value' or 'reference'.")
        node = self.graph.get_node(node_id)
        try:
            current = node.param(key)
        except KeyError:
            current = BoundParameter(key=key)
        if type is not None:
            current = current.model_copy(update={"type": type})

        if reference is not None:
            if not isinstance(reference, NodeReference):
                reference = NodeReference.model_validate(reference)
            self.resolver.validate_binding(node_id, reference)
            param = current.with_reference(reference)
        else:
            param = current.with_literal(value)
        return self.graph.update_node(node.with_param(param))

    def preview_parameters(self, node_id: str) -> Dict[str, Dict[str, Any]]:
        node = self.graph.get_node(node_id)
        previews = self.resolver.preview(node.params, self.results)
        return {key: {"value": value, "error": error} for key, (value, error) in previews.items()}

    # -- Execution ------------------------------------------------------------
    async def run_node(self, node_id: str, *, full_rerun: Optional[bool] = None) -> RunOutcome:
        if full_rerun is None:
            full_rerun = self.settings["full_rerun"]
        return await self.scheduler.run_node(node_id, full_rerun=full_rerun)

    def cancel_run(self) -> bool:
        return self.scheduler.cancel()

    @property
    def is_running(self) -> bool:
        return self.scheduler.is_running

    @property
    def last_outcome(self) -> Optional[RunOutcome]:
        return self.scheduler.last_outcome

    def clear_results(self, node_ids: Optional[Iterable[str]] = None) -> None:
        if node_ids is None:
            self.results.clear_all()
            return
        for node_id in node_ids:
            self.results.clear(node_id)

    def clear_logs(self, node_id: Optional[str] = None) -> int:
        if node_id is None:
            removed = len(self.logs)
            self.logs.clear()
            return removed
        return self.logs.clear_node(node_id)
